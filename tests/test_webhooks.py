from __future__ import annotations

import json
import threading
from datetime import timedelta

import httpx
import pytest

from backend.inspecao.database import Database
from backend.inspecao.models import WebhookStatus
from backend.inspecao.webhooks import (
    CLAIM_LEASE,
    COST_CHANGED,
    HIGH_CRITICALITY,
    RETRY_DELAY,
    USER_AGENT,
    WORK_ORDER_CREATED,
    WebhookDispatcher,
    WebhookQueue,
    build_endpoint,
    map_criticality_to_external,
    map_priority_to_external,
)

from conftest import COST_URL, NOTIFICATION_URL, WOMS_URL


def _work_order(app, os_number: str = "OS-1", priority: str = "normal"):
    return app.create_work_order(
        os_number=os_number,
        inspection_id="insp-1",
        fault_id="fault-1",
        description="Troca de isolador",
        priority=priority,
        estimated_cost=1200.0,
        assigned_to="Equipe A",
    )


def test_work_order_enqueues_event(app) -> None:
    _work_order(app, priority="urgent")

    candidates = app.database.list_webhook_candidates(app.queue.clock())

    assert len(candidates) == 1
    item = candidates[0]
    assert item.event_type == WORK_ORDER_CREATED
    assert item.priority == 5
    assert item.status is WebhookStatus.PENDING
    assert item.payload["os_number"] == "OS-1"


def test_higher_priority_is_processed_first(app, transport) -> None:
    _work_order(app, "OS-LOW", priority="low")
    _work_order(app, "OS-URGENT", priority="urgent")

    result = app.process_webhook_queue(limit=1)

    assert result["processed"] == 1
    assert transport.last_json(WOMS_URL)["os_number"] == "OS-URGENT"
    assert app.queue.statistics()["pending"] == 1


def test_equal_priority_is_first_in_first_out(app) -> None:
    first = app.queue.enqueue("custom_event", {"n": 1})
    second = app.queue.enqueue("custom_event", {"n": 2})

    claimed = app.queue.dequeue_batch(limit=10)

    assert [item.id for item in claimed] == [first, second]
    assert all(item.status is WebhookStatus.PROCESSING for item in claimed)


def test_successful_delivery_marks_item_done(app, transport, clock) -> None:
    _work_order(app)

    result = app.process_webhook_queue()

    assert result["success"] is True
    assert result["message"] == "Processamento concluído: 1 sucessos, 0 falhas"
    outcome = result["results"][0]
    assert outcome["success"] is True
    assert outcome["response_status"] == 200

    item = app.database.get_webhook_item(outcome["item_id"])
    assert item.status is WebhookStatus.DONE
    assert item.processed_at == clock.now

    request = transport.sent_to(WOMS_URL)[0]
    assert request.headers["Authorization"] == "Bearer woms-key"
    assert request.headers["User-Agent"] == USER_AGENT
    assert request.headers["X-Source"] == "inspecao-eletrica"
    payload = transport.last_json(WOMS_URL)
    assert payload["event_type"] == WORK_ORDER_CREATED
    assert payload["source"] == "inspecao_eletrica_app"
    assert payload["work_order"]["number"] == "OS-1"
    assert payload["work_order"]["estimated_cost_brl"] == 1200.0

    logs = app.database.list_webhook_logs(queue_id=item.id)
    assert [entry.response_status for entry in logs] == [200]


def test_empty_queue_reports_nothing_to_do(app) -> None:
    result = app.process_webhook_queue()

    assert result == {
        "success": True,
        "message": "Nenhum item na fila para processar",
        "processed": 0,
        "results": [],
    }


def test_failure_schedules_retry_with_linear_backoff(app, transport, clock) -> None:
    transport.respond(WOMS_URL, 503, {"error": "indisponível"})
    _work_order(app)

    outcome = app.process_webhook_queue()["results"][0]

    assert outcome["success"] is False
    assert outcome["will_retry"] is True
    assert outcome["attempts"] == 1
    assert outcome["error"].startswith("HTTP 503:")
    item = app.database.get_webhook_item(outcome["item_id"])
    assert item.status is WebhookStatus.FAILED
    assert item.next_retry_at == clock.now + RETRY_DELAY

    clock.advance(RETRY_DELAY - timedelta(seconds=1))
    assert app.process_webhook_queue()["processed"] == 0

    clock.advance(timedelta(seconds=1))
    second = app.process_webhook_queue()["results"][0]
    assert second["attempts"] == 2
    item = app.database.get_webhook_item(outcome["item_id"])
    assert item.next_retry_at == clock.now + 2 * RETRY_DELAY


def test_item_goes_dead_on_last_attempt(app, transport, clock) -> None:
    transport.fail(WOMS_URL)
    _work_order(app)

    for attempt in range(1, 4):
        result = app.process_webhook_queue()
        assert result["processed"] == 1, attempt
        clock.advance(attempt * RETRY_DELAY)

    outcome = result["results"][0]
    assert outcome["attempts"] == 3
    assert outcome["will_retry"] is False
    item = app.database.get_webhook_item(outcome["item_id"])
    assert item.status is WebhookStatus.DEAD
    assert item.next_retry_at is None
    assert "connection refused" in item.error_message

    clock.advance(timedelta(days=1))
    assert app.process_webhook_queue()["processed"] == 0
    assert len(transport.sent_to(WOMS_URL)) == 3


def test_second_failure_with_two_attempts_goes_dead(app, transport) -> None:
    transport.respond(WOMS_URL, 500)
    _work_order(app)
    item = app.database.list_webhook_candidates(app.queue.clock())[0]
    item.attempts = 1
    dispatcher = WebhookDispatcher(
        queue=app.queue,
        endpoints=app.settings.endpoints(),
        client=app.dispatcher.client,
        max_attempts=2,
    )

    outcome = dispatcher.dispatch(item)

    assert outcome["attempts"] == 2
    assert outcome["will_retry"] is False
    stored = app.database.get_webhook_item(item.id)
    assert stored.status is WebhookStatus.DEAD
    assert stored.next_retry_at is None


def test_unconfigured_event_is_dead_lettered(app, transport) -> None:
    item_id = app.queue.enqueue("inspection_archived", {"inspection_id": "insp-1"})

    outcome = app.process_webhook_queue()["results"][0]

    assert outcome["not_configured"] is True
    assert outcome["error"] == "Configuração não encontrada para evento: inspection_archived"
    assert app.database.get_webhook_item(item_id).status is WebhookStatus.DEAD
    assert transport.requests == []
    log = app.database.list_webhook_logs(queue_id=item_id)[0]
    assert log.target_url == "unknown"


def test_concurrent_claims_have_a_single_winner(app) -> None:
    app.queue.enqueue("custom_event", {})
    item = app.database.list_webhook_candidates(app.queue.clock())[0]
    barrier = threading.Barrier(8)
    outcomes: list[bool] = []
    lock = threading.Lock()

    def claim() -> None:
        barrier.wait()
        won = app.queue.claim(item)
        with lock:
            outcomes.append(won)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(True) == 1
    assert app.database.get_webhook_item(item.id).status is WebhookStatus.PROCESSING


def test_parallel_batches_never_share_items(tmp_path, clock) -> None:
    database = Database(tmp_path / "queue.db")
    database.initialize()
    queue = WebhookQueue(database, clock=clock)
    ids = {queue.enqueue("custom_event", {"n": n}) for n in range(20)}
    batches: list[list[int]] = []
    lock = threading.Lock()

    def run() -> None:
        claimed = WebhookQueue(database, clock=clock).dequeue_batch(limit=20)
        with lock:
            batches.append([item.id for item in claimed])

    threads = [threading.Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    claimed_ids = [item_id for batch in batches for item_id in batch]
    assert sorted(claimed_ids) == sorted(ids)


def test_high_criticality_action_enqueues_alert_and_cost(app, transport) -> None:
    app.record_corrective_action(
        fault_id="fault-9",
        inspection_id="insp-1",
        descricao="Vazamento de óleo",
        criticidade="Alta",
        custo_estimado=900.0,
        fotos_before_count=2,
        fotos_after_count=1,
    )

    result = app.process_webhook_queue()

    assert [outcome["event_type"] for outcome in result["results"]] == [HIGH_CRITICALITY, COST_CHANGED]
    alert = transport.last_json(NOTIFICATION_URL)
    assert alert["notification"]["urgency"] == "high"
    assert alert["notification"]["metadata"]["photos_count"] == 3
    assert "X-Source" not in transport.sent_to(NOTIFICATION_URL)[0].headers
    cost = transport.last_json(COST_URL)
    assert cost["cost_tracking"]["change_type"] == "cost_added"
    assert cost["cost_tracking"]["current_cost_brl"] == 900.0


def test_cost_update_enqueues_only_on_change(app, transport) -> None:
    app.record_corrective_action(
        fault_id="fault-2",
        inspection_id="insp-1",
        descricao="Aterramento rompido",
        criticidade="media",
    )
    assert app.queue.statistics()["pending"] == 0

    app.update_corrective_action_cost("fault-2", 350.0)
    app.update_corrective_action_cost("fault-2", 350.0)
    app.update_corrective_action_cost("fault-2", 500.0)
    app.process_webhook_queue()

    assert len(transport.sent_to(COST_URL)) == 2
    cost = transport.last_json(COST_URL)["cost_tracking"]
    assert cost["previous_cost_brl"] == 350.0
    assert cost["current_cost_brl"] == 500.0
    assert cost["change_type"] == "cost_updated"

    with pytest.raises(LookupError):
        app.update_corrective_action_cost("fault-404", 1.0)


def test_statistics_count_every_status(app, transport) -> None:
    transport.respond(WOMS_URL, 500)
    _work_order(app, "OS-1")
    app.queue.enqueue("custom_event", {})
    app.queue.enqueue(COST_CHANGED, {"fault_id": "f"}, priority=-1)

    app.process_webhook_queue(limit=2)

    assert app.queue.statistics() == {
        "pending": 1,
        "processing": 0,
        "done": 0,
        "failed": 1,
        "dead": 1,
    }


def test_enqueue_requires_event_type(app) -> None:
    with pytest.raises(ValueError):
        app.queue.enqueue("", {})


def test_duplicate_work_order_is_rejected(app) -> None:
    _work_order(app, "OS-1")

    with pytest.raises(ValueError):
        _work_order(app, "OS-1")


def test_endpoint_headers_and_value_maps() -> None:
    assert build_endpoint("") is None
    endpoint = build_endpoint("https://example.test/hook", "secret", tag_source=True, timeout=5)
    assert endpoint.headers == {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "Authorization": "Bearer secret",
        "X-Source": "inspecao-eletrica",
    }
    assert endpoint.timeout == 5
    assert map_priority_to_external("urgent") == "HIGH"
    assert map_priority_to_external("whatever") == "MEDIUM"
    assert map_criticality_to_external("Baixa") == "LOW"
    assert map_criticality_to_external(None) == "MEDIUM"


def test_malformed_item_does_not_abort_the_batch(app, transport) -> None:
    bad_id = app.queue.enqueue(HIGH_CRITICALITY, {"fotos_before_count": "dois"}, priority=9)
    _work_order(app)

    result = app.process_webhook_queue()

    assert result["processed"] == 2
    bad, good = result["results"]
    assert bad["item_id"] == bad_id
    assert bad["success"] is False
    assert bad["will_retry"] is True
    assert "dois" in bad["error"]
    assert good["success"] is True
    assert app.database.get_webhook_item(bad_id).status is WebhookStatus.FAILED
    assert app.queue.statistics()["processing"] == 0
    assert transport.sent_to(NOTIFICATION_URL) == []
    log = app.database.list_webhook_logs(queue_id=bad_id)[0]
    assert log.request_payload == {"fotos_before_count": "dois"}


def test_invalid_endpoint_url_goes_through_retry(app, http_client) -> None:
    item_id = app.queue.enqueue("custom_event", {})
    dispatcher = WebhookDispatcher(
        queue=app.queue,
        endpoints={"custom_event": build_endpoint("http://exa mple.com/\x00")},
        client=http_client,
    )

    outcome = dispatcher.process_batch()["results"][0]

    assert outcome["success"] is False
    assert outcome["will_retry"] is True
    assert app.database.get_webhook_item(item_id).status is WebhookStatus.FAILED


def test_batch_claims_each_item_just_before_sending(app) -> None:
    for n in range(3):
        app.queue.enqueue(WORK_ORDER_CREATED, {"os_number": f"OS-{n}"})

    claims = app.queue.iter_claims(limit=3)
    first = next(claims)
    statistics = app.queue.statistics()
    claims.close()

    assert first.status is WebhookStatus.PROCESSING
    assert statistics["processing"] == 1
    assert statistics["pending"] == 2


def test_items_left_by_an_interrupted_run_are_reclaimed(app, transport, clock) -> None:
    for n in range(3):
        app.queue.enqueue(WORK_ORDER_CREATED, {"os_number": f"OS-{n}"})
    interrupted = app.queue.dequeue_batch(limit=3)
    app.dispatcher.dispatch(interrupted[0])

    assert app.process_webhook_queue()["processed"] == 0

    clock.advance(CLAIM_LEASE)
    result = app.process_webhook_queue()

    assert [outcome["item_id"] for outcome in result["results"]] == [item.id for item in interrupted[1:]]
    assert all(outcome["success"] for outcome in result["results"])
    assert app.queue.statistics()["done"] == 3
    sent = [json.loads(request.content)["os_number"] for request in transport.sent_to(WOMS_URL)]
    assert sent == ["OS-0", "OS-1", "OS-2"]


def test_reclaim_has_a_single_winner(app, clock) -> None:
    app.queue.enqueue("custom_event", {})
    app.queue.dequeue_batch()
    clock.advance(CLAIM_LEASE)
    stale = app.database.list_webhook_candidates(clock(), stale_before=clock() - CLAIM_LEASE)[0]
    rival = app.database.list_webhook_candidates(clock(), stale_before=clock() - CLAIM_LEASE)[0]

    assert app.queue.claim(stale) is True
    assert app.queue.claim(rival) is False


class SteppedTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_slow_response_body_hits_the_total_deadline(app, transport, http_client) -> None:
    timer = SteppedTimer()

    def trickle():
        for elapsed in (10.0, 25.0, 40.0):
            timer.now = elapsed
            yield b" "

    transport.handlers[WOMS_URL] = lambda request: httpx.Response(200, content=trickle())
    _work_order(app)
    dispatcher = WebhookDispatcher(
        queue=app.queue,
        endpoints={WORK_ORDER_CREATED: build_endpoint(WOMS_URL, timeout=30)},
        client=http_client,
        timer=timer,
    )

    outcome = dispatcher.process_batch()["results"][0]

    assert outcome["success"] is False
    assert outcome["error"] == "Request exceeded 30s"
    assert outcome["will_retry"] is True
