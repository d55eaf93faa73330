"""Outbound webhook queue with retry and dead-lettering.

Business operations enqueue events explicitly. A dispatcher run walks the
candidates (``pending`` items, ``failed`` items whose retry time has come and
``processing`` items whose claim is older than the lease), claiming each one
just before posting it and recording the outcome. Claims are conditional
updates, so concurrent runs never deliver the same item twice.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import httpx

from .database import ISO_FORMAT, Database
from .models import CorrectiveAction, WebhookLogEntry, WebhookQueueItem, WebhookStatus, WorkOrder

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BATCH_SIZE = 10
REQUEST_TIMEOUT = 30.0
RETRY_DELAY = timedelta(minutes=5)
CLAIM_LEASE = timedelta(minutes=10)

USER_AGENT = "InspecaoEletrica-Webhook/1.0"
SOURCE_HEADER = "inspecao-eletrica"
PAYLOAD_SOURCE = "inspecao_eletrica_app"

WORK_ORDER_CREATED = "work_order_created"
HIGH_CRITICALITY = "corrective_action_high_criticality"
COST_CHANGED = "corrective_action_cost_changed"

PRIORITY_MAP = {"urgent": "HIGH", "high": "HIGH", "normal": "MEDIUM", "low": "LOW"}
CRITICALITY_MAP = {"alta": "HIGH", "media": "MEDIUM", "baixa": "LOW"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


@dataclass(frozen=True)
class WebhookEndpoint:
    url: str
    headers: Mapping[str, str]
    timeout: float = REQUEST_TIMEOUT


def build_endpoint(
    url: Optional[str],
    api_key: Optional[str] = None,
    *,
    tag_source: bool = False,
    timeout: float = REQUEST_TIMEOUT,
) -> Optional[WebhookEndpoint]:
    if not url:
        return None
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if tag_source:
        headers["X-Source"] = SOURCE_HEADER
    return WebhookEndpoint(url=url, headers=headers, timeout=timeout)


def map_priority_to_external(priority: Optional[str]) -> str:
    return PRIORITY_MAP.get(priority or "", "MEDIUM")


def map_criticality_to_external(criticidade: Optional[str]) -> str:
    return CRITICALITY_MAP.get((criticidade or "").lower(), "MEDIUM")


def prepare_external_payload(event_type: str, payload: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    base = {
        **payload,
        "timestamp": format_timestamp(now),
        "source": PAYLOAD_SOURCE,
        "event_type": event_type,
    }
    if event_type == WORK_ORDER_CREATED:
        base["work_order"] = {
            "number": payload.get("os_number"),
            "inspection_reference": payload.get("inspection_id"),
            "fault_reference": payload.get("fault_id"),
            "title": payload.get("description"),
            "priority_level": payload.get("priority"),
            "estimated_cost_brl": payload.get("estimated_cost"),
            "assigned_technician": payload.get("assigned_to"),
            "created_timestamp": payload.get("created_at"),
        }
    elif event_type == HIGH_CRITICALITY:
        base["notification"] = {
            "type": "critical_alert",
            "title": "Problema Crítico Detectado",
            "message": f"Ação corretiva de alta criticidade: {payload.get('descricao')}",
            "urgency": "high",
            "metadata": {
                "fault_id": payload.get("fault_id"),
                "inspection_id": payload.get("inspection_id"),
                "criticality": payload.get("criticidade"),
                "estimated_cost": payload.get("custo_estimado"),
                "photos_count": int(payload.get("fotos_before_count") or 0)
                + int(payload.get("fotos_after_count") or 0),
                "responsible": payload.get("responsavel"),
                "detection_date": payload.get("data_deteccao"),
            },
        }
    elif event_type == COST_CHANGED:
        base["cost_tracking"] = {
            "fault_id": payload.get("fault_id"),
            "inspection_id": payload.get("inspection_id"),
            "description": payload.get("descricao"),
            "criticality_level": payload.get("criticidade"),
            "previous_cost_brl": payload.get("custo_estimado_anterior"),
            "current_cost_brl": payload.get("custo_estimado_novo"),
            "change_type": payload.get("event_trigger"),
            "responsible_party": payload.get("responsavel"),
            "detection_date": payload.get("data_deteccao"),
            "status": payload.get("status"),
        }
    return base


@dataclass
class WebhookQueue:
    database: Database
    clock: Callable[[], datetime] = utcnow
    claim_lease: timedelta = CLAIM_LEASE

    def enqueue(self, event_type: str, payload: Dict[str, Any], priority: int = 0) -> int:
        if not event_type:
            raise ValueError("event_type is required")
        item = self.database.add_webhook_item(event_type, payload, priority)
        logger.info("Enqueued %s as webhook item %s (priority %s)", event_type, item.id, priority)
        return item.id

    def claim(self, item: WebhookQueueItem) -> bool:
        now = self.clock()
        if not self.database.claim_webhook_item(item.id, item.status, item.claimed_at, now):
            return False
        if item.status is WebhookStatus.PROCESSING:
            logger.warning("Reclaiming webhook item %s left in processing since %s", item.id, item.claimed_at)
        item.status = WebhookStatus.PROCESSING
        item.claimed_at = now
        return True

    def iter_claims(self, limit: int = BATCH_SIZE) -> Iterator[WebhookQueueItem]:
        """Yield up to ``limit`` items, claiming each one only when it is requested."""
        if limit <= 0:
            return
        now = self.clock()
        claimed = 0
        for candidate in self.database.list_webhook_candidates(now, stale_before=now - self.claim_lease):
            if claimed >= limit:
                break
            if not self.claim(candidate):
                logger.debug("Webhook item %s was claimed by another run", candidate.id)
                continue
            claimed += 1
            yield candidate

    def dequeue_batch(self, limit: int = BATCH_SIZE) -> List[WebhookQueueItem]:
        return list(self.iter_claims(limit))

    def statistics(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in WebhookStatus}
        counts.update(self.database.count_webhooks_by_status())
        return counts

    def recent_logs(self, limit: int = 10) -> List[WebhookLogEntry]:
        return self.database.list_webhook_logs(limit=limit)


@dataclass
class WebhookDispatcher:
    queue: WebhookQueue
    endpoints: Mapping[str, WebhookEndpoint]
    client: httpx.Client = field(default_factory=lambda: httpx.Client(timeout=REQUEST_TIMEOUT))
    max_attempts: int = MAX_ATTEMPTS
    retry_delay: timedelta = RETRY_DELAY
    timer: Callable[[], float] = time.monotonic

    @property
    def database(self) -> Database:
        return self.queue.database

    def process_batch(self, limit: int = BATCH_SIZE) -> Dict[str, Any]:
        results = [self.dispatch(item) for item in self.queue.iter_claims(limit)]
        if not results:
            return {"success": True, "message": "Nenhum item na fila para processar", "processed": 0, "results": []}
        succeeded = sum(1 for result in results if result["success"])
        logger.info("Processed %d webhook item(s), %d delivered", len(results), succeeded)
        return {
            "success": True,
            "message": f"Processamento concluído: {succeeded} sucessos, {len(results) - succeeded} falhas",
            "processed": len(results),
            "results": results,
        }

    def dispatch(self, item: WebhookQueueItem) -> Dict[str, Any]:
        started = self.timer()
        endpoint = self.endpoints.get(item.event_type)
        if endpoint is None:
            return self._dead_letter_unconfigured(item)

        payload: Dict[str, Any] = dict(item.payload)
        try:
            payload = prepare_external_payload(item.event_type, item.payload, self.queue.clock())
            status_code, body = self._post(endpoint, payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = str(exc) or exc.__class__.__name__
            return self._record_failure(item, endpoint, payload, error, None, None)
        except (ValueError, TypeError) as exc:
            error = f"Payload inválido: {exc}"
            return self._record_failure(item, endpoint, payload, error, None, None)

        if not 200 <= status_code < 300:
            error = f"HTTP {status_code}: {body}"
            return self._record_failure(item, endpoint, payload, error, status_code, body)

        self.database.add_webhook_log(
            queue_id=item.id,
            event_type=item.event_type,
            target_url=endpoint.url,
            request_payload=payload,
            response_status=status_code,
            response_body=body,
            error=None,
        )
        self.database.mark_webhook_done(item.id, self.queue.clock())
        elapsed = int((self.timer() - started) * 1000)
        logger.info("Webhook %s (item %s) delivered in %dms", item.event_type, item.id, elapsed)
        return {
            "success": True,
            "item_id": item.id,
            "event_type": item.event_type,
            "processing_time_ms": elapsed,
            "response_status": status_code,
        }

    def _post(self, endpoint: WebhookEndpoint, payload: Dict[str, Any]) -> Tuple[int, str]:
        """POST the payload, failing with ``httpx.ReadTimeout`` once ``endpoint.timeout``
        has elapsed in total, however slowly the body arrives."""
        deadline = self.timer() + endpoint.timeout
        with self.client.stream(
            "POST",
            endpoint.url,
            json=payload,
            headers=dict(endpoint.headers),
            timeout=endpoint.timeout,
        ) as response:
            chunks: List[bytes] = []
            for chunk in response.iter_bytes():
                if self.timer() > deadline:
                    raise httpx.ReadTimeout(
                        f"Request exceeded {endpoint.timeout:g}s", request=response.request
                    )
                chunks.append(chunk)
            body = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
        return response.status_code, body

    def _record_failure(
        self,
        item: WebhookQueueItem,
        endpoint: WebhookEndpoint,
        payload: Dict[str, Any],
        error: str,
        response_status: Optional[int],
        response_body: Optional[str],
    ) -> Dict[str, Any]:
        attempts = item.attempts + 1
        will_retry = attempts < self.max_attempts
        next_retry_at = self.queue.clock() + attempts * self.retry_delay if will_retry else None
        self.database.mark_webhook_failed(
            item.id,
            status=WebhookStatus.FAILED if will_retry else WebhookStatus.DEAD,
            attempts=attempts,
            error_message=error,
            next_retry_at=next_retry_at,
        )
        self.database.add_webhook_log(
            queue_id=item.id,
            event_type=item.event_type,
            target_url=endpoint.url,
            request_payload=payload,
            response_status=response_status,
            response_body=response_body,
            error=error,
        )
        logger.warning(
            "Webhook %s (item %s) failed on attempt %d/%d: %s",
            item.event_type,
            item.id,
            attempts,
            self.max_attempts,
            error,
        )
        return {
            "success": False,
            "item_id": item.id,
            "event_type": item.event_type,
            "error": error,
            "attempts": attempts,
            "will_retry": will_retry,
        }

    def _dead_letter_unconfigured(self, item: WebhookQueueItem) -> Dict[str, Any]:
        error = f"Configuração não encontrada para evento: {item.event_type}"
        self.database.mark_webhook_failed(
            item.id,
            status=WebhookStatus.DEAD,
            attempts=item.attempts,
            error_message=error,
            next_retry_at=None,
        )
        self.database.add_webhook_log(
            queue_id=item.id,
            event_type=item.event_type,
            target_url="unknown",
            request_payload=item.payload,
            response_status=None,
            response_body=None,
            error=error,
        )
        logger.warning("No endpoint configured for %s; item %s moved to dead", item.event_type, item.id)
        return {
            "success": False,
            "item_id": item.id,
            "event_type": item.event_type,
            "error": error,
            "attempts": item.attempts,
            "will_retry": False,
            "not_configured": True,
        }


def work_order_event(work_order: WorkOrder) -> Dict[str, Any]:
    return {
        "os_number": work_order.os_number,
        "inspection_id": work_order.inspection_id,
        "fault_id": work_order.fault_id,
        "description": work_order.description,
        "priority": work_order.priority,
        "estimated_cost": work_order.estimated_cost,
        "assigned_to": work_order.assigned_to,
        "created_at": format_timestamp(work_order.created_at),
    }


def high_criticality_event(action: CorrectiveAction) -> Dict[str, Any]:
    return {
        "fault_id": action.fault_id,
        "inspection_id": action.inspection_id,
        "descricao": action.descricao,
        "criticidade": action.criticidade,
        "custo_estimado": action.custo_estimado,
        "fotos_before_count": action.fotos_before_count,
        "fotos_after_count": action.fotos_after_count,
        "responsavel": action.responsavel,
        "data_deteccao": format_timestamp(action.data_deteccao),
    }


def cost_changed_event(action: CorrectiveAction, previous_cost: Optional[float]) -> Dict[str, Any]:
    return {
        "fault_id": action.fault_id,
        "inspection_id": action.inspection_id,
        "descricao": action.descricao,
        "criticidade": action.criticidade,
        "custo_estimado_anterior": previous_cost,
        "custo_estimado_novo": action.custo_estimado,
        "event_trigger": "cost_added" if previous_cost is None else "cost_updated",
        "responsavel": action.responsavel,
        "data_deteccao": format_timestamp(action.data_deteccao),
        "status": action.status,
    }
