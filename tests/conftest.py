from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.inspecao import InspectionApp
from backend.inspecao.exports import ReportGatewayError
from backend.inspecao.models import ExportLog
from backend.inspecao.settings import IntegrationSettings
from backend.inspecao.webhooks import utcnow

WOMS_URL = "https://woms.example.test/api/work-orders"
NOTIFICATION_URL = "https://notify.example.test/hooks/critical"
COST_URL = "https://costs.example.test/api/entries"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class RecordingTransport:
    """Collects outgoing requests and answers them from per-URL handlers."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handlers: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def respond(self, url: str, status_code: int = 200, body: object = None) -> None:
        payload = {"ok": True} if body is None else body
        self.handlers[url] = lambda request: httpx.Response(status_code, json=payload)

    def fail(self, url: str, message: str = "connection refused") -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(message, request=request)

        self.handlers[url] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(str(request.url))
        if handler is None:
            return httpx.Response(200, json={"ok": True})
        return handler(request)

    def sent_to(self, url: str) -> list[httpx.Request]:
        return [request for request in self.requests if str(request.url) == url]

    def last_json(self, url: str) -> dict:
        matches = self.sent_to(url)
        assert matches, f"No request was sent to {url}"
        return json.loads(matches[-1].content)


class FakeReportGateway:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int, Optional[bool]]] = []
        self.error: Optional[str] = None

    def generate_report(self, export_log: ExportLog, *, send_email: bool) -> None:
        self.calls.append(("generate_report", export_log.id, send_email))
        if self.error:
            raise ReportGatewayError(self.error)

    def send_report_email(self, export_log: ExportLog) -> None:
        self.calls.append(("send_report_email", export_log.id, None))
        if self.error:
            raise ReportGatewayError(self.error)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def http_client(transport: RecordingTransport) -> httpx.Client:
    client = httpx.Client(transport=httpx.MockTransport(transport))
    yield client
    client.close()


@pytest.fixture()
def gateway() -> FakeReportGateway:
    return FakeReportGateway()


@pytest.fixture()
def settings() -> IntegrationSettings:
    return IntegrationSettings(
        _env_file=None,
        external_woms_api_url=WOMS_URL,
        external_woms_api_key="woms-key",
        notification_webhook_url=NOTIFICATION_URL,
        cost_tracking_api_url=COST_URL,
        cost_tracking_api_key="cost-key",
    )


@pytest.fixture()
def app(
    tmp_path: Path,
    settings: IntegrationSettings,
    http_client: httpx.Client,
    gateway: FakeReportGateway,
    clock: FakeClock,
) -> InspectionApp:
    app = InspectionApp.create(
        tmp_path / "test_inspecao.db",
        settings=settings,
        client=http_client,
        gateway=gateway,
    )
    app.queue.clock = clock
    app.integrations.clock = clock
    return app
