from __future__ import annotations

from dataclasses import replace

import httpx
import pytest

from backend.inspecao.exports import (
    ExportRetryError,
    HttpReportGateway,
    ReportGatewayError,
    RetryMode,
    retry_mode_for,
)
from backend.inspecao.models import ExportStatus


def _export_log(app, **changes):
    export_log = app.database.add_export_log(
        inspection_id="insp-12345678",
        file_name="relatorio-insp-12345678-v1.pdf",
        recipient_emails=["cliente@example.com"],
        metadata={"send_email": True, "client_name": "Usina Norte"},
    )
    if changes:
        export_log = replace(export_log, **changes)
        app.database.save_export_log(export_log)
    return export_log


def test_failed_upload_is_regenerated_without_email(app, gateway) -> None:
    export_log = _export_log(app, status=ExportStatus.FAILED, error_message="timeout")

    result = app.retry_export(export_log.id)

    assert result == {
        "success": True,
        "message": "Retry executado com sucesso",
        "export_log_id": export_log.id,
        "retry_mode": "upload",
    }
    assert gateway.calls == [("generate_report", export_log.id, False)]
    stored = app.database.get_export_log(export_log.id)
    assert stored.retry_count == 1
    assert stored.status is ExportStatus.PENDING
    assert stored.error_message is None


def test_failed_email_is_resent(app, gateway, clock) -> None:
    export_log = _export_log(app, status=ExportStatus.FAILED, uploaded_at=clock.now)

    result = app.retry_export(export_log.id)

    assert result["retry_mode"] == "email"
    assert gateway.calls == [("send_report_email", export_log.id, None)]


def test_other_states_run_the_full_pipeline(app, gateway) -> None:
    export_log = _export_log(app)

    assert app.retry_export(export_log.id)["retry_mode"] == "full"
    assert gateway.calls == [("generate_report", export_log.id, True)]


def test_retry_mode_selection(clock) -> None:
    class Log:
        def __init__(self, status, uploaded_at=None, email_delivered_at=None):
            self.status = status
            self.uploaded_at = uploaded_at
            self.email_delivered_at = email_delivered_at

    assert retry_mode_for(Log(ExportStatus.FAILED)) is RetryMode.UPLOAD
    assert retry_mode_for(Log(ExportStatus.FAILED, clock.now)) is RetryMode.EMAIL
    assert retry_mode_for(Log(ExportStatus.FAILED, clock.now, clock.now)) is RetryMode.FULL
    assert retry_mode_for(Log(ExportStatus.SENDING_EMAIL)) is RetryMode.FULL


@pytest.mark.parametrize(
    ("export_log_id", "changes", "status", "message"),
    [
        (None, None, 400, "export_log_id é obrigatório"),
        (999, None, 404, "Log de exportação não encontrado"),
        ("own", {"status": ExportStatus.SUCCESS}, 400, "Exportação já foi bem-sucedida"),
        ("own", {"status": ExportStatus.FAILED, "retry_count": 5}, 400, "Número máximo de tentativas excedido"),
    ],
)
def test_retry_rejections(app, gateway, export_log_id, changes, status, message) -> None:
    if export_log_id == "own":
        export_log_id = _export_log(app, **changes).id

    with pytest.raises(ExportRetryError) as excinfo:
        app.retry_export(export_log_id)

    assert excinfo.value.status == status
    assert str(excinfo.value) == message
    assert gateway.calls == []


def test_gateway_failure_marks_export_failed(app, gateway) -> None:
    gateway.error = "PDF generation crashed"
    export_log = _export_log(app, status=ExportStatus.FAILED, retry_count=2)

    with pytest.raises(ExportRetryError) as excinfo:
        app.retry_export(export_log.id)

    assert excinfo.value.status == 500
    assert str(excinfo.value) == "Retry falhou"
    assert excinfo.value.details == "PDF generation crashed"
    stored = app.database.get_export_log(export_log.id)
    assert stored.status is ExportStatus.FAILED
    assert stored.retry_count == 3
    assert stored.error_message == "PDF generation crashed"


def test_http_gateway_calls_report_functions(app) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("send-report-email"):
            return httpx.Response(500, json={"error": "SMTP indisponível"})
        return httpx.Response(200, json={"success": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    http_gateway = HttpReportGateway(base_url="https://project.example.test/", service_key="svc", client=client)
    export_log = _export_log(app)

    http_gateway.generate_report(export_log, send_email=False)
    with pytest.raises(ReportGatewayError, match="SMTP indisponível"):
        http_gateway.send_report_email(export_log)

    assert [str(request.url) for request in seen] == [
        "https://project.example.test/functions/v1/generate-report",
        "https://project.example.test/functions/v1/send-report-email",
    ]
    assert seen[0].headers["Authorization"] == "Bearer svc"
    assert b'"os_number":"AUTO-12345678"' in seen[1].content.replace(b" ", b"")
