"""Manual retry of failed report exports."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from .database import Database
from .models import ExportLog, ExportStatus

logger = logging.getLogger(__name__)

MAX_EXPORT_RETRIES = 5


class ExportRetryError(ValueError):
    def __init__(self, message: str, status: int = 400, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details


class RetryMode(str, Enum):
    UPLOAD = "upload"
    EMAIL = "email"
    FULL = "full"


class ReportGateway(Protocol):
    def generate_report(self, export_log: ExportLog, *, send_email: bool) -> None:
        ...

    def send_report_email(self, export_log: ExportLog) -> None:
        ...


class ReportGatewayError(RuntimeError):
    pass


@dataclass
class HttpReportGateway:
    """Calls the report generation and e-mail functions over HTTP."""

    base_url: str
    service_key: str
    client: httpx.Client
    timeout: float = 60.0

    def generate_report(self, export_log: ExportLog, *, send_email: bool) -> None:
        self._call(
            "generate-report",
            {
                "inspection_id": export_log.inspection_id,
                "mode": export_log.metadata.get("mode") or "compatibility",
                "recipient_emails": export_log.recipient_emails or [],
                "send_email": send_email,
            },
        )

    def send_report_email(self, export_log: ExportLog) -> None:
        self._call(
            "send-report-email",
            {
                "export_log_id": export_log.id,
                "inspection_id": export_log.inspection_id,
                "pdf_url": f"{self.base_url.rstrip('/')}/storage/v1/object/public/reports/{export_log.file_name}",
                "client_name": export_log.metadata.get("client_name"),
                "inspection_date": export_log.metadata.get("inspection_date"),
                "version": export_log.version,
                "recipients": export_log.recipient_emails,
                "os_number": export_log.metadata.get("os_number") or f"AUTO-{export_log.inspection_id[-8:]}",
            },
        )

    def _call(self, function_name: str, payload: Dict[str, Any]) -> None:
        url = f"{self.base_url.rstrip('/')}/functions/v1/{function_name}"
        try:
            response = self.client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self.service_key}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise ReportGatewayError(str(exc)) from exc
        if response.is_success:
            return
        try:
            detail = response.json().get("error")
        except ValueError:
            detail = None
        raise ReportGatewayError(detail or f"HTTP {response.status_code}")


def retry_mode_for(export_log: ExportLog) -> RetryMode:
    if export_log.status is ExportStatus.FAILED and export_log.uploaded_at is None:
        return RetryMode.UPLOAD
    if export_log.status is ExportStatus.FAILED and export_log.email_delivered_at is None:
        return RetryMode.EMAIL
    return RetryMode.FULL


@dataclass
class ExportRetryService:
    database: Database
    gateway: ReportGateway
    max_retries: int = MAX_EXPORT_RETRIES

    def retry(self, export_log_id: Optional[int]) -> Dict[str, Any]:
        if not export_log_id:
            raise ExportRetryError("export_log_id é obrigatório")
        export_log = self.database.get_export_log(int(export_log_id))
        if export_log is None:
            raise ExportRetryError("Log de exportação não encontrado", status=404)
        if export_log.status is ExportStatus.SUCCESS:
            raise ExportRetryError("Exportação já foi bem-sucedida")
        if export_log.retry_count >= self.max_retries:
            raise ExportRetryError("Número máximo de tentativas excedido")

        mode = retry_mode_for(export_log)
        attempt = replace(
            export_log,
            retry_count=export_log.retry_count + 1,
            status=ExportStatus.PENDING,
            error_message=None,
        )
        self.database.save_export_log(attempt)
        logger.info("Retrying export %s (%s, attempt %d)", export_log.id, mode.value, attempt.retry_count)

        try:
            if mode is RetryMode.UPLOAD:
                self.gateway.generate_report(export_log, send_email=False)
            elif mode is RetryMode.EMAIL:
                self.gateway.send_report_email(export_log)
            else:
                self.gateway.generate_report(export_log, send_email=bool(export_log.metadata.get("send_email")))
        except ReportGatewayError as exc:
            attempt.status = ExportStatus.FAILED
            attempt.error_message = str(exc)
            self.database.save_export_log(attempt)
            logger.warning("Export %s retry failed: %s", export_log.id, exc)
            raise ExportRetryError("Retry falhou", status=500, details=str(exc)) from exc

        return {
            "success": True,
            "message": "Retry executado com sucesso",
            "export_log_id": export_log.id,
            "retry_mode": mode.value,
        }
