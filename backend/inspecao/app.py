from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from .database import Database
from .exports import ExportRetryService, HttpReportGateway, ReportGateway
from .forms import get_module_config
from .inspections import InspectionService
from .integrations import IntegrationHandlers, IntegrationTargets
from .models import (
    CorrectiveAction,
    ExportLog,
    MediaRow,
    ModuleDataRow,
    ModuleValidationResult,
    ReportValidationResult,
    WorkOrder,
)
from .reports import ReportSettings, ReportValidator, photo_slots
from .rules import CABIN_TYPE_FIELD
from .settings import IntegrationSettings
from .validation import ModuleValidator
from .webhooks import (
    COST_CHANGED,
    HIGH_CRITICALITY,
    WORK_ORDER_CREATED,
    WebhookDispatcher,
    WebhookQueue,
    cost_changed_event,
    format_timestamp,
    high_criticality_event,
    work_order_event,
)

logger = logging.getLogger(__name__)

HIGH_PRIORITY_LEVELS = {"urgent", "high"}
HIGH_CRITICALITY_LEVELS = {"alta", "crítica", "critica"}
WORK_ORDER_PRIORITY_HIGH = 5
WORK_ORDER_PRIORITY_NORMAL = 1
CORRECTIVE_ACTION_PRIORITY = 3
RECENT_LOG_LIMIT = 10

WEBHOOK_TARGETS = {
    "external_os_integration": ("handle-new-os", "handle_new_os"),
    "notification_webhook": ("send-notification", "send_notification"),
    "cost_tracking_webhook": ("update-cost-tracking", "update_cost_tracking"),
}


class ReportBlockedError(ValueError):
    def __init__(self, validation: ReportValidationResult) -> None:
        super().__init__("Relatório bloqueado por erros críticos")
        self.validation = validation


@dataclass
class InspectionApp:
    database: Database
    inspections: InspectionService
    module_validator: ModuleValidator
    report_validator: ReportValidator
    queue: WebhookQueue
    dispatcher: WebhookDispatcher
    integrations: IntegrationHandlers
    export_retry: ExportRetryService
    settings: IntegrationSettings
    owned_client: Optional[httpx.Client] = None

    @classmethod
    def create(
        cls,
        database_path: Path,
        *,
        settings: Optional[IntegrationSettings] = None,
        client: Optional[httpx.Client] = None,
        gateway: Optional[ReportGateway] = None,
        report_settings: Optional[ReportSettings] = None,
    ) -> "InspectionApp":
        settings = settings or IntegrationSettings()
        owned_client = None
        if client is None:
            client = owned_client = httpx.Client(timeout=settings.webhook_request_timeout)
        database = Database(database_path)
        database.initialize()
        module_validator = ModuleValidator()
        queue = WebhookQueue(database)
        if gateway is None:
            gateway = HttpReportGateway(
                base_url=settings.functions_base_url,
                service_key=settings.service_role_key,
                client=client,
            )
        return cls(
            database=database,
            inspections=InspectionService(database),
            module_validator=module_validator,
            report_validator=ReportValidator(
                database,
                settings=report_settings or ReportSettings(),
                module_validator=module_validator,
            ),
            queue=queue,
            dispatcher=WebhookDispatcher(
                queue=queue,
                endpoints=settings.endpoints(),
                client=client,
                max_attempts=settings.webhook_max_attempts,
            ),
            integrations=IntegrationHandlers(
                targets=IntegrationTargets.from_settings(settings),
                client=client,
                timeout=settings.webhook_request_timeout,
            ),
            export_retry=ExportRetryService(database, gateway),
            settings=settings,
            owned_client=owned_client,
        )

    def close(self) -> None:
        """Close the HTTP client if this app created it."""
        if self.owned_client is not None:
            self.owned_client.close()
            self.owned_client = None

    def __enter__(self) -> "InspectionApp":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Data entry
    def list_modules(self) -> List[Dict[str, object]]:
        return self.inspections.list_modules()

    def save_module_data(self, inspection_id: str, module_type: str, values: Mapping[str, Any]) -> List[ModuleDataRow]:
        return self.inspections.save_module_data(inspection_id, module_type, values)

    def add_media(
        self,
        inspection_id: str,
        module_type: str,
        file_name: str,
        photo_type: Optional[str] = None,
        file_type: str = "image/jpeg",
    ) -> MediaRow:
        return self.inspections.add_media(inspection_id, module_type, file_name, photo_type, file_type)

    def remove_media(self, inspection_id: str, file_name: str) -> None:
        self.inspections.remove_media(inspection_id, file_name)

    # Validation
    def validate_module(self, inspection_id: str, module_type: str) -> ModuleValidationResult:
        config = get_module_config(module_type)
        values = self.inspections.module_values(inspection_id)
        cabin_type = (values.get("cabin_type") or {}).get(CABIN_TYPE_FIELD) or (values.get("client") or {}).get(
            CABIN_TYPE_FIELD
        )
        return self.module_validator.validate_module(
            module_type,
            config,
            values.get(module_type) or {},
            photo_slots(config, self.database.list_media(inspection_id)),
            cabin_type=cabin_type,
        )

    def validate_final_report(self, inspection_id: str) -> ReportValidationResult:
        return self.report_validator.validate_final_report(inspection_id)

    def prepare_report(
        self,
        inspection_id: str,
        *,
        recipient_emails: Iterable[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ExportLog:
        validation = self.validate_final_report(inspection_id)
        if validation.critical_errors:
            logger.info("Report for %s blocked by %d critical error(s)", inspection_id, len(validation.critical_errors))
            raise ReportBlockedError(validation)
        version = self.database.latest_export_version(inspection_id) + 1
        details = dict(metadata or {})
        details.setdefault("mode", "compatibility")
        details["missing_fields"] = list(validation.missing_fields)
        return self.database.add_export_log(
            inspection_id=inspection_id,
            file_name=f"relatorio-{inspection_id}-v{version}.pdf",
            recipient_emails=recipient_emails,
            metadata=details,
            version=version,
        )

    def export_inspection_workbook(self, inspection_id: str) -> tuple[str, bytes]:
        return self.inspections.export_inspection_workbook(inspection_id, self.validate_final_report(inspection_id))

    # Business operations that emit webhook events
    def create_work_order(
        self,
        *,
        os_number: str,
        inspection_id: str,
        description: str,
        priority: str = "normal",
        fault_id: Optional[str] = None,
        estimated_cost: Optional[float] = None,
        assigned_to: Optional[str] = None,
    ) -> WorkOrder:
        if not os_number or not description:
            raise ValueError("Work orders need an OS number and a description")
        if self.database.get_work_order_by_number(os_number):
            raise ValueError(f"Work order {os_number} already exists")
        work_order = self.database.add_work_order(
            os_number=os_number,
            inspection_id=inspection_id,
            fault_id=fault_id,
            description=description,
            priority=priority,
            estimated_cost=estimated_cost,
            assigned_to=assigned_to,
        )
        queue_priority = WORK_ORDER_PRIORITY_HIGH if priority in HIGH_PRIORITY_LEVELS else WORK_ORDER_PRIORITY_NORMAL
        self.queue.enqueue(WORK_ORDER_CREATED, work_order_event(work_order), priority=queue_priority)
        return work_order

    def record_corrective_action(
        self,
        *,
        fault_id: str,
        inspection_id: str,
        descricao: str,
        criticidade: str,
        custo_estimado: Optional[float] = None,
        responsavel: Optional[str] = None,
        status: str = "pendente",
        fotos_before_count: int = 0,
        fotos_after_count: int = 0,
    ) -> CorrectiveAction:
        if self.database.get_corrective_action(fault_id):
            raise ValueError(f"Corrective action for fault {fault_id} already exists")
        action = self.database.add_corrective_action(
            fault_id=fault_id,
            inspection_id=inspection_id,
            descricao=descricao,
            criticidade=criticidade,
            custo_estimado=custo_estimado,
            responsavel=responsavel,
            status=status,
            fotos_before_count=fotos_before_count,
            fotos_after_count=fotos_after_count,
        )
        if criticidade.strip().lower() in HIGH_CRITICALITY_LEVELS:
            self.queue.enqueue(HIGH_CRITICALITY, high_criticality_event(action), priority=CORRECTIVE_ACTION_PRIORITY)
        if custo_estimado is not None:
            self.queue.enqueue(COST_CHANGED, cost_changed_event(action, None))
        return action

    def update_corrective_action_cost(self, fault_id: str, custo_estimado: Optional[float]) -> CorrectiveAction:
        action = self.database.get_corrective_action(fault_id)
        if not action:
            raise LookupError("Corrective action not found")
        previous = action.custo_estimado
        if previous == custo_estimado:
            return action
        self.database.update_corrective_action_cost(fault_id, custo_estimado)
        action.custo_estimado = custo_estimado
        self.queue.enqueue(COST_CHANGED, cost_changed_event(action, previous))
        return action

    # Queue and integration operations
    def process_webhook_queue(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return self.dispatcher.process_batch(limit or self.settings.webhook_batch_size)

    def retry_export(self, export_log_id: Optional[int]) -> Dict[str, Any]:
        return self.export_retry.retry(export_log_id)

    def webhook_configuration(self) -> Dict[str, Any]:
        """Describe the integrations by presence only; URLs and keys are never returned."""
        configured = self.settings.configured_variables()
        platforms = self.settings.notification_platforms()
        return {
            "success": True,
            "webhooks": [
                {
                    "name": "external_os_integration",
                    "description": "Integração com sistema WOMS/ERP para Ordens de Serviço",
                    "enabled": configured["EXTERNAL_WOMS_API_URL"],
                    "events": [WORK_ORDER_CREATED],
                },
                {
                    "name": "notification_webhook",
                    "description": "Notificações em tempo real para Slack/Teams/Custom",
                    "enabled": configured["NOTIFICATION_WEBHOOK_URL"],
                    "platforms": {name: {"enabled": bool(url)} for name, url in platforms.items()},
                    "events": [HIGH_CRITICALITY],
                },
                {
                    "name": "cost_tracking_webhook",
                    "description": "Integração com sistema financeiro para tracking de custos",
                    "enabled": configured["COST_TRACKING_API_URL"],
                    "events": [COST_CHANGED],
                },
            ],
            "queue_statistics": self.queue.statistics(),
            "recent_logs": [
                {
                    "event_type": entry.event_type,
                    "response_status": entry.response_status,
                    "created_at": format_timestamp(entry.created_at),
                }
                for entry in self.queue.recent_logs(RECENT_LOG_LIMIT)
            ],
            "environment_variables": {
                "required": sorted(configured),
                "configured": sorted(name for name, present in configured.items() if present),
            },
        }

    def test_webhook(self, webhook_name: Optional[str], test_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        target = WEBHOOK_TARGETS.get(webhook_name or "")
        if target is None:
            return {"success": False, "error": "Webhook desconhecido"}
        function_name, handler_name = target
        data = test_data or self._default_test_data(webhook_name or "")
        status, body = getattr(self.integrations, handler_name)(data)
        logger.info("Test dispatch of %s answered %s", webhook_name, status)
        return {
            "success": 200 <= status < 300,
            "webhook_name": webhook_name,
            "target_function": function_name,
            "response_status": status,
            "response_body": json.dumps(body, ensure_ascii=False),
            "test_data": data,
        }

    def _default_test_data(self, webhook_name: str) -> Dict[str, Any]:
        now = self.queue.clock()
        stamp = int(now.timestamp() * 1000)
        if webhook_name == "external_os_integration":
            return {
                "os_number": f"TEST-OS-{stamp}",
                "inspection_id": "test_inspection",
                "fault_id": "test_fault",
                "description": "Test work order for webhook validation",
                "priority": "urgent",
                "estimated_cost": 1000,
                "created_at": format_timestamp(now),
            }
        if webhook_name == "notification_webhook":
            return {
                "message": "Test notification from webhook system",
                "recipients": ["test_user"],
                "urgency": "medium",
                "type": "test_alert",
                "inspection_id": "test_inspection",
                "fault_id": "test_fault",
            }
        return {
            "fault_id": f"test_fault_{stamp}",
            "inspection_id": "test_inspection",
            "descricao": "Test corrective action for cost tracking",
            "criticidade": "alta",
            "custo_estimado": 1500,
            "status": "pendente",
            "data_deteccao": format_timestamp(now),
            "event_trigger": "cost_added",
        }
