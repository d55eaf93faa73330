"""Target functions that forward queue events to external systems."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from .webhooks import (
    PAYLOAD_SOURCE,
    REQUEST_TIMEOUT,
    SOURCE_HEADER,
    format_timestamp,
    map_criticality_to_external,
    map_priority_to_external,
    utcnow,
)

logger = logging.getLogger(__name__)

HandlerResult = Tuple[int, Dict[str, Any]]

SLACK_COLORS = {"critical": "danger", "high": "warning", "medium": "good", "low": "#36a64f"}
TEAMS_COLORS = {"critical": "FF0000", "high": "FF6600", "medium": "FFCC00", "low": "00CC00"}
REPORT_SYSTEM = "Sistema de Inspeção Elétrica"


@dataclass(frozen=True)
class IntegrationTargets:
    woms_url: Optional[str] = None
    woms_api_key: Optional[str] = None
    cost_tracking_url: Optional[str] = None
    cost_tracking_api_key: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None
    custom_notification_url: Optional[str] = None
    notification_api_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "IntegrationTargets":
        return cls(
            woms_url=settings.external_woms_api_url or None,
            woms_api_key=settings.external_woms_api_key or None,
            cost_tracking_url=settings.cost_tracking_api_url or None,
            cost_tracking_api_key=settings.cost_tracking_api_key or None,
            slack_webhook_url=settings.slack_webhook_url or None,
            teams_webhook_url=settings.teams_webhook_url or None,
            custom_notification_url=settings.custom_notification_api_url or None,
            notification_api_key=settings.notification_api_key or None,
        )


def _record(body: Mapping[str, Any]) -> Mapping[str, Any]:
    record = body.get("record")
    return record if isinstance(record, Mapping) else body


def _source_headers(api_key: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "X-Source": SOURCE_HEADER}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _integration_metadata() -> Dict[str, str]:
    return {"source": PAYLOAD_SOURCE, "version": "1.0", "integration_type": "automatic"}


@dataclass
class IntegrationHandlers:
    targets: IntegrationTargets
    client: httpx.Client
    clock: Callable[[], datetime] = utcnow
    timeout: float = REQUEST_TIMEOUT

    def handle_new_os(self, body: Mapping[str, Any]) -> HandlerResult:
        work_order = _record(body)
        if not work_order.get("os_number") or not work_order.get("description"):
            return 400, {"success": False, "error": "Campos obrigatórios ausentes: os_number e description"}
        if not self.targets.woms_url:
            logger.info("EXTERNAL_WOMS_API_URL not configured; simulating work order integration")
            return 200, {
                "success": True,
                "message": "API externa não configurada - simulação de sucesso",
                "simulated": True,
            }

        payload = {
            "work_order": {
                "external_reference": work_order.get("os_number"),
                "inspection_id": work_order.get("inspection_id"),
                "fault_id": work_order.get("fault_id"),
                "title": work_order.get("description"),
                "priority": map_priority_to_external(work_order.get("priority")),
                "estimated_cost": {"amount": work_order.get("estimated_cost"), "currency": "BRL"},
                "assigned_technician": work_order.get("assigned_to") or None,
                "source_system": "inspecao_eletrica",
                "created_at": work_order.get("created_at"),
                "integration_timestamp": format_timestamp(self.clock()),
            },
            "metadata": _integration_metadata(),
        }
        try:
            response = self._post(self.targets.woms_url, payload, _source_headers(self.targets.woms_api_key))
        except httpx.HTTPError as exc:
            logger.error("Work order %s integration failed: %s", work_order.get("os_number"), exc)
            return 500, {
                "success": False,
                "error": "Erro na integração com sistema externo",
                "details": str(exc),
            }
        logger.info("Work order %s integrated with external system", work_order.get("os_number"))
        return 200, {
            "success": True,
            "message": "Ordem de Serviço integrada com sucesso",
            "os_number": work_order.get("os_number"),
            "external_response": response.text,
        }

    def update_cost_tracking(self, body: Mapping[str, Any]) -> HandlerResult:
        cost = _record(body)
        if not cost.get("fault_id") or not cost.get("inspection_id") or cost.get("custo_estimado") is None:
            return 400, {
                "success": False,
                "error": "Campos obrigatórios ausentes: fault_id, inspection_id e custo_estimado",
            }
        if not self.targets.cost_tracking_url:
            logger.info("COST_TRACKING_API_URL not configured; simulating cost integration")
            return 200, {
                "success": True,
                "message": "API de tracking de custos não configurada - simulação de sucesso",
                "simulated": True,
            }

        payload = {
            "cost_entry": {
                "reference_id": cost.get("fault_id"),
                "inspection_reference": cost.get("inspection_id"),
                "description": cost.get("descricao"),
                "category": "corrective_maintenance",
                "criticality_level": map_criticality_to_external(cost.get("criticidade")),
                "cost_data": {
                    "estimated_amount": cost.get("custo_estimado"),
                    "previous_amount": cost.get("custo_estimado_anterior"),
                    "currency": "BRL",
                    "change_type": cost.get("event_trigger"),
                },
                "responsible_party": cost.get("responsavel") or "Não especificado",
                "detection_date": cost.get("data_deteccao"),
                "status": cost.get("status"),
                "source_system": "inspecao_eletrica",
                "integration_timestamp": format_timestamp(self.clock()),
            },
            "metadata": _integration_metadata(),
        }
        try:
            response = self._post(
                self.targets.cost_tracking_url,
                payload,
                _source_headers(self.targets.cost_tracking_api_key),
            )
        except httpx.HTTPError as exc:
            logger.error("Cost integration for fault %s failed: %s", cost.get("fault_id"), exc)
            return 500, {
                "success": False,
                "error": "Erro na integração com sistema financeiro",
                "details": str(exc),
            }
        logger.info("Cost of fault %s integrated with financial system", cost.get("fault_id"))
        return 200, {
            "success": True,
            "message": "Dados de custo integrados com sucesso",
            "fault_id": cost.get("fault_id"),
            "cost_amount": cost.get("custo_estimado"),
            "external_response": response.text,
        }

    def send_notification(self, body: Mapping[str, Any]) -> HandlerResult:
        message = body.get("message")
        recipients = body.get("recipients") or []
        if not message or not recipients:
            return 400, {"success": False, "error": "Message e recipients são obrigatórios"}
        urgency = str(body.get("urgency") or "medium")

        results: List[Dict[str, Any]] = []
        if self.targets.slack_webhook_url:
            results.append(self._deliver("slack", self.targets.slack_webhook_url, self._slack_payload(body, urgency)))
        if self.targets.teams_webhook_url:
            results.append(self._deliver("teams", self.targets.teams_webhook_url, self._teams_payload(body, urgency)))
        if self.targets.custom_notification_url:
            results.append(
                self._deliver(
                    "custom",
                    self.targets.custom_notification_url,
                    self._custom_payload(body, urgency),
                    _source_headers(self.targets.notification_api_key),
                )
            )

        if not results:
            return 200, {"success": True, "message": "Nenhuma plataforma de notificação configurada", "results": []}
        succeeded = sum(1 for result in results if result["success"])
        return 200, {
            "success": succeeded > 0,
            "message": f"Notificações enviadas: {succeeded}/{len(results)} sucessos",
            "results": results,
        }

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        response = self.client.post(url, json=payload, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response

    def _deliver(
        self,
        platform: str,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            response = self.client.post(
                url,
                json=payload,
                headers=headers or {"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Notification to %s failed: %s", platform, exc)
            return {"platform": platform, "success": False, "error": str(exc)}
        return {
            "platform": platform,
            "success": response.is_success,
            "status": response.status_code,
            "error": None if response.is_success else response.text,
        }

    def _slack_payload(self, body: Mapping[str, Any], urgency: str) -> Dict[str, Any]:
        fields = [
            {"title": "Urgência", "value": urgency.upper(), "short": True},
            {"title": "Destinatários", "value": ", ".join(body.get("recipients") or []), "short": True},
        ]
        if body.get("inspection_id"):
            fields.append({"title": "Inspeção", "value": body["inspection_id"], "short": True})
        if body.get("fault_id"):
            fields.append({"title": "Falha", "value": body["fault_id"], "short": True})
        return {
            "text": body.get("message"),
            "attachments": [
                {
                    "color": SLACK_COLORS.get(urgency, "good"),
                    "fields": fields,
                    "footer": REPORT_SYSTEM,
                    "ts": calendar.timegm(self.clock().timetuple()),
                }
            ],
        }

    def _teams_payload(self, body: Mapping[str, Any], urgency: str) -> Dict[str, Any]:
        facts = [{"name": "Destinatários", "value": ", ".join(body.get("recipients") or [])}]
        if body.get("inspection_id"):
            facts.append({"name": "Inspeção", "value": body["inspection_id"]})
        if body.get("fault_id"):
            facts.append({"name": "ID da Falha", "value": body["fault_id"]})
        facts.append({"name": "Timestamp", "value": self.clock().strftime("%d/%m/%Y %H:%M:%S")})
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": TEAMS_COLORS.get(urgency, "0078D4"),
            "summary": body.get("message"),
            "sections": [
                {
                    "activityTitle": REPORT_SYSTEM,
                    "activitySubtitle": f"Urgência: {urgency.upper()}",
                    "text": body.get("message"),
                    "facts": facts,
                }
            ],
        }

    def _custom_payload(self, body: Mapping[str, Any], urgency: str) -> Dict[str, Any]:
        return {
            "type": body.get("type") or "general_notification",
            "message": body.get("message"),
            "recipients": list(body.get("recipients") or []),
            "urgency": urgency,
            "timestamp": format_timestamp(self.clock()),
            "source": PAYLOAD_SOURCE,
            "context": {
                "inspection_id": body.get("inspection_id"),
                "fault_id": body.get("fault_id"),
                "metadata": body.get("metadata") or {},
            },
        }
