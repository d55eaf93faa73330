"""Environment driven integration settings.

Only the composition root reads these. Everything below it receives the
resolved ``WebhookEndpoint`` mapping or plain values.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .webhooks import (
    BATCH_SIZE,
    COST_CHANGED,
    HIGH_CRITICALITY,
    MAX_ATTEMPTS,
    REQUEST_TIMEOUT,
    WORK_ORDER_CREATED,
    WebhookEndpoint,
    build_endpoint,
)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE_PATH = PROJECT_ROOT / ".env"


class IntegrationSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Work order management system
    external_woms_api_url: str = ""
    external_woms_api_key: str = ""

    # Critical alerts
    notification_webhook_url: str = ""
    notification_api_key: str = ""
    slack_webhook_url: str = ""
    teams_webhook_url: str = ""
    custom_notification_api_url: str = ""

    # Financial tracking
    cost_tracking_api_url: str = ""
    cost_tracking_api_key: str = ""

    # Report pipeline
    functions_base_url: str = ""
    service_role_key: str = ""

    database_path: str = "data/inspecao.db"
    webhook_request_timeout: float = REQUEST_TIMEOUT
    webhook_max_attempts: int = MAX_ATTEMPTS
    webhook_batch_size: int = BATCH_SIZE
    log_level: str = "INFO"

    def endpoints(self) -> Dict[str, WebhookEndpoint]:
        candidates = {
            WORK_ORDER_CREATED: build_endpoint(
                self.external_woms_api_url,
                self.external_woms_api_key,
                tag_source=True,
                timeout=self.webhook_request_timeout,
            ),
            HIGH_CRITICALITY: build_endpoint(
                self.notification_webhook_url,
                self.notification_api_key,
                timeout=self.webhook_request_timeout,
            ),
            COST_CHANGED: build_endpoint(
                self.cost_tracking_api_url,
                self.cost_tracking_api_key,
                tag_source=True,
                timeout=self.webhook_request_timeout,
            ),
        }
        return {event_type: endpoint for event_type, endpoint in candidates.items() if endpoint is not None}

    def notification_platforms(self) -> Dict[str, Optional[str]]:
        return {
            "slack": self.slack_webhook_url or None,
            "teams": self.teams_webhook_url or None,
            "custom": self.custom_notification_api_url or None,
        }

    def configured_variables(self) -> Dict[str, bool]:
        return {
            "EXTERNAL_WOMS_API_URL": bool(self.external_woms_api_url),
            "EXTERNAL_WOMS_API_KEY": bool(self.external_woms_api_key),
            "NOTIFICATION_WEBHOOK_URL": bool(self.notification_webhook_url),
            "NOTIFICATION_API_KEY": bool(self.notification_api_key),
            "SLACK_WEBHOOK_URL": bool(self.slack_webhook_url),
            "TEAMS_WEBHOOK_URL": bool(self.teams_webhook_url),
            "CUSTOM_NOTIFICATION_API_URL": bool(self.custom_notification_api_url),
            "COST_TRACKING_API_URL": bool(self.cost_tracking_api_url),
            "COST_TRACKING_API_KEY": bool(self.cost_tracking_api_key),
        }
