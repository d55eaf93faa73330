from .app import InspectionApp, ReportBlockedError
from .database import Database
from .reports import ReportValidator
from .validation import ModuleValidator, validate_module
from .webhooks import WebhookDispatcher, WebhookQueue

__all__ = [
    "Database",
    "InspectionApp",
    "ModuleValidator",
    "ReportBlockedError",
    "ReportValidator",
    "WebhookDispatcher",
    "WebhookQueue",
    "validate_module",
]
