from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class FieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    DATE = "date"
    TIME = "time"


class MeasurementKind(str, Enum):
    VOLTAGE = "voltage"
    CURRENT = "current"
    TEMPERATURE = "temperature"
    RESISTANCE = "resistance"
    OTHER = "other"


@dataclass(frozen=True)
class NumberRange:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    field_type: FieldType = FieldType.TEXT
    required: bool = False
    options: Tuple[str, ...] = ()
    unit: Optional[str] = None
    validation: Optional[NumberRange] = None


@dataclass(frozen=True)
class PhotoSpec:
    name: str
    label: str
    required: bool = False
    max_photos: int = 1


@dataclass(frozen=True)
class MeasurementSpec:
    name: str
    label: str
    unit: str
    kind: MeasurementKind = MeasurementKind.OTHER
    range: Optional[NumberRange] = None
    required: bool = False


@dataclass(frozen=True)
class ModuleConfig:
    id: str
    title: str
    order: int
    required: bool
    fields: Tuple[FieldSpec, ...] = ()
    photos: Tuple[PhotoSpec, ...] = ()
    measurements: Tuple[MeasurementSpec, ...] = ()

    def field(self, name: str) -> Optional[FieldSpec]:
        return next((spec for spec in self.fields if spec.name == name), None)


@dataclass(frozen=True)
class ConditionalRequirements:
    fields: FrozenSet[str] = frozenset()
    photos: FrozenSet[str] = frozenset()
    modules: FrozenSet[str] = frozenset()

    def is_empty(self) -> bool:
        return not (self.fields or self.photos or self.modules)


@dataclass(frozen=True)
class CabinTypeRule:
    key: str
    label: str
    aliases: Tuple[str, ...]
    conditional_items: ConditionalRequirements


@dataclass
class ModuleValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"isValid": self.is_valid, "errors": list(self.errors)}


@dataclass
class ReportValidationResult:
    is_valid: bool
    missing_fields: List[str] = field(default_factory=list)
    errors_sample: List[str] = field(default_factory=list)
    critical_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "isValid": self.is_valid,
            "missingFields": list(self.missing_fields),
            "errorsSample": list(self.errors_sample),
            "criticalErrors": list(self.critical_errors),
        }


@dataclass
class ModuleDataRow:
    inspection_id: str
    module_type: str
    field_name: str
    field_value: Optional[str]


@dataclass
class MediaRow:
    inspection_id: str
    module_type: str
    file_name: str
    photo_type_for_file: Optional[str]
    file_type: str = "image/jpeg"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    DEAD = "dead"


@dataclass
class WebhookQueueItem:
    id: int
    event_type: str
    payload: Dict[str, Any]
    status: WebhookStatus
    attempts: int
    priority: int
    created_at: datetime
    next_retry_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class WebhookLogEntry:
    id: int
    queue_id: int
    event_type: str
    target_url: str
    request_payload: Dict[str, Any]
    response_status: Optional[int]
    response_body: Optional[str]
    error: Optional[str]
    created_at: datetime


class ExportStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    SENDING_EMAIL = "sending_email"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ExportLog:
    id: int
    inspection_id: str
    file_name: str
    version: int
    status: ExportStatus
    retry_count: int
    recipient_emails: List[str]
    metadata: Dict[str, Any]
    created_at: datetime
    uploaded_at: Optional[datetime] = None
    email_delivered_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class WorkOrder:
    id: int
    os_number: str
    inspection_id: str
    fault_id: Optional[str]
    description: str
    priority: str
    estimated_cost: Optional[float]
    assigned_to: Optional[str]
    created_at: datetime


@dataclass
class CorrectiveAction:
    id: int
    fault_id: str
    inspection_id: str
    descricao: str
    criticidade: str
    custo_estimado: Optional[float]
    responsavel: Optional[str]
    status: str
    fotos_before_count: int
    fotos_after_count: int
    data_deteccao: datetime
