"""Cross-module completeness check gating final report generation."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .forms import MODULE_CONFIGURATIONS, REPORT_REQUIRED_PHOTOS
from .models import (
    FieldType,
    MediaRow,
    ModuleConfig,
    ModuleDataRow,
    PhotoSpec,
    ReportValidationResult,
)
from .rules import CABIN_TYPE_FIELD
from .validation import IssueKind, ModuleIssue, ModuleValidator

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_MODULES: Tuple[str, ...] = ("client", "cabin_type", "transformers", "bt", "general_state")
DEFAULT_CRITICAL_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("client", "authorization"),
    ("general_state", "conclusion"),
)


class InspectionDataReader(Protocol):
    def list_module_data(self, inspection_id: str) -> Iterable[ModuleDataRow]:
        ...

    def list_media(self, inspection_id: str) -> Iterable[MediaRow]:
        ...


@dataclass(frozen=True)
class ReportSettings:
    required_modules: Tuple[str, ...] = DEFAULT_REQUIRED_MODULES
    critical_fields: Tuple[Tuple[str, str], ...] = DEFAULT_CRITICAL_FIELDS
    report_photos: Tuple[PhotoSpec, ...] = REPORT_REQUIRED_PHOTOS


@dataclass
class _Findings:
    missing_fields: List[str] = field(default_factory=list)
    errors_sample: List[str] = field(default_factory=list)
    critical_errors: List[str] = field(default_factory=list)

    def add(self, missing: str, sample: Optional[str] = None) -> None:
        if missing not in self.missing_fields:
            self.missing_fields.append(missing)
        if sample and sample not in self.errors_sample:
            self.errors_sample.append(sample)

    def critical(self, message: str) -> None:
        if message not in self.critical_errors:
            self.critical_errors.append(message)


def field_message(label: str, title: str) -> str:
    return f'O campo "{label}" no módulo "{title}" é obrigatório.'


def photo_message(label: str) -> str:
    return f'A foto "{label}" é um registro obrigatório para o relatório.'


def module_message(title: str) -> str:
    return f'O módulo "{title}" é obrigatório e não foi preenchido.'


def other_message(label: str, title: str) -> str:
    return f'Por favor, especifique o campo "{label}" no módulo "{title}"; o preenchimento é obrigatório.'


def photo_slots(config: ModuleConfig, media: Sequence[MediaRow]) -> Dict[str, List[str]]:
    """Group image files into the module's photo slots by tag or by slot name in the file name."""
    module_media = [row for row in media if row.module_type == config.id and row.file_type.startswith("image/")]
    return {
        photo.name: [
            row.file_name
            for row in module_media
            if row.photo_type_for_file == photo.name or photo.name in row.file_name
        ]
        for photo in config.photos
    }


@dataclass
class ReportValidator:
    reader: InspectionDataReader
    modules: Mapping[str, ModuleConfig] = field(default_factory=lambda: MODULE_CONFIGURATIONS)
    settings: ReportSettings = field(default_factory=ReportSettings)
    module_validator: ModuleValidator = field(default_factory=ModuleValidator)

    def validate_final_report(self, inspection_id: str) -> ReportValidationResult:
        fields_by_module: Dict[str, Dict[str, Optional[str]]] = defaultdict(dict)
        for row in self.reader.list_module_data(inspection_id):
            fields_by_module[row.module_type][row.field_name] = row.field_value
        media = [row for row in self.reader.list_media(inspection_id) if row.file_type.startswith("image/")]

        cabin_type = self._cabin_type(fields_by_module)
        conditional = self.module_validator.resolver.resolve(cabin_type)
        required = set(self.settings.required_modules) | set(conditional.modules)

        findings = _Findings()
        for module_id, config in self.modules.items():
            module_fields = fields_by_module.get(module_id) or {}
            if not module_fields:
                if module_id in required:
                    findings.add(f'Módulo "{config.title}"', module_message(config.title))
                continue
            photo_data = photo_slots(config, media)
            issues = self.module_validator.collect_issues(
                module_id, config, module_fields, photo_data, cabin_type=cabin_type
            )
            for issue in issues:
                self._fold(findings, config, issue)

        for module_id, field_name in self.settings.critical_fields:
            self._check_critical(findings, module_id, field_name, fields_by_module.get(module_id) or {})

        for photo in self.settings.report_photos:
            if not any(row.photo_type_for_file == photo.name for row in media):
                findings.add(f'Foto "{photo.label}"', photo_message(photo.label))

        result = ReportValidationResult(
            is_valid=not findings.critical_errors and not findings.missing_fields,
            missing_fields=findings.missing_fields,
            errors_sample=findings.errors_sample,
            critical_errors=findings.critical_errors,
        )
        logger.info(
            "Final report validation for %s: valid=%s missing=%d critical=%d",
            inspection_id,
            result.is_valid,
            len(result.missing_fields),
            len(result.critical_errors),
        )
        return result

    def _cabin_type(self, fields_by_module: Mapping[str, Mapping[str, Optional[str]]]) -> Optional[str]:
        for module_id in ("cabin_type", "client"):
            value = (fields_by_module.get(module_id) or {}).get(CABIN_TYPE_FIELD)
            if value and value.strip():
                return value.strip()
        return None

    def _fold(self, findings: _Findings, config: ModuleConfig, issue: ModuleIssue) -> None:
        if issue.kind is IssueKind.FIELD_MISSING:
            if (config.id, issue.name) in self.settings.critical_fields:
                spec = config.field(issue.name)
                if spec is not None and spec.field_type is FieldType.BOOLEAN:
                    # reported by the critical check instead
                    return
            findings.add(
                f'Campo "{issue.label}" no módulo "{config.title}"',
                field_message(issue.label, config.title),
            )
        elif issue.kind is IssueKind.OTHER_UNSPECIFIED:
            findings.add(
                f'Campo "{issue.label}" (especificação em "Outro") no módulo "{config.title}"',
                other_message(issue.label, config.title),
            )
        elif issue.kind is IssueKind.PHOTO_MISSING:
            findings.add(f'Foto "{issue.label}"', photo_message(issue.label))

    def _check_critical(
        self,
        findings: _Findings,
        module_id: str,
        field_name: str,
        module_fields: Mapping[str, Optional[str]],
    ) -> None:
        config = self.modules.get(module_id)
        spec = config.field(field_name) if config else None
        if config is None or spec is None:
            raise LookupError(f"Critical field '{module_id}.{field_name}' is not declared in the module table")
        value = module_fields.get(field_name)
        if spec.field_type is FieldType.BOOLEAN:
            if (value or "").strip().lower() != "true":
                findings.critical(
                    f'A {spec.label.lower()} no módulo "{config.title}" é obrigatória para gerar o relatório.'
                )
                if module_fields:
                    findings.add(f'{spec.label} no módulo "{config.title}"')
            return
        if value is None or not str(value).strip():
            findings.critical(field_message(spec.label, config.title))
