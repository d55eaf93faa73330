from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

from .forms import check_module_config, is_other_selected, other_field_name
from .models import (
    ConditionalRequirements,
    FieldSpec,
    FieldType,
    ModuleConfig,
    ModuleValidationResult,
    NumberRange,
)
from .rules import CABIN_TYPE_FIELD, DEFAULT_RESOLVER, ConditionalRuleResolver

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


class IssueKind(str, Enum):
    FIELD_MISSING = "field_missing"
    OTHER_UNSPECIFIED = "other_unspecified"
    FIELD_FORMAT = "field_format"
    PHOTO_MISSING = "photo_missing"


@dataclass(frozen=True)
class ModuleIssue:
    kind: IssueKind
    name: str
    label: str
    detail: Optional[str] = None

    @property
    def message(self) -> str:
        if self.kind is IssueKind.OTHER_UNSPECIFIED:
            return f"{self.label} (especificação)"
        if self.kind is IssueKind.FIELD_FORMAT:
            return f"{self.label} ({self.detail})"
        return self.label


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _range_text(bounds: NumberRange, unit: Optional[str]) -> tuple[str, str]:
    suffix = f" {unit}" if unit else ""
    return (f"valor mínimo: {_number(bounds.min)}{suffix}", f"valor máximo: {_number(bounds.max)}{suffix}")


def _number(value: Optional[float]) -> str:
    if value is None:
        return ""
    return str(int(value)) if float(value).is_integer() else str(value)


@dataclass
class ModuleValidator:
    resolver: ConditionalRuleResolver = DEFAULT_RESOLVER

    def validate_module(
        self,
        module_type: str,
        module_config: ModuleConfig,
        module_data: Mapping[str, Optional[str]],
        photo_data: Mapping[str, Sequence[str]],
        *,
        cabin_type: Optional[str] = None,
    ) -> ModuleValidationResult:
        issues = self.collect_issues(module_type, module_config, module_data, photo_data, cabin_type=cabin_type)
        errors = [issue.message for issue in issues]
        logger.debug("Module %s validated with %d error(s)", module_type, len(errors))
        return ModuleValidationResult(is_valid=not errors, errors=errors)

    def collect_issues(
        self,
        module_type: str,
        module_config: ModuleConfig,
        module_data: Mapping[str, Optional[str]],
        photo_data: Mapping[str, Sequence[str]],
        *,
        cabin_type: Optional[str] = None,
    ) -> List[ModuleIssue]:
        check_module_config(module_config)
        if module_config.id != module_type:
            raise ValueError(f"Module config '{module_config.id}' does not describe module '{module_type}'")
        if cabin_type is None:
            cabin_type = module_data.get(CABIN_TYPE_FIELD)
        conditional = self.resolver.resolve(cabin_type)

        issues: List[ModuleIssue] = []
        for spec in module_config.fields:
            if not self._field_required(spec, conditional):
                issues.extend(self._format_issues(spec, module_data.get(spec.name)))
                continue
            value = module_data.get(spec.name)
            if _is_blank(value):
                issues.append(ModuleIssue(IssueKind.FIELD_MISSING, spec.name, spec.label))
                continue
            assert value is not None
            if is_other_selected(spec, value) and _is_blank(module_data.get(other_field_name(spec.name))):
                issues.append(ModuleIssue(IssueKind.OTHER_UNSPECIFIED, spec.name, spec.label))
                continue
            issues.extend(self._format_issues(spec, value))

        for photo in module_config.photos:
            if not (photo.required or photo.name in conditional.photos):
                continue
            if not photo_data.get(photo.name):
                issues.append(ModuleIssue(IssueKind.PHOTO_MISSING, photo.name, photo.label))
        return issues

    @staticmethod
    def _field_required(spec: FieldSpec, conditional: ConditionalRequirements) -> bool:
        return spec.required or spec.name in conditional.fields

    @staticmethod
    def _format_issues(spec: FieldSpec, value: Optional[str]) -> List[ModuleIssue]:
        if _is_blank(value):
            return []
        text = str(value).strip()
        if spec.field_type is FieldType.TIME:
            if not TIME_PATTERN.match(text):
                return [ModuleIssue(IssueKind.FIELD_FORMAT, spec.name, spec.label, "formato inválido - use HH:MM")]
            return []
        if spec.field_type is not FieldType.NUMBER:
            return []
        try:
            number = float(text.replace(",", "."))
        except ValueError:
            return [ModuleIssue(IssueKind.FIELD_FORMAT, spec.name, spec.label, "deve ser um número válido")]
        bounds = spec.validation
        if bounds is None:
            return []
        below, above = _range_text(bounds, spec.unit)
        if bounds.min is not None and number < bounds.min:
            return [ModuleIssue(IssueKind.FIELD_FORMAT, spec.name, spec.label, below)]
        if bounds.max is not None and number > bounds.max:
            return [ModuleIssue(IssueKind.FIELD_FORMAT, spec.name, spec.label, above)]
        return []

    def validate_measurements(
        self,
        module_config: ModuleConfig,
        readings: Mapping[str, Optional[str]],
    ) -> Dict[str, List[str]]:
        """Range-check measurement readings; blank optional readings are skipped."""
        problems: Dict[str, List[str]] = {}
        for spec in module_config.measurements:
            value = readings.get(spec.name)
            if _is_blank(value):
                if spec.required:
                    problems[spec.name] = ["Medição obrigatória"]
                continue
            try:
                number = float(str(value).strip().replace(",", "."))
            except ValueError:
                problems[spec.name] = ["Deve ser um número válido"]
                continue
            if spec.range is None:
                continue
            if spec.range.min is not None and number < spec.range.min:
                problems[spec.name] = [f"Valor mínimo: {_number(spec.range.min)}"]
            elif spec.range.max is not None and number > spec.range.max:
                problems[spec.name] = [f"Valor máximo: {_number(spec.range.max)}"]
        return problems


def validate_module(
    module_type: str,
    module_config: ModuleConfig,
    module_data: Mapping[str, Optional[str]],
    photo_data: Mapping[str, Sequence[str]],
) -> ModuleValidationResult:
    return ModuleValidator().validate_module(module_type, module_config, module_data, photo_data)
