"""Cabin-type driven conditional requirements."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from .forms import ModuleConfigError
from .models import CabinTypeRule, ConditionalRequirements

logger = logging.getLogger(__name__)

CABIN_TYPE_FIELD = "cabin_type"

NO_REQUIREMENTS = ConditionalRequirements()


def _requirements(*, fields: Iterable[str], photos: Iterable[str], modules: Iterable[str]) -> ConditionalRequirements:
    return ConditionalRequirements(fields=frozenset(fields), photos=frozenset(photos), modules=frozenset(modules))


CABIN_TYPES: tuple[CabinTypeRule, ...] = (
    CabinTypeRule(
        key="CONVENCIONAL",
        label="Cabine Convencional",
        aliases=("Alvenaria", "Metálica", "Blindada", "Abrigada", "ComDisjuntorMT", "Padrao", "Completa"),
        conditional_items=_requirements(
            fields=("mt_breaker_type", "protection_relay", "metering_system"),
            photos=("mt_breaker", "protection_panel", "metering_equipment"),
            modules=("mt", "grid_connection"),
        ),
    ),
    CabinTypeRule(
        key="SIMPLIFICADA",
        label="Cabine Simplificada",
        aliases=("Compacta", "SemDisjuntorMT", "Fusivel"),
        conditional_items=_requirements(
            fields=("fuse_type", "simplified_protection"),
            photos=("fuse_protection", "simplified_panel"),
            modules=("bt",),
        ),
    ),
    CabinTypeRule(
        key="ESTALEIRO",
        label="Instalação em Estaleiro/Poste",
        aliases=("PosteTrafo", "Aerea", "Poste"),
        conditional_items=_requirements(
            fields=("pole_type", "aerial_installation"),
            photos=("pole_installation", "aerial_view"),
            modules=("transformers",),
        ),
    ),
)


@dataclass(frozen=True)
class ConditionalRuleResolver:
    rules: Mapping[str, CabinTypeRule]

    @classmethod
    def from_rules(cls, rules: Iterable[CabinTypeRule]) -> "ConditionalRuleResolver":
        table: dict[str, CabinTypeRule] = {}
        for rule in rules:
            if not rule.key:
                raise ModuleConfigError("Cabin type rule is missing its key")
            if rule.key in table:
                raise ModuleConfigError(f"Cabin type '{rule.key}' is declared more than once")
            table[rule.key] = rule
        return cls(rules=table)

    def resolve(self, cabin_type_value: Optional[str]) -> ConditionalRequirements:
        if not cabin_type_value:
            return NO_REQUIREMENTS
        rule = self.rules.get(cabin_type_value)
        if rule is None:
            logger.debug("No conditional rule for cabin type %r", cabin_type_value)
            return NO_REQUIREMENTS
        return rule.conditional_items

    def key_for_alias(self, alias: str) -> Optional[str]:
        for rule in self.rules.values():
            if alias == rule.key or alias in rule.aliases:
                return rule.key
        return None


LEGACY_CABIN_TYPES: dict[str, str] = {
    "Alvenaria": "CONVENCIONAL",
    "Metálica": "CONVENCIONAL",
    "Compacta": "SIMPLIFICADA",
    "Blindada": "CONVENCIONAL",
    "Abrigada": "CONVENCIONAL",
    "PosteTrafo": "ESTALEIRO",
    "Aerea": "ESTALEIRO",
    "Poste": "ESTALEIRO",
    "SemDisjuntorMT": "SIMPLIFICADA",
    "Fusivel": "SIMPLIFICADA",
    "ComDisjuntorMT": "CONVENCIONAL",
    "Padrao": "CONVENCIONAL",
    "Completa": "CONVENCIONAL",
}


def migrate_cabin_type(old_type: str) -> str:
    return LEGACY_CABIN_TYPES.get(old_type, old_type)


DEFAULT_RESOLVER = ConditionalRuleResolver.from_rules(CABIN_TYPES)
