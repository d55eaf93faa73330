"""Utility helpers for seeding sample inspections, work orders and corrective actions."""

from __future__ import annotations

import argparse
import logging
import random
import textwrap
import uuid
from pathlib import Path
from typing import Dict, Iterable, Optional

from .app import InspectionApp
from .forms import MODULE_CONFIGURATIONS, OTHER_OPTION
from .models import FieldSpec, FieldType, ModuleConfig
from .reports import DEFAULT_REQUIRED_MODULES
from .rules import CABIN_TYPE_FIELD, DEFAULT_RESOLVER

logger = logging.getLogger(__name__)

SAMPLE_DATE = "2024-05-10"
SAMPLE_TIME = "08:30"


def sample_value(spec: FieldSpec, rng: Optional[random.Random] = None) -> str:
    if spec.field_type is FieldType.BOOLEAN:
        return "true"
    if spec.field_type is FieldType.DATE:
        return SAMPLE_DATE
    if spec.field_type is FieldType.TIME:
        return SAMPLE_TIME
    if spec.field_type is FieldType.NUMBER:
        bounds = spec.validation
        low = bounds.min if bounds and bounds.min is not None else 1
        high = bounds.max if bounds and bounds.max is not None else low + 100
        return str(int((low + high) / 2))
    if spec.field_type is FieldType.SELECT:
        choices = [option for option in spec.options if option.strip().lower() != OTHER_OPTION]
        return rng.choice(choices) if rng else choices[0]
    return f"{spec.label} - exemplo"


def complete_module_values(config: ModuleConfig, rng: Optional[random.Random] = None) -> Dict[str, str]:
    return {spec.name: sample_value(spec, rng) for spec in config.fields}


def modules_for_cabin_type(cabin_type: str) -> list[str]:
    extra = DEFAULT_RESOLVER.resolve(cabin_type).modules
    wanted = set(DEFAULT_REQUIRED_MODULES) | set(extra)
    return [module_id for module_id in MODULE_CONFIGURATIONS if module_id in wanted]


def seed_complete_inspection(
    app: InspectionApp,
    inspection_id: str,
    *,
    cabin_type: str = "SIMPLIFICADA",
    rng: Optional[random.Random] = None,
    skip_modules: Iterable[str] = (),
) -> None:
    """Store an inspection that passes final validation for ``cabin_type``."""
    skipped = set(skip_modules)
    conditional = DEFAULT_RESOLVER.resolve(cabin_type)
    for module_id in modules_for_cabin_type(cabin_type):
        if module_id in skipped:
            continue
        config = MODULE_CONFIGURATIONS[module_id]
        values = complete_module_values(config, rng)
        if config.field(CABIN_TYPE_FIELD) is not None:
            values[CABIN_TYPE_FIELD] = cabin_type
        app.save_module_data(inspection_id, module_id, values)
        for photo in config.photos:
            if photo.required or photo.name in conditional.photos:
                app.add_media(inspection_id, module_id, f"{photo.name}-{uuid.uuid4().hex[:8]}.jpg", photo.name)


def generate_mock_data(app: InspectionApp, *, total: int = 10, seed: int = 42) -> None:
    rng = random.Random(seed)
    logger.info("Generating %d sample inspection(s) with seed %d", total, seed)
    cabin_types = list(DEFAULT_RESOLVER.rules)
    for index in range(total):
        inspection_id = f"insp-{index + 1:04d}"
        cabin_type = cabin_types[index % len(cabin_types)]
        skipped = ["transformers"] if rng.random() < 0.2 else []
        seed_complete_inspection(app, inspection_id, cabin_type=cabin_type, rng=rng, skip_modules=skipped)

        if rng.random() < 0.5:
            app.create_work_order(
                os_number=f"OS-{index + 1:05d}",
                inspection_id=inspection_id,
                fault_id=f"fault-{index + 1:04d}",
                description=rng.choice(
                    [
                        "Substituição de isolador trincado",
                        "Reaperto de conexões no quadro geral",
                        "Limpeza do transformador",
                    ]
                ),
                priority=rng.choice(["urgent", "high", "normal", "low"]),
                estimated_cost=float(rng.randint(300, 8000)),
                assigned_to=rng.choice(["Equipe A", "Equipe B", None]),
            )
        if rng.random() < 0.4:
            app.record_corrective_action(
                fault_id=f"fault-ca-{index + 1:04d}",
                inspection_id=inspection_id,
                descricao=rng.choice(["Vazamento de óleo no trafo", "Aterramento rompido", "Fusível subdimensionado"]),
                criticidade=rng.choice(["alta", "media", "baixa"]),
                custo_estimado=float(rng.randint(200, 5000)),
                responsavel=rng.choice(["Carlos", "Ana", None]),
                fotos_before_count=rng.randint(0, 3),
                fotos_after_count=rng.randint(0, 3),
            )


def _summarize(app: InspectionApp) -> str:
    statistics = app.queue.statistics()
    return textwrap.dedent(
        f"""
        Queued webhooks: {statistics['pending']} pending, {statistics['dead']} dead.
        Run the process-webhook-queue function to deliver them.
        """
    ).strip()


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate sample inspection data.")
    parser.add_argument(
        "--database",
        default="data/inspecao.db",
        help="Path to the SQLite database file (default: %(default)s)",
    )
    parser.add_argument(
        "--total",
        type=int,
        default=10,
        help="Number of inspections to generate (default: %(default)s)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducible data (default: %(default)s)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with InspectionApp.create(Path(args.database)) as app:
        generate_mock_data(app, total=args.total, seed=args.seed)
        print(_summarize(app))


if __name__ == "__main__":  # pragma: no cover - script entry point
    main()
