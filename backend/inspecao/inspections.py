from __future__ import annotations

import io
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .database import Database
from .forms import MODULE_CONFIGURATIONS, get_module_config, other_field_name
from .models import FieldType, MediaRow, ModuleDataRow, ReportValidationResult

IMAGE_PREFIX = "image/"


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class InspectionService:
    database: Database

    def list_modules(self) -> List[Dict[str, object]]:
        return [
            {
                "id": config.id,
                "title": config.title,
                "order": config.order,
                "required": config.required,
                "fields": [
                    {
                        "name": spec.name,
                        "label": spec.label,
                        "field_type": spec.field_type.value,
                        "required": spec.required,
                    }
                    for spec in config.fields
                ],
                "photos": [
                    {"name": photo.name, "label": photo.label, "required": photo.required}
                    for photo in config.photos
                ],
            }
            for config in MODULE_CONFIGURATIONS.values()
        ]

    def save_module_data(self, inspection_id: str, module_type: str, values: Mapping[str, Any]) -> List[ModuleDataRow]:
        if not inspection_id:
            raise ValueError("Inspection id is required")
        config = get_module_config(module_type)
        known = {spec.name for spec in config.fields}
        known.update(other_field_name(spec.name) for spec in config.fields if spec.field_type is FieldType.SELECT)
        known.update(spec.name for spec in config.measurements)
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown fields for module '{module_type}': {', '.join(unknown)}")
        return [
            self.database.save_module_field(inspection_id, module_type, name, _stringify(value))
            for name, value in values.items()
        ]

    def add_media(
        self,
        inspection_id: str,
        module_type: str,
        file_name: str,
        photo_type: Optional[str] = None,
        file_type: str = "image/jpeg",
    ) -> MediaRow:
        config = get_module_config(module_type)
        if photo_type is not None:
            slot = next((photo for photo in config.photos if photo.name == photo_type), None)
            if slot is None:
                raise ValueError(f"Module '{module_type}' has no photo slot '{photo_type}'")
            taken = [
                row
                for row in self.database.list_media(inspection_id)
                if row.module_type == module_type and row.photo_type_for_file == photo_type
            ]
            if len(taken) >= slot.max_photos:
                raise ValueError(f"Photo slot '{photo_type}' accepts at most {slot.max_photos} photo(s)")
        return self.database.add_media(inspection_id, module_type, file_name, photo_type, file_type)

    def remove_media(self, inspection_id: str, file_name: str) -> None:
        if not self.database.delete_media(inspection_id, file_name):
            raise LookupError("Media file not found")

    def module_values(self, inspection_id: str) -> Dict[str, Dict[str, Optional[str]]]:
        grouped: Dict[str, Dict[str, Optional[str]]] = defaultdict(dict)
        for row in self.database.list_module_data(inspection_id):
            grouped[row.module_type][row.field_name] = row.field_value
        return dict(grouped)

    def export_inspection_workbook(
        self,
        inspection_id: str,
        validation: ReportValidationResult,
    ) -> tuple[str, bytes]:
        values = self.module_values(inspection_id)
        media = self.database.list_media(inspection_id)

        workbook = Workbook()
        summary_ws = workbook.active
        summary_ws.title = "Resumo"

        now = datetime.now(timezone.utc)
        title_font = Font(size=16, bold=True, color="1F3A5F")
        header_font = Font(bold=True, color="1F2A24")
        muted_font = Font(color="5B6657")
        alert_fill = PatternFill(start_color="FDECEA", end_color="FDECEA", fill_type="solid")

        summary_ws["A1"] = f"Inspeção {inspection_id}"
        summary_ws["A1"].font = title_font
        summary_ws.merge_cells("A1:D1")
        summary_ws["A2"] = now.strftime("Gerado em %Y-%m-%d %H:%M UTC")
        summary_ws["A2"].font = muted_font
        summary_ws.merge_cells("A2:D2")

        summary_ws["A4"], summary_ws["B4"] = "Indicador", "Valor"
        summary_ws["A4"].font = header_font
        summary_ws["B4"].font = header_font
        metrics = [
            ("Relatório válido", "Sim" if validation.is_valid else "Não"),
            ("Módulos preenchidos", len(values)),
            ("Fotos registradas", sum(1 for row in media if row.file_type.startswith(IMAGE_PREFIX))),
            ("Pendências", len(validation.missing_fields)),
            ("Erros críticos", len(validation.critical_errors)),
        ]
        for index, (label, value) in enumerate(metrics, start=5):
            summary_ws.cell(row=index, column=1, value=label)
            summary_ws.cell(row=index, column=2, value=value)

        row_pointer = 5 + len(metrics) + 1
        for heading, messages in (
            ("Erros críticos", validation.critical_errors),
            ("Pendências", validation.errors_sample),
        ):
            if not messages:
                continue
            summary_ws.cell(row=row_pointer, column=1, value=heading).font = header_font
            row_pointer += 1
            for message in messages:
                cell = summary_ws.cell(row=row_pointer, column=1, value=message)
                if heading == "Erros críticos":
                    cell.fill = alert_fill
                summary_ws.merge_cells(start_row=row_pointer, start_column=1, end_row=row_pointer, end_column=4)
                row_pointer += 1
            row_pointer += 1

        for column, width in [(1, 48), (2, 18)]:
            summary_ws.column_dimensions[get_column_letter(column)].width = width

        detail_ws = workbook.create_sheet("Dados")
        detail_headers = ["Módulo", "Campo", "Valor"]
        detail_ws.append(detail_headers)
        for cell in detail_ws[1]:
            cell.font = header_font
            cell.alignment = Alignment(horizontal="center")

        for module_id, config in MODULE_CONFIGURATIONS.items():
            module_values = values.get(module_id)
            if not module_values:
                continue
            labels = {spec.name: spec.label for spec in config.fields}
            labels.update({spec.name: f"{spec.label} ({spec.unit})" for spec in config.measurements})
            for field_name, value in module_values.items():
                detail_ws.append([config.title, labels.get(field_name, field_name), value or ""])

        detail_ws.auto_filter.ref = detail_ws.dimensions
        detail_ws.freeze_panes = "A2"

        media_ws = workbook.create_sheet("Fotos")
        media_ws.append(["Módulo", "Tipo", "Arquivo"])
        for cell in media_ws[1]:
            cell.font = header_font
        for row in media:
            title = MODULE_CONFIGURATIONS[row.module_type].title if row.module_type in MODULE_CONFIGURATIONS else row.module_type
            media_ws.append([title, row.photo_type_for_file or "", row.file_name])

        for sheet in (detail_ws, media_ws):
            for column_index in range(1, sheet.max_column + 1):
                column_letter = get_column_letter(column_index)
                max_length = max(
                    (len(str(sheet.cell(row=row, column=column_index).value or "")) for row in range(1, sheet.max_row + 1)),
                    default=10,
                )
                sheet.column_dimensions[column_letter].width = min(max(12, max_length + 2), 60)

        timestamp = now.strftime("%Y%m%d-%H%M%S")
        filename = f"inspecao-{inspection_id}-{timestamp}.xlsx"
        buffer = io.BytesIO()
        workbook.save(buffer)
        buffer.seek(0)
        return filename, buffer.getvalue()
