from __future__ import annotations

import inspect
import io

import pytest
from openpyxl import load_workbook

from backend.inspecao import InspectionApp
from backend.inspecao.mock_data import generate_mock_data, seed_complete_inspection
from backend.inspecao.models import WebhookStatus


def test_dataclasses_do_not_use_slots() -> None:
    from backend.inspecao import app as app_module
    from backend.inspecao import exports as exports_module
    from backend.inspecao import integrations as integrations_module
    from backend.inspecao import models as models_module
    from backend.inspecao import reports as reports_module
    from backend.inspecao import webhooks as webhooks_module

    modules = [app_module, exports_module, integrations_module, models_module, reports_module, webhooks_module]
    dataclass_params = []
    for module in modules:
        for _, obj in inspect.getmembers(module, inspect.isclass):
            params = getattr(obj, "__dataclass_params__", None)
            if params is not None:
                dataclass_params.append(params)

    assert dataclass_params, "Expected to discover dataclasses in backend modules"
    assert all(not getattr(params, "slots", False) for params in dataclass_params)


def test_module_data_is_stored_as_text(app: InspectionApp) -> None:
    app.save_module_data("insp-1", "client", {"client_name": "Usina Norte", "authorization": True})
    app.save_module_data("insp-1", "client", {"client_name": "Usina Sul"})
    app.save_module_data("insp-1", "transformers", {"power_kva": 75, "temperature": "61.5"})

    values = app.inspections.module_values("insp-1")

    assert values["client"] == {"client_name": "Usina Sul", "authorization": "true"}
    assert values["transformers"] == {"power_kva": "75", "temperature": "61.5"}


def test_unknown_fields_and_modules_are_rejected(app: InspectionApp) -> None:
    with pytest.raises(ValueError, match="nickname"):
        app.save_module_data("insp-1", "client", {"nickname": "x"})
    with pytest.raises(LookupError):
        app.save_module_data("insp-1", "garage", {})
    with pytest.raises(ValueError):
        app.save_module_data("", "client", {"client_name": "x"})


def test_other_companion_is_a_known_field(app: InspectionApp) -> None:
    app.save_module_data("insp-1", "bt", {"bt_voltage_level": "Outro", "bt_voltage_level_other": "127V"})

    assert app.inspections.module_values("insp-1")["bt"]["bt_voltage_level_other"] == "127V"


def test_photo_slots_are_limited(app: InspectionApp) -> None:
    app.add_media("insp-1", "client", "fachada-1.jpg", "fachada")

    with pytest.raises(ValueError, match="at most 1"):
        app.add_media("insp-1", "client", "fachada-2.jpg", "fachada")
    with pytest.raises(ValueError, match="no photo slot"):
        app.add_media("insp-1", "client", "placa.jpg", "placa")

    app.remove_media("insp-1", "fachada-1.jpg")
    app.add_media("insp-1", "client", "fachada-2.jpg", "fachada")
    with pytest.raises(LookupError):
        app.remove_media("insp-1", "fachada-1.jpg")


def test_module_validation_reads_stored_data(app: InspectionApp) -> None:
    seed_complete_inspection(app, "insp-1", cabin_type="CONVENCIONAL")
    app.save_module_data("insp-1", "cabin_type", {"metering_system": ""})

    result = app.validate_module("insp-1", "cabin_type")

    assert result.errors == ["Sistema de Medição"]
    assert app.validate_module("insp-1", "mt").is_valid


def test_non_image_media_does_not_fill_photo_slots(app: InspectionApp) -> None:
    seed_complete_inspection(app, "insp-1")
    fachada = next(row for row in app.database.list_media("insp-1") if row.photo_type_for_file == "fachada")
    app.remove_media("insp-1", fachada.file_name)
    app.add_media("insp-1", "client", "fachada.pdf", "fachada", file_type="application/pdf")

    assert app.validate_module("insp-1", "client").errors == ["FOTO 1 - Fachada"]


def test_workbook_export_summarises_inspection(app: InspectionApp) -> None:
    seed_complete_inspection(app, "insp-1", skip_modules=["transformers"])

    filename, payload = app.export_inspection_workbook("insp-1")

    assert filename.startswith("inspecao-insp-1-") and filename.endswith(".xlsx")
    workbook = load_workbook(io.BytesIO(payload))
    assert workbook.sheetnames == ["Resumo", "Dados", "Fotos"]
    summary = workbook["Resumo"]
    metrics = {summary.cell(row=row, column=1).value: summary.cell(row=row, column=2).value for row in range(5, 10)}
    assert metrics["Relatório válido"] == "Não"
    assert metrics["Erros críticos"] == 0
    samples = [summary.cell(row=row, column=1).value for row in range(1, summary.max_row + 1)]
    assert 'O módulo "Transformadores" é obrigatório e não foi preenchido.' in samples

    detail = workbook["Dados"]
    rows = list(detail.iter_rows(min_row=2, values_only=True))
    assert ("Cliente/Obra", "Nome do Cliente", "Nome do Cliente - exemplo") in rows
    assert not any(row[0] == "Transformadores" for row in rows)
    photos = list(workbook["Fotos"].iter_rows(min_row=2, values_only=True))
    assert {row[1] for row in photos} >= {"fachada", "placa", "quadro_geral"}


def test_work_order_priority_maps_to_queue_priority(app: InspectionApp) -> None:
    app.create_work_order(os_number="OS-1", inspection_id="i", description="a", priority="high")
    app.create_work_order(os_number="OS-2", inspection_id="i", description="b", priority="low")

    priorities = {item.payload["os_number"]: item.priority for item in app.database.list_webhook_candidates(app.queue.clock())}

    assert priorities == {"OS-1": 5, "OS-2": 1}
    with pytest.raises(ValueError):
        app.create_work_order(os_number="OS-3", inspection_id="i", description="")


def test_webhook_configuration_reports_queue_state(app: InspectionApp, transport) -> None:
    app.create_work_order(os_number="OS-1", inspection_id="i", description="a")
    app.queue.enqueue("inspection_archived", {})
    app.process_webhook_queue()

    config = app.webhook_configuration()

    assert config["queue_statistics"][WebhookStatus.DONE.value] == 1
    assert config["queue_statistics"][WebhookStatus.DEAD.value] == 1
    assert {entry["event_type"] for entry in config["recent_logs"]} == {"work_order_created", "inspection_archived"}
    assert set(config["recent_logs"][0]) == {"event_type", "response_status", "created_at"}


def test_mock_data_generates_consistent_inspections(app: InspectionApp) -> None:
    generate_mock_data(app, total=6, seed=7)

    results = [app.validate_final_report(f"insp-{index:04d}") for index in range(1, 7)]

    for result in results:
        transformers_missing = 'Módulo "Transformadores"' in result.missing_fields
        assert result.is_valid != transformers_missing
        assert result.critical_errors == []


def test_app_closes_the_client_it_created(tmp_path, settings) -> None:
    with InspectionApp.create(tmp_path / "owned.db", settings=settings) as owned:
        client = owned.dispatcher.client
        assert not client.is_closed

    assert client.is_closed


def test_app_leaves_an_injected_client_open(app: InspectionApp, http_client) -> None:
    app.close()

    assert not http_client.is_closed
