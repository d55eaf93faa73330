from __future__ import annotations

from typing import Dict, Iterable, Mapping

from .models import (
    FieldSpec,
    FieldType,
    MeasurementKind,
    MeasurementSpec,
    ModuleConfig,
    NumberRange,
    PhotoSpec,
)

OTHER_OPTION = "outro"
OTHER_SUFFIX = "_other"


class ModuleConfigError(ValueError):
    """Raised when a static module descriptor is malformed."""


def _select(name: str, label: str, options: Iterable[str], *, required: bool = True) -> FieldSpec:
    return FieldSpec(name, label, FieldType.SELECT, required=required, options=tuple(options))


def _flag(name: str, label: str, *, required: bool = True) -> FieldSpec:
    return FieldSpec(name, label, FieldType.BOOLEAN, required=required)


MODULE_DEFINITIONS: tuple[ModuleConfig, ...] = (
    ModuleConfig(
        id="client",
        title="Cliente/Obra",
        order=1,
        required=True,
        fields=(
            FieldSpec("client_name", "Nome do Cliente", required=True),
            FieldSpec("endereco_completo", "Endereço Completo", FieldType.TEXTAREA, required=True),
            FieldSpec("responsavel_local", "Responsável Local", required=True),
            FieldSpec("horario_chegada", "Horário de Chegada", FieldType.TIME, required=True),
            FieldSpec("data_execucao", "Data de Execução", FieldType.DATE, required=True),
            _select(
                "report_type",
                "Tipo de Relatório",
                ("MANUTENÇÃO PREVENTIVA", "MANUTENÇÃO CORRETIVA", "OUTRO"),
                required=False,
            ),
            FieldSpec("os_number", "Número da OS"),
            _flag("authorization", "Autorização dos Responsáveis"),
        ),
        photos=(PhotoSpec("fachada", "FOTO 1 - Fachada", required=True, max_photos=1),),
    ),
    ModuleConfig(
        id="cabin_type",
        title="Tipo de Cabine",
        order=2,
        required=True,
        fields=(
            _select("cabin_type", "Tipo de Cabine", ("CONVENCIONAL", "SIMPLIFICADA", "ESTALEIRO", "OUTRO")),
            _select("voltage_level", "Nível de Tensão", ("13.8 kV", "23 kV", "34.5 kV", "Outro")),
            _select("installation_type", "Tipo de Instalação", ("Aérea", "Subterrânea", "Mista", "Outro")),
            _select("grounding_system", "Sistema de Aterramento", ("TN-S", "TN-C", "TT", "IT", "Outro")),
            FieldSpec("mt_breaker_type", "Tipo de Disjuntor MT"),
            FieldSpec("protection_relay", "Relé de Proteção"),
            FieldSpec("metering_system", "Sistema de Medição"),
            FieldSpec("fuse_type", "Tipo de Fusível"),
            FieldSpec("simplified_protection", "Proteção Simplificada"),
            FieldSpec("pole_type", "Tipo de Poste"),
            FieldSpec("aerial_installation", "Instalação Aérea"),
        ),
        photos=(
            PhotoSpec("placa", "FOTO 3 - Placa/Tags", required=True, max_photos=1),
            PhotoSpec("cabin_external", "Vista Externa da Cabine", max_photos=2),
            PhotoSpec("mt_breaker", "Disjuntor MT", max_photos=2),
            PhotoSpec("protection_panel", "Painel de Proteção", max_photos=2),
            PhotoSpec("metering_equipment", "Equipamento de Medição", max_photos=2),
            PhotoSpec("fuse_protection", "Proteção por Fusível", max_photos=2),
            PhotoSpec("simplified_panel", "Painel Simplificado", max_photos=2),
            PhotoSpec("pole_installation", "Instalação no Poste", max_photos=2),
            PhotoSpec("aerial_view", "Vista Aérea", max_photos=2),
        ),
    ),
    ModuleConfig(
        id="procedures",
        title="Procedimentos",
        order=3,
        required=False,
        fields=(
            _flag("safety_equipment", "Equipamentos de Segurança Individual"),
            _flag("area_isolation", "Isolamento da Área de Trabalho"),
            _flag("voltage_verification", "Verificação de Ausência de Tensão"),
            _flag("grounding_installation", "Instalação de Aterramento Temporário"),
            _flag("signaling_protection", "Sinalização e Proteção do Local"),
        ),
        photos=(PhotoSpec("safety_procedures", "Procedimentos de Segurança", max_photos=3),),
    ),
    ModuleConfig(
        id="maintenance",
        title="Manutenção",
        order=4,
        required=False,
        fields=(
            FieldSpec("last_maintenance", "Data da Última Manutenção", FieldType.DATE, required=True),
            _select(
                "maintenance_frequency",
                "Frequência de Manutenção",
                ("Mensal", "Bimestral", "Trimestral", "Semestral", "Anual", "Outro"),
            ),
            _select(
                "maintenance_type",
                "Tipo de Manutenção",
                ("Preventiva", "Corretiva", "Preditiva", "Emergencial", "Outro"),
            ),
            FieldSpec("maintenance_company", "Empresa Responsável", required=True),
            FieldSpec("maintenance_observations", "Observações da Manutenção", FieldType.TEXTAREA),
        ),
        photos=(PhotoSpec("maintenance_records", "Registros de Manutenção", max_photos=2),),
    ),
    ModuleConfig(
        id="transformers",
        title="Transformadores",
        order=5,
        required=True,
        fields=(
            FieldSpec("manufacturer", "Fabricante", required=True),
            FieldSpec("serial_number", "Número de Série", required=True),
            FieldSpec(
                "power_kva",
                "Potência",
                FieldType.NUMBER,
                required=True,
                unit="kVA",
                validation=NumberRange(min=0, max=10000),
            ),
            FieldSpec("primary_voltage", "Tensão Primária", FieldType.NUMBER, required=True, unit="V"),
            FieldSpec("secondary_voltage", "Tensão Secundária", FieldType.NUMBER, required=True, unit="V"),
            FieldSpec(
                "installation_year",
                "Ano de Instalação",
                FieldType.NUMBER,
                required=True,
                validation=NumberRange(min=1950, max=2100),
            ),
            _flag("oil_leakage", "Vazamento de Óleo", required=False),
        ),
        photos=(
            PhotoSpec("proximidade", "FOTO 2 - Proximidade/Trafo", required=True, max_photos=1),
            PhotoSpec("transformer_nameplate", "Placa do Transformador", max_photos=1),
        ),
        measurements=(
            MeasurementSpec(
                "insulation_primary",
                "Isolamento Primário",
                "MΩ",
                MeasurementKind.RESISTANCE,
                NumberRange(min=0, max=100000),
            ),
            MeasurementSpec(
                "temperature",
                "Temperatura do Óleo",
                "°C",
                MeasurementKind.TEMPERATURE,
                NumberRange(min=-20, max=120),
            ),
        ),
    ),
    ModuleConfig(
        id="grid_connection",
        title="Conexão Concessionária",
        order=6,
        required=False,
        fields=(
            _select("concessionaria", "Concessionária", ("CPFL", "Enel", "EDP", "Elektro", "Eletropaulo", "Outro")),
            FieldSpec("codigo_consumidor", "Código do Consumidor", required=True),
            FieldSpec("demanda_kw", "Demanda Contratada", FieldType.NUMBER, required=True, unit="kW"),
            _select(
                "tariff_type",
                "Tipo de Tarifa",
                ("Convencional", "Horo-sazonal Azul", "Horo-sazonal Verde", "Outro"),
            ),
        ),
        photos=(PhotoSpec("meter", "Medidor", required=True, max_photos=1),),
    ),
    ModuleConfig(
        id="mt",
        title="Média Tensão (MT)",
        order=7,
        required=False,
        fields=(
            _select("mt_voltage_level", "Tensão de Operação MT", ("13.8 kV", "23 kV", "34.5 kV", "Outro")),
            _select("protection_type", "Tipo de Proteção", ("Disjuntor", "Fusível", "Seccionador", "Outro")),
            _select(
                "switchgear_type",
                "Tipo de Equipamento",
                ("Cubículo Metálico", "Painel Aberto", "Compacto", "Outro"),
            ),
        ),
        photos=(PhotoSpec("mt_panel", "Painel MT", required=True, max_photos=2),),
        measurements=(
            MeasurementSpec("voltage_r", "Tensão Fase R", "kV", MeasurementKind.VOLTAGE, NumberRange(0, 40)),
            MeasurementSpec("voltage_s", "Tensão Fase S", "kV", MeasurementKind.VOLTAGE, NumberRange(0, 40)),
            MeasurementSpec("voltage_t", "Tensão Fase T", "kV", MeasurementKind.VOLTAGE, NumberRange(0, 40)),
        ),
    ),
    ModuleConfig(
        id="bt",
        title="Baixa Tensão (BT)",
        order=8,
        required=True,
        fields=(
            _select("bt_voltage_level", "Tensão de Operação BT", ("220V", "380V", "440V", "Outro")),
            _select("distribution_type", "Tipo de Distribuição", ("Radial", "Anel", "Dupla Alimentação", "Outro")),
            FieldSpec("main_breaker", "Disjuntor Geral BT", required=True),
        ),
        photos=(
            PhotoSpec("quadro_geral", "FOTO 4 - Quadro Geral", required=True, max_photos=1),
            PhotoSpec("bt_distribution", "Distribuição BT", max_photos=2),
        ),
        measurements=(
            MeasurementSpec("voltage_l1", "Tensão L1-N", "V", MeasurementKind.VOLTAGE, NumberRange(0, 500)),
            MeasurementSpec("voltage_l2", "Tensão L2-N", "V", MeasurementKind.VOLTAGE, NumberRange(0, 500)),
            MeasurementSpec("voltage_l3", "Tensão L3-N", "V", MeasurementKind.VOLTAGE, NumberRange(0, 500)),
            MeasurementSpec("current_l1", "Corrente L1", "A", MeasurementKind.CURRENT, NumberRange(0, 5000)),
            MeasurementSpec("current_l2", "Corrente L2", "A", MeasurementKind.CURRENT, NumberRange(0, 5000)),
            MeasurementSpec("current_l3", "Corrente L3", "A", MeasurementKind.CURRENT, NumberRange(0, 5000)),
        ),
    ),
    ModuleConfig(
        id="epcs",
        title="EPCs",
        order=9,
        required=False,
        fields=(
            _flag("fire_extinguisher", "Extintor de Incêndio", required=False),
            _flag("first_aid_kit", "Kit de Primeiros Socorros", required=False),
            _flag("emergency_lighting", "Iluminação de Emergência", required=False),
            _flag("safety_barriers", "Barreiras de Segurança", required=False),
        ),
        photos=(PhotoSpec("epcs_general", "EPCs - Vista Geral", max_photos=3),),
    ),
    ModuleConfig(
        id="general_state",
        title="Estado Geral",
        order=10,
        required=True,
        fields=(
            _select("overall_condition", "Condição Geral da Instalação", ("Excelente", "Boa", "Regular", "Ruim", "Crítica")),
            _select(
                "compliance_status",
                "Status de Conformidade",
                ("Conforme", "Não Conforme", "Conforme com Restrições"),
            ),
            FieldSpec("recommendations", "Recomendações Técnicas", FieldType.TEXTAREA),
            FieldSpec("conclusion", "Conclusão da Inspeção", FieldType.TEXTAREA, required=True),
        ),
        photos=(PhotoSpec("general_overview", "Vista Geral Final", max_photos=2),),
    ),
    ModuleConfig(
        id="reconnection",
        title="Religamento",
        order=11,
        required=False,
        fields=(
            _flag("reconnection_authorized", "Religamento Autorizado"),
            _flag("final_tests", "Testes Finais Realizados"),
            _flag("system_operational", "Sistema Operacional"),
            FieldSpec("reconnection_time", "Horário do Religamento", FieldType.TIME),
        ),
        photos=(PhotoSpec("reconnection_procedure", "Procedimento de Religamento", max_photos=2),),
    ),
    ModuleConfig(
        id="component_irregularities",
        title="Irregularidades",
        order=12,
        required=False,
        fields=(
            _flag("has_irregularities", "Foram identificadas irregularidades?", required=False),
            _select(
                "component_type",
                "Tipo de Componente",
                ("Transformador", "Disjuntor MT", "Disjuntor BT", "Proteção", "Medição", "Aterramento", "Outro"),
                required=False,
            ),
            FieldSpec("irregularity_description", "Descrição da Irregularidade", FieldType.TEXTAREA),
            _select("severity", "Severidade", ("Baixa", "Média", "Alta", "Crítica"), required=False),
            FieldSpec("estimated_cost", "Custo Estimado", FieldType.NUMBER, unit="R$"),
        ),
        photos=(PhotoSpec("irregularity_evidence", "Evidência da Irregularidade", max_photos=4),),
    ),
)

# Photos every final report must carry, wherever in the inspection they were taken.
REPORT_REQUIRED_PHOTOS: tuple[PhotoSpec, ...] = (
    PhotoSpec("fachada", "FOTO 1 - Fachada", required=True),
    PhotoSpec("proximidade", "FOTO 2 - Proximidade/Trafo", required=True),
    PhotoSpec("placa", "FOTO 3 - Placa/Tags", required=True),
    PhotoSpec("quadro_geral", "FOTO 4 - Quadro Geral", required=True),
)


def check_module_config(config: ModuleConfig) -> ModuleConfig:
    """Fail fast on descriptors that cannot be validated against."""
    if not config.id or not config.title:
        raise ModuleConfigError(f"Module descriptor is missing its id or title: {config!r}")
    seen: set[str] = set()
    for spec in config.fields:
        if not spec.name or not spec.label:
            raise ModuleConfigError(f"Field descriptor in module '{config.id}' is missing its name or label")
        if spec.name in seen:
            raise ModuleConfigError(f"Duplicate field '{spec.name}' in module '{config.id}'")
        if spec.field_type is FieldType.SELECT and not spec.options:
            raise ModuleConfigError(f"Select field '{spec.name}' in module '{config.id}' declares no options")
        seen.add(spec.name)
    photo_names: set[str] = set()
    for photo in config.photos:
        if not photo.name or not photo.label:
            raise ModuleConfigError(f"Photo descriptor in module '{config.id}' is missing its name or label")
        if photo.name in photo_names:
            raise ModuleConfigError(f"Duplicate photo slot '{photo.name}' in module '{config.id}'")
        if photo.max_photos < 1:
            raise ModuleConfigError(f"Photo slot '{photo.name}' in module '{config.id}' allows no photos")
        photo_names.add(photo.name)
    for measurement in config.measurements:
        if not measurement.name or not measurement.label or not measurement.unit:
            raise ModuleConfigError(f"Measurement descriptor in module '{config.id}' is incomplete")
    return config


def build_module_table(definitions: Iterable[ModuleConfig]) -> Mapping[str, ModuleConfig]:
    table: Dict[str, ModuleConfig] = {}
    for config in definitions:
        check_module_config(config)
        if config.id in table:
            raise ModuleConfigError(f"Duplicate module id '{config.id}'")
        table[config.id] = config
    return dict(sorted(table.items(), key=lambda item: item[1].order))


MODULE_CONFIGURATIONS: Mapping[str, ModuleConfig] = build_module_table(MODULE_DEFINITIONS)


def get_module_config(module_type: str) -> ModuleConfig:
    try:
        return MODULE_CONFIGURATIONS[module_type]
    except KeyError as exc:
        raise LookupError(f"Unknown module type '{module_type}'") from exc


def other_field_name(field_name: str) -> str:
    return f"{field_name}{OTHER_SUFFIX}"


def offers_other(spec: FieldSpec) -> bool:
    return any(option.strip().lower() == OTHER_OPTION for option in spec.options)


def is_other_selected(spec: FieldSpec, value: str) -> bool:
    return offers_other(spec) and value.strip().lower() == OTHER_OPTION
