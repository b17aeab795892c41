"""
練習シナリオの定義
"""
from typing import List

from feedbackai.models.schemas import Language, Scenario

SCENARIOS: List[Scenario] = [
    Scenario(
        id="collaborator-feedback",
        title={
            Language.EN: "Feedback to Collaborator",
            Language.ES: "Feedback a Colaborador",
        },
        description={
            Language.EN: "Deliver constructive performance reviews using SBI, Radical Candor, and SMART objectives.",
            Language.ES: "Entrega evaluaciones de desempeño constructivas usando SBI, Radical Candor y objetivos SMART.",
        },
        icon="👤",
    ),
    Scenario(
        id="team-feedback",
        title={
            Language.EN: "Feedback to Team",
            Language.ES: "Feedback al Equipo",
        },
        description={
            Language.EN: "Align collective vision and celebrate group wins with professional and SMART-aligned communication.",
            Language.ES: "Alinea la visión colectiva y celebra logros grupales con comunicación profesional y alineada a SMART.",
        },
        icon="🙌",
    ),
    Scenario(
        id="one-on-one",
        title={
            Language.EN: "1-on-1 Conversations",
            Language.ES: "Conversaciones 1 a 1",
        },
        description={
            Language.EN: "Build psychological safety. Focus on growth, active listening, and bi-directional career development.",
            Language.ES: "Construye seguridad psicológica. Enfócate en crecimiento, escucha activa y desarrollo bidireccional.",
        },
        icon="💬",
    ),
    Scenario(
        id="recognition",
        title={
            Language.EN: "Recognition",
            Language.ES: "Reconocimiento",
        },
        description={
            Language.EN: "Master positive reinforcement. Connect achievements to business impact and core company values.",
            Language.ES: "Domina el refuerzo positivo. Conecta logros con el impacto al negocio y los valores de la compañía.",
        },
        icon="🌟",
    ),
]


def get_scenario(scenario_id: str) -> Scenario:
    """
    IDからシナリオを取得

    Args:
        scenario_id: シナリオID

    Returns:
        該当するシナリオ

    Raises:
        KeyError: 該当するシナリオがない場合
    """
    for scenario in SCENARIOS:
        if scenario.id == scenario_id:
            return scenario
    raise KeyError(f"シナリオが見つかりません: {scenario_id}")
