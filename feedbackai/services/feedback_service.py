"""
フィードバック分析サービス
セッション終了時に書き起こしを評価し、構造化されたフィードバックを作成する
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Sequence

from openai import AsyncOpenAI
from pydantic import ValidationError

from feedbackai.config import DEFAULT_ANALYSIS_MODEL, DEFAULT_REASONING_EFFORT, get_openai_api_key
from feedbackai.errors import AnalysisFailed
from feedbackai.models.schemas import Language, Scenario, SessionFeedback

logger = logging.getLogger(__name__)

DEFAULT_METHODOLOGY = "SBI & SMART"

METHODOLOGY_BY_SCENARIO: Dict[str, str] = {
    "one-on-one": "GROW, Active Listening & Psychological Safety",
    "recognition": "SBI, Impact & Values",
    "collaborator-feedback": "SBI, SMART & Radical Candor",
    "team-feedback": "SBI, SMART & Radical Candor",
}

FILLER_WORDS: Dict[Language, List[str]] = {
    Language.ES: ["eh", "este", "o sea", "bueno", "pues", "mmm"],
    Language.EN: ["um", "uh", "like", "you know", "basically", "actually"],
}


def expected_methodology(scenario_id: str) -> str:
    """シナリオIDから想定メソドロジーを決定（モデルには選ばせない）"""
    return METHODOLOGY_BY_SCENARIO.get(scenario_id, DEFAULT_METHODOLOGY)


def count_filler_words(text: str, language: Language) -> Dict[str, int]:
    """
    フィラー語の出現回数を数える（大文字小文字を区別せず、単語単位で一致）

    Args:
        text: 書き起こしテキスト
        language: セッション言語

    Returns:
        フィラー語ごとの出現回数
    """
    counts: Dict[str, int] = {}
    for filler in FILLER_WORDS[language]:
        pattern = r"\b" + r"\s+".join(re.escape(part) for part in filler.split()) + r"\b"
        counts[filler] = len(re.findall(pattern, text, flags=re.IGNORECASE))
    return counts


def parse_feedback_json(content: str) -> Dict[str, Any]:
    """
    応答テキストからJSONオブジェクトを取り出す

    全体がJSONでなければ最初の「{」から最後の「}」までを解析する

    Raises:
        AnalysisFailed: JSONオブジェクトとして解析できない場合
    """
    candidates = [content]
    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        candidates.append(content[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise AnalysisFailed("分析結果をJSONオブジェクトとして解析できませんでした")


ANALYSIS_PROMPTS: Dict[Language, str] = {
    Language.ES: """
Actúa como un Coach Ejecutivo Senior de Nivel Mundial. Analiza la transcripción de un líder:
Escenario: {title}
Descripción del Objetivo: {description}
Transcripción: "{transcript}"

CRITERIOS DE EVALUACIÓN SEGÚN EL TIPO:
- Si es "1 a 1": Evalúa Modelo GROW (Metas, Realidad, Opciones, Voluntad), Escucha Activa y Seguridad Psicológica.
- Si es "Reconocimiento": Evalúa SBI, Impacto en Resultados/Objetivos y Alineación con Valores Corporativos.
- Para todos: Objetivos SMART y Ética Profesional.

Debes devolver UN OBJETO JSON con la siguiente estructura exacta.
{{
  "score": 0-100,
  "clarity": 0-100,
  "empathy": 0-100,
  "assertiveness": 0-100,
  "languageCorrectness": 0-100,
  "languageAppropriateness": 0-100,
  "communication": 0-100,
  "emotionalIntelligence": 0-100,
  "smartScore": 0-100,
  "verbalAnalysis": "resumen crítico",
  "emotionalAnalysis": "resumen emocional",
  "bodyLanguageAnalysis": "análisis basado en tono y pausas",
  "smartCriteria": {{
    "specific": boolean,
    "measurable": boolean,
    "achievable": boolean,
    "relevant": boolean,
    "timeBound": boolean
  }},
  "keyTakeaways": ["string"],
  "improvementAreas": ["string"],
  "actionPlan": ["pasos concretos ejecutivos"],
  "suggestions": ["sugerencias de mentoría"],
  "marketMethodology": "{methodology}",
  "obsceneLanguageDetected": boolean
}}
""",
    Language.EN: """
Act as a world-class Senior Executive Coach. Analyze a leader's transcript:
Scenario: {title}
Objective Description: {description}
Transcript: "{transcript}"

EVALUATION CRITERIA BY TYPE:
- If "1-on-1": Evaluate the GROW model (Goal, Reality, Options, Will), Active Listening and Psychological Safety.
- If "Recognition": Evaluate SBI, Impact on Results/Objectives and Alignment with Corporate Values.
- For all: SMART objectives and Professional Ethics.

You must return ONE JSON OBJECT with the following exact structure.
{{
  "score": 0-100,
  "clarity": 0-100,
  "empathy": 0-100,
  "assertiveness": 0-100,
  "languageCorrectness": 0-100,
  "languageAppropriateness": 0-100,
  "communication": 0-100,
  "emotionalIntelligence": 0-100,
  "smartScore": 0-100,
  "verbalAnalysis": "critical summary",
  "emotionalAnalysis": "emotional summary",
  "bodyLanguageAnalysis": "analysis based on tone and pauses",
  "smartCriteria": {{
    "specific": boolean,
    "measurable": boolean,
    "achievable": boolean,
    "relevant": boolean,
    "timeBound": boolean
  }},
  "keyTakeaways": ["string"],
  "improvementAreas": ["string"],
  "actionPlan": ["concrete executive steps"],
  "suggestions": ["mentoring suggestions"],
  "marketMethodology": "{methodology}",
  "obsceneLanguageDetected": boolean
}}
""",
}

SYSTEM_PROMPT = "You are a senior executive leadership coach. Always respond in valid JSON format."


class FeedbackService:
    """書き起こしからフィードバックレポートを作成するサービスクラス"""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        reasoning_effort: str | None = None,
    ) -> None:
        """
        初期化処理
        クライアントが渡されない場合は環境変数からAPIキーを取得して作成する

        Raises:
            ValueError: APIキーが設定されていない場合
        """
        if client is None:
            client = AsyncOpenAI(api_key=get_openai_api_key())
        self.client = client
        self.model: str = model or os.getenv("OPENAI_MODEL", DEFAULT_ANALYSIS_MODEL)
        # 空文字を指定するとreasoning_effortを送らない
        self.reasoning_effort: str = (
            reasoning_effort
            if reasoning_effort is not None
            else os.getenv("OPENAI_REASONING_EFFORT", DEFAULT_REASONING_EFFORT)
        )

    def build_prompt(self, transcript: str, scenario: Scenario, language: Language) -> str:
        """評価プロンプトを作成"""
        return ANALYSIS_PROMPTS[language].format(
            title=scenario.localized_title(language),
            description=scenario.localized_description(language),
            transcript=transcript,
            methodology=expected_methodology(scenario.id),
        )

    async def analyze(
        self, transcript: Sequence[str], scenario: Scenario, language: Language
    ) -> SessionFeedback:
        """
        書き起こしを評価してフィードバックを作成

        Args:
            transcript: 書き起こしの断片（到着順）
            scenario: 練習シナリオ
            language: セッション言語

        Returns:
            正規化済みのフィードバック

        Raises:
            AnalysisFailed: API呼び出しの失敗、または応答を解析できない場合
        """
        text = "".join(transcript)
        methodology = expected_methodology(scenario.id)
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(text, scenario, language)},
            ],
            "response_format": {"type": "json_object"},  # JSON形式で返すことを強制
        }
        if self.reasoning_effort:
            request["reasoning_effort"] = self.reasoning_effort

        logger.info(
            "フィードバック分析を開始します (scenario=%s, chars=%d, model=%s)",
            scenario.id,
            len(text),
            self.model,
        )
        try:
            response = await self.client.chat.completions.create(**request)
        except Exception as e:
            logger.error("フィードバック分析APIエラー: %s", e)
            raise AnalysisFailed(f"フィードバック分析APIエラー: {e}") from e

        content: str | None = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            logger.error("フィードバック分析のレスポンスが空です")
            raise AnalysisFailed("レスポンスが空")

        try:
            data = parse_feedback_json(content)
        except AnalysisFailed:
            logger.error("フィードバック分析のJSON解析エラー: %s", content[:200])
            raise

        try:
            feedback = SessionFeedback.from_analysis(
                data, methodology, count_filler_words(text, language)
            )
        except ValidationError as e:
            logger.error("フィードバックの検証エラー: %s", e)
            raise AnalysisFailed(f"フィードバックの検証エラー: {e}") from e

        logger.info("フィードバック分析が完了しました (score=%.0f)", feedback.score)
        return feedback
