"""
データモデル（スキーマ定義）
"""

import math
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel


class Language(str, Enum):
    """セッション言語"""

    EN = "en"
    ES = "es"


class SessionPhase(str, Enum):
    """セッションのフェーズ"""

    COACHING = "COACHING"  # メンターが音声で応答するリハーサル
    SIMULATION = "SIMULATION"  # AIは沈黙し、リーダーの発話のみを記録する


class Scenario(BaseModel):
    """練習シナリオのデータモデル（呼び出し側から渡される不変データ）"""

    model_config = ConfigDict(frozen=True)

    id: str
    title: Dict[Language, str]
    description: Dict[Language, str]
    icon: str = ""

    def localized_title(self, language: Language) -> str:
        """指定言語のタイトル（なければ他の言語で代替）"""
        return _localized(self.title, language)

    def localized_description(self, language: Language) -> str:
        """指定言語の説明（なければ他の言語で代替）"""
        return _localized(self.description, language)


def _localized(texts: Dict[Language, str], language: Language) -> str:
    if language in texts:
        return texts[language]
    return next(iter(texts.values()), "")


TRUTHY_STRINGS = {"true", "yes", "si", "sí", "1"}


def _coerce_flag(value: Any) -> bool:
    """真偽値らしき値をboolに変換（不明な値はFalse）"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


class SmartCriteria(BaseModel):
    """SMART基準の充足状況"""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    specific: bool = False
    measurable: bool = False
    achievable: bool = False
    relevant: bool = False
    time_bound: bool = False

    @field_validator("*", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> bool:
        return _coerce_flag(value)


NEUTRAL_SUB_SCORE: float = 50.0

SCORE_FIELDS = (
    "score",
    "clarity",
    "empathy",
    "assertiveness",
    "language_correctness",
    "language_appropriateness",
    "communication",
    "emotional_intelligence",
    "smart_score",
)
TEXT_FIELDS = ("verbal_analysis", "emotional_analysis", "body_language_analysis", "market_methodology")
LIST_FIELDS = ("key_takeaways", "improvement_areas", "action_plan", "suggestions")


class SessionFeedback(BaseModel):
    """
    セッション終了時のフィードバックレポート

    生成モデルの出力は形式が保証されないため、各フィールドに既定値を宣言し、
    欠損・型違いの値は既定値で補完する
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    score: float = 0.0  # 総合スコア
    clarity: float = NEUTRAL_SUB_SCORE
    empathy: float = NEUTRAL_SUB_SCORE
    assertiveness: float = NEUTRAL_SUB_SCORE
    language_correctness: float = NEUTRAL_SUB_SCORE
    language_appropriateness: float = NEUTRAL_SUB_SCORE
    communication: float = NEUTRAL_SUB_SCORE
    emotional_intelligence: float = NEUTRAL_SUB_SCORE
    smart_score: float = 0.0
    verbal_analysis: str = ""
    emotional_analysis: str = ""
    body_language_analysis: str = ""  # 声のトーンと間から推定
    smart_criteria: SmartCriteria = Field(default_factory=SmartCriteria)
    key_takeaways: List[str] = Field(default_factory=list)
    improvement_areas: List[str] = Field(default_factory=list)
    action_plan: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    market_methodology: str = ""
    filler_word_count: Dict[str, int] = Field(default_factory=dict)
    obscene_language_detected: bool = False

    @field_validator(*SCORE_FIELDS, mode="before")
    @classmethod
    def _score(cls, value: Any, info: ValidationInfo) -> float:
        default: float = cls.model_fields[info.field_name].default
        if value is None or isinstance(value, bool):
            return default
        try:
            number = float(value)
        except (TypeError, ValueError):
            return default
        if math.isnan(number):
            return default
        return min(max(number, 0.0), 100.0)

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator(*LIST_FIELDS, mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(item).strip() for item in value if item is not None and str(item).strip()]

    @field_validator("smart_criteria", mode="before")
    @classmethod
    def _smart_criteria(cls, value: Any) -> Any:
        if isinstance(value, (dict, SmartCriteria)):
            return value
        return {}

    @field_validator("obscene_language_detected", mode="before")
    @classmethod
    def _obscene(cls, value: Any) -> bool:
        return _coerce_flag(value)

    @classmethod
    def from_analysis(
        cls,
        data: Dict[str, Any],
        expected_methodology: str,
        filler_word_count: Dict[str, int] | None = None,
    ) -> "SessionFeedback":
        """
        分析結果（JSONオブジェクト）から正規化済みのフィードバックを作成

        Args:
            data: 生成モデルが返したJSONオブジェクト
            expected_methodology: シナリオから決定された想定メソドロジー
            filler_word_count: ローカルで集計したフィラー語の出現回数

        Returns:
            正規化済みのSessionFeedback
        """
        payload: Dict[str, Any] = dict(data)
        methodology = payload.get("marketMethodology")
        if not isinstance(methodology, str) or not methodology.strip():
            payload["marketMethodology"] = expected_methodology
        # フィラー語はモデルに任せずローカルの集計値を使う
        payload.pop("fillerWordCount", None)
        payload.pop("filler_word_count", None)
        payload["fillerWordCount"] = dict(filler_word_count or {})
        return cls.model_validate(payload)

    def to_record(self) -> Dict[str, Any]:
        """呼び出し側に渡すcamelCase形式の辞書"""
        return self.model_dump(by_alias=True)
