"""
データモデルのテスト
"""
import pytest
from pydantic import ValidationError

from feedbackai.models.scenarios import SCENARIOS, get_scenario
from feedbackai.models.schemas import Language, Scenario, SessionFeedback, SmartCriteria


class TestScenario:
    """Scenarioのテストクラス"""

    def test_catalog(self):
        assert [s.id for s in SCENARIOS] == [
            "collaborator-feedback",
            "team-feedback",
            "one-on-one",
            "recognition",
        ]

    def test_get_scenario_unknown_raises(self):
        with pytest.raises(KeyError):
            get_scenario("performance-review")

    def test_localized_text_falls_back(self):
        """指定言語がなければ他の言語で代替する"""
        scenario = Scenario(id="x", title={Language.ES: "Hola"}, description={Language.ES: "Desc"})

        assert scenario.localized_title(Language.EN) == "Hola"
        assert scenario.localized_description(Language.ES) == "Desc"


class TestSessionFeedback:
    """SessionFeedbackのテストクラス"""

    def test_defaults(self):
        feedback = SessionFeedback.from_analysis({}, "SBI & SMART")

        assert feedback.score == 0
        assert feedback.smart_score == 0
        assert feedback.clarity == 50
        assert feedback.emotional_intelligence == 50
        assert feedback.language_correctness == 50
        assert feedback.smart_criteria == SmartCriteria()
        assert feedback.key_takeaways == []
        assert feedback.action_plan == []
        assert feedback.market_methodology == "SBI & SMART"
        assert feedback.filler_word_count == {}
        assert feedback.obscene_language_detected is False

    def test_coercion(self):
        """型違い・範囲外の値を正規化する"""
        feedback = SessionFeedback.from_analysis(
            {
                "score": "85",
                "clarity": 140,
                "empathy": -5,
                "assertiveness": "alta",
                "communication": None,
                "emotionalIntelligence": True,
                "smartCriteria": {"specific": "true", "timeBound": 1},
                "keyTakeaways": "Una sola idea",
                "improvementAreas": ["Escucha", "", None, "  Preguntas  "],
                "suggestions": 42,
                "marketMethodology": "   ",
                "obsceneLanguageDetected": "sí",
                "unexpectedField": "ignored",
            },
            "SBI, Impact & Values",
        )

        assert feedback.score == 85
        assert feedback.clarity == 100
        assert feedback.empathy == 0
        assert feedback.assertiveness == 50
        assert feedback.communication == 50
        assert feedback.emotional_intelligence == 50
        assert feedback.smart_criteria == SmartCriteria(specific=True, time_bound=True)
        assert feedback.key_takeaways == ["Una sola idea"]
        assert feedback.improvement_areas == ["Escucha", "Preguntas"]
        assert feedback.suggestions == []
        assert feedback.market_methodology == "SBI, Impact & Values"
        assert feedback.obscene_language_detected is True

    def test_non_object_smart_criteria(self):
        feedback = SessionFeedback.from_analysis({"smartCriteria": "yes"}, "SBI & SMART")

        assert feedback.smart_criteria == SmartCriteria()

    def test_to_record_uses_camel_case(self):
        record = SessionFeedback.from_analysis({"score": 70}, "SBI & SMART", {"eh": 1}).to_record()

        assert record["score"] == 70
        assert record["smartCriteria"] == {
            "specific": False,
            "measurable": False,
            "achievable": False,
            "relevant": False,
            "timeBound": False,
        }
        assert record["fillerWordCount"] == {"eh": 1}
        assert "marketMethodology" in record
        assert "obsceneLanguageDetected" in record

    def test_frozen(self):
        feedback = SessionFeedback()

        with pytest.raises(ValidationError):
            feedback.score = 99
