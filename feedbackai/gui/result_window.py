"""
結果画面のGUIコンポーネント
"""

import flet as ft
from typing import Callable, List, Tuple

from feedbackai.models.schemas import SessionFeedback


SCORE_LABELS: List[Tuple[str, str]] = [
    ("clarity", "Clarity"),
    ("empathy", "Empathy"),
    ("assertiveness", "Assertiveness"),
    ("language_correctness", "Language correctness"),
    ("language_appropriateness", "Language appropriateness"),
    ("communication", "Communication"),
    ("emotional_intelligence", "Emotional intelligence"),
    ("smart_score", "SMART"),
]

SMART_LABELS: List[Tuple[str, str]] = [
    ("specific", "Specific"),
    ("measurable", "Measurable"),
    ("achievable", "Achievable"),
    ("relevant", "Relevant"),
    ("time_bound", "Time-bound"),
]


def _score_color(score: float) -> str:
    if score >= 70:
        return ft.Colors.GREEN
    if score >= 40:
        return ft.Colors.ORANGE
    return ft.Colors.RED


class ResultWindow:
    """結果画面のウィンドウクラス"""

    def __init__(
        self,
        page: ft.Page,
        feedback: SessionFeedback,
        on_back_callback: Callable[[], None] | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            page: Fletのページオブジェクト
            feedback: フィードバックレポート
            on_back_callback: 戻るボタンが押されたときのコールバック
        """
        self.page = page
        self.feedback = feedback
        self.on_back_callback = on_back_callback

    def build(self) -> None:
        """ウィジェットの構築"""
        feedback = self.feedback
        controls: List[ft.Control] = [
            ft.Text(
                f"{feedback.score:.0f}",
                size=48,
                weight=ft.FontWeight.BOLD,
                color=_score_color(feedback.score),
            ),
            ft.Text(feedback.market_methodology, size=16, italic=True),
        ]

        for field_name, label in SCORE_LABELS:
            value: float = getattr(feedback, field_name)
            controls.append(
                ft.Row(
                    [
                        ft.Text(label, width=220),
                        ft.ProgressBar(value=value / 100, width=300, color=_score_color(value)),
                        ft.Text(f"{value:.0f}"),
                    ]
                )
            )

        controls.append(
            ft.Row(
                [
                    ft.Chip(
                        label=ft.Text(label),
                        selected=getattr(feedback.smart_criteria, field_name),
                    )
                    for field_name, label in SMART_LABELS
                ],
                wrap=True,
            )
        )

        for title, text in (
            ("Verbal", feedback.verbal_analysis),
            ("Emotional", feedback.emotional_analysis),
            ("Tone & pauses", feedback.body_language_analysis),
        ):
            if text:
                controls.append(self._section(title, [text]))

        for title, items in (
            ("Key takeaways", feedback.key_takeaways),
            ("Improvement areas", feedback.improvement_areas),
            ("Action plan", feedback.action_plan),
            ("Suggestions", feedback.suggestions),
        ):
            if items:
                controls.append(self._section(title, [f"• {item}" for item in items]))

        fillers = {word: count for word, count in feedback.filler_word_count.items() if count > 0}
        if fillers:
            controls.append(
                self._section("Filler words", [f"{word}: {count}" for word, count in fillers.items()])
            )
        if feedback.obscene_language_detected:
            controls.append(ft.Text("⚠ Inappropriate language detected", color=ft.Colors.RED))

        controls.append(ft.ElevatedButton("← Home", on_click=self._on_back_clicked))

        self.page.add(
            ft.Container(
                content=ft.Column(
                    controls,
                    horizontal_alignment=ft.CrossAxisAlignment.CENTER,
                    spacing=12,
                    scroll=ft.ScrollMode.AUTO,
                ),
                padding=40,
                expand=True,
            )
        )
        self.page.update()

    def _section(self, title: str, lines: List[str]) -> ft.Container:
        return ft.Container(
            content=ft.Column(
                [ft.Text(title, size=18, weight=ft.FontWeight.BOLD)]
                + [ft.Text(line, size=14) for line in lines],
                spacing=4,
            ),
            padding=10,
            width=600,
        )

    def _on_back_clicked(self, e: ft.ControlEvent) -> None:
        if self.on_back_callback:
            self.on_back_callback()
