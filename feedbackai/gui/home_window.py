"""
ホーム画面のGUIコンポーネント
シナリオと言語を選んでセッション画面へ進む
"""
import flet as ft
from typing import Callable, Dict, List

from feedbackai.models.scenarios import SCENARIOS
from feedbackai.models.schemas import Language, Scenario
from feedbackai.services.api_check_service import APICheckService

STATUS_COLORS: Dict[str, str] = {
    "利用可能": ft.Colors.GREEN,
    "不明": ft.Colors.ORANGE,
    "エラー": ft.Colors.RED,
}


class HomeWindow:
    """ホーム画面のウィンドウクラス"""

    def __init__(
        self,
        page: ft.Page,
        on_start_callback: Callable[[Scenario, Language], None] | None = None,
        scenarios: List[Scenario] | None = None,
        api_check_service: APICheckService | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            page: Fletのページオブジェクト
            on_start_callback: シナリオが選ばれたときに呼ばれるコールバック関数
            scenarios: 表示するシナリオ（省略時は組み込みのシナリオ）
            api_check_service: 接続チェックサービス
        """
        self.page = page
        self.on_start_callback = on_start_callback
        self.scenarios = scenarios if scenarios is not None else SCENARIOS
        self.api_check_service = api_check_service or APICheckService()
        self.language: Language = Language.ES

        # UIコンポーネント
        self.language_selector: ft.RadioGroup | None = None
        self.scenario_list: ft.Column | None = None
        self.api_status_texts: Dict[str, ft.Text] = {}

    def build(self) -> None:
        """ウィジェットの構築"""
        title = ft.Text(
            "FeedbackAI Coach",
            size=32,
            weight=ft.FontWeight.BOLD,
            text_align=ft.TextAlign.CENTER,
        )

        self.language_selector = ft.RadioGroup(
            value=self.language.value,
            on_change=self._on_language_changed,
            content=ft.Row(
                [
                    ft.Radio(value=Language.ES.value, label="Español"),
                    ft.Radio(value=Language.EN.value, label="English"),
                ],
                alignment=ft.MainAxisAlignment.CENTER,
            ),
        )

        self.scenario_list = ft.Column(spacing=10)
        self._render_scenarios()

        self.page.add(
            ft.Container(
                content=ft.Column(
                    [
                        title,
                        self.language_selector,
                        self._create_api_section(),
                        self.scenario_list,
                    ],
                    horizontal_alignment=ft.CrossAxisAlignment.CENTER,
                    spacing=20,
                    scroll=ft.ScrollMode.AUTO,
                ),
                padding=40,
                expand=True,
            )
        )
        self._check_apis()

    def _create_api_section(self) -> ft.Container:
        """接続チェックセクションの作成"""
        rows: List[ft.Control] = []
        for name in ("OpenAI API", "音声デバイス"):
            status_text = ft.Text("確認中...", size=14)
            self.api_status_texts[name] = status_text
            rows.append(ft.Row([ft.Text(name, size=14, weight=ft.FontWeight.BOLD), status_text]))
        return ft.Container(content=ft.Column(rows, spacing=5), padding=10)

    def _render_scenarios(self) -> None:
        if self.scenario_list is None:
            return
        self.scenario_list.controls = [
            ft.ElevatedButton(
                content=ft.Column(
                    [
                        ft.Text(
                            f"{scenario.icon} {scenario.localized_title(self.language)}",
                            size=18,
                            weight=ft.FontWeight.BOLD,
                        ),
                        ft.Text(scenario.localized_description(self.language), size=13),
                    ],
                    spacing=4,
                ),
                data=scenario.id,
                on_click=self._on_scenario_clicked,
                width=500,
            )
            for scenario in self.scenarios
        ]

    def _check_apis(self) -> None:
        """接続状態をチェックして表示を更新"""
        for result in self.api_check_service.check_all():
            status_text = self.api_status_texts.get(result["name"])
            if status_text is None:
                continue
            status_text.value = f"{result['status']} - {result['message']}"
            status_text.color = STATUS_COLORS.get(result["status"], ft.Colors.BLACK)
        self.page.update()

    def _on_language_changed(self, e: ft.ControlEvent) -> None:
        self.language = Language(e.control.value)
        self._render_scenarios()
        self.page.update()

    def _on_scenario_clicked(self, e: ft.ControlEvent) -> None:
        scenario = next((s for s in self.scenarios if s.id == e.control.data), None)
        if scenario is not None and self.on_start_callback:
            self.on_start_callback(scenario, self.language)
