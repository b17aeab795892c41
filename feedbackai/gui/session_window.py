"""
セッション画面のGUIコンポーネント
フェーズの選択、開始・終了ボタン、シミュレーションの経過時間を表示する
"""
import flet as ft
from typing import Callable

from feedbackai.errors import CoachSessionError
from feedbackai.models.schemas import Language, Scenario, SessionFeedback, SessionPhase
from feedbackai.services.feedback_service import FeedbackService
from feedbackai.services.media_service import AudioContexts, MediaService
from feedbackai.services.realtime_service import RealtimeService
from feedbackai.services.session_controller import SessionController, format_elapsed

# プレビュー表示前のプレースホルダー（1x1の透明PNG）
PLACEHOLDER_IMAGE = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

PHASE_LABELS = {
    Language.ES: {SessionPhase.COACHING: "Mentoría", SessionPhase.SIMULATION: "Simulación"},
    Language.EN: {SessionPhase.COACHING: "Mentoring", SessionPhase.SIMULATION: "Simulation"},
}


class SessionWindow:
    """セッション画面のウィンドウクラス"""

    def __init__(
        self,
        page: ft.Page,
        contexts: AudioContexts,
        scenario: Scenario,
        language: Language,
        on_feedback_callback: Callable[[SessionFeedback], None] | None = None,
        on_exit_callback: Callable[[], None] | None = None,
        controller: SessionController | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            page: Fletのページオブジェクト
            contexts: アプリケーション全体で共有する音声コンテキスト
            scenario: 練習シナリオ
            language: セッション言語
            on_feedback_callback: フィードバック完成時のコールバック
            on_exit_callback: ホーム画面に戻るときのコールバック
            controller: セッションコントローラ（省略時は作成する）
        """
        self.page = page
        self.scenario = scenario
        self.language = language
        self.on_feedback_callback = on_feedback_callback
        self.on_exit_callback = on_exit_callback
        self.controller = controller or SessionController(
            MediaService(contexts),
            RealtimeService(),
            FeedbackService(),
            scenario,
            language,
        )
        self.controller.on_feedback_ready = self._on_feedback_ready
        self.controller.on_abort = self._on_abort
        self.controller.on_error = self._on_error
        self.controller.on_state_changed = self._refresh
        self.controller.on_tick = self._on_tick
        self.controller.on_video_frame = self._on_video_frame

        # UIコンポーネント
        self.phase_selector: ft.SegmentedButton | None = None
        self.start_button: ft.ElevatedButton | None = None
        self.end_button: ft.ElevatedButton | None = None
        self.timer_text: ft.Text | None = None
        self.status_text: ft.Text | None = None
        self.preview_image: ft.Image | None = None

    def build(self) -> None:
        """ウィジェットの構築"""
        labels = PHASE_LABELS[self.language]
        self.phase_selector = ft.SegmentedButton(
            segments=[
                ft.Segment(value=phase.value, label=ft.Text(labels[phase])) for phase in SessionPhase
            ],
            selected={self.controller.phase.value},
            allow_multiple_selection=False,
            on_change=self._on_phase_changed,
        )
        self.start_button = ft.ElevatedButton("Start", on_click=self._on_start_clicked, width=200)
        self.end_button = ft.ElevatedButton("End", on_click=self._on_end_clicked, width=200)
        self.timer_text = ft.Text(format_elapsed(0), size=28, weight=ft.FontWeight.BOLD)
        self.status_text = ft.Text("", size=14)
        self.preview_image = ft.Image(
            src_base64=PLACEHOLDER_IMAGE,
            width=480,
            height=270,
            fit=ft.ImageFit.CONTAIN,
            gapless_playback=True,
            visible=False,
        )

        self.page.add(
            ft.Container(
                content=ft.Column(
                    [
                        ft.Text(
                            f"{self.scenario.icon} {self.scenario.localized_title(self.language)}",
                            size=24,
                            weight=ft.FontWeight.BOLD,
                        ),
                        ft.Text(self.scenario.localized_description(self.language), size=14),
                        self.phase_selector,
                        self.preview_image,
                        self.timer_text,
                        ft.Row([self.start_button, self.end_button], alignment=ft.MainAxisAlignment.CENTER),
                        self.status_text,
                        ft.TextButton("← Home", on_click=self._on_exit_clicked),
                    ],
                    horizontal_alignment=ft.CrossAxisAlignment.CENTER,
                    spacing=20,
                ),
                padding=40,
                expand=True,
            )
        )
        self._refresh()

    def _refresh(self) -> None:
        """コントローラの状態を画面に反映"""
        controller = self.controller
        if self.phase_selector is None or self.start_button is None or self.end_button is None:
            return
        # 録音中はフェーズを切り替えられない
        self.phase_selector.disabled = controller.is_busy or controller.is_ending
        self.start_button.disabled = controller.is_busy or controller.is_ending
        self.end_button.disabled = not controller.recording or controller.is_ending
        if self.preview_image is not None:
            self.preview_image.visible = controller.recording and controller.phase is SessionPhase.SIMULATION
        if self.timer_text is not None:
            self.timer_text.visible = controller.phase is SessionPhase.SIMULATION
            self.timer_text.value = format_elapsed(controller.elapsed_seconds)
        if self.status_text is not None:
            if controller.is_ending:
                self.status_text.value = "Analizando..." if self.language is Language.ES else "Analyzing..."
            elif controller.recording:
                self.status_text.value = "● REC"
            elif controller.last_error is not None:
                self.status_text.value = str(controller.last_error)
            else:
                self.status_text.value = ""
        self.page.update()

    def _on_phase_changed(self, e: ft.ControlEvent) -> None:
        selected = next(iter(e.control.selected), SessionPhase.COACHING.value)
        self.controller.switch_phase(SessionPhase(selected))
        if self.phase_selector is not None:
            self.phase_selector.selected = {self.controller.phase.value}
        self._refresh()

    async def _on_start_clicked(self, e: ft.ControlEvent) -> None:
        await self.controller.start_session(self.scenario, self.controller.phase, self.language)

    async def _on_end_clicked(self, e: ft.ControlEvent) -> None:
        await self.controller.end_session()

    async def _on_exit_clicked(self, e: ft.ControlEvent) -> None:
        await self.controller.abort()

    def _on_tick(self, seconds: int) -> None:
        if self.timer_text is not None:
            self.timer_text.value = format_elapsed(seconds)
            self.page.update()

    def _on_video_frame(self, frame: str) -> None:
        if self.preview_image is not None:
            self.preview_image.src_base64 = frame
            self.page.update()

    def _on_feedback_ready(self, feedback: SessionFeedback) -> None:
        if self.on_feedback_callback:
            self.on_feedback_callback(feedback)

    def _on_abort(self) -> None:
        if self.on_exit_callback:
            self.on_exit_callback()

    def _on_error(self, error: CoachSessionError) -> None:
        if self.status_text is not None:
            self.status_text.value = str(error)
            self.page.update()
