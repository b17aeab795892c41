"""
FeedbackAI Coach - メインエントリーポイント
"""
import logging
import sys
from pathlib import Path

import flet as ft
from dotenv import load_dotenv

from feedbackai.config import APP_DATA_DIR, setup_logging
from feedbackai.gui.home_window import HomeWindow
from feedbackai.gui.result_window import ResultWindow
from feedbackai.gui.session_window import SessionWindow
from feedbackai.models.schemas import Language, Scenario, SessionFeedback
from feedbackai.services.media_service import AudioContexts

# .envファイルの読み込み（実行ファイルのディレクトリまたはプロジェクトルートから）
if getattr(sys, "frozen", False):
    # PyInstallerでビルドされた場合
    application_path = Path(sys.executable).parent
else:
    application_path = Path(__file__).parent

env_path = application_path / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()

logger = logging.getLogger(__name__)


class App:
    """アプリケーションのメインクラス"""

    def __init__(self, page: ft.Page) -> None:
        """
        初期化処理

        Args:
            page: Fletのページオブジェクト
        """
        self.page = page
        self.page.title = "FeedbackAI Coach"
        self.page.theme_mode = ft.ThemeMode.LIGHT
        self.page.on_disconnect = self._on_disconnect

        # アプリケーションデータディレクトリの作成
        APP_DATA_DIR.mkdir(parents=True, exist_ok=True)

        # 音声コンテキストはアプリケーション全体で1つだけ使う
        self.contexts = AudioContexts()
        self.session_window: SessionWindow | None = None

        self.show_home()

    def show_home(self) -> None:
        """ホーム画面を表示"""
        self.session_window = None
        self.page.clean()
        home_window = HomeWindow(self.page, on_start_callback=self.show_session)
        home_window.build()
        self.page.update()

    def show_session(self, scenario: Scenario, language: Language) -> None:
        """セッション画面を表示"""
        self.page.clean()
        try:
            self.session_window = SessionWindow(
                self.page,
                self.contexts,
                scenario,
                language,
                on_feedback_callback=self.show_result,
                on_exit_callback=self.show_home,
            )
        except ValueError as e:
            # APIキー未設定
            logger.error("セッション画面の初期化エラー: %s", e)
            self.show_home()
            self.page.open(ft.SnackBar(ft.Text(str(e))))
            return
        self.session_window.build()

    def show_result(self, feedback: SessionFeedback) -> None:
        """結果画面を表示"""
        self.session_window = None
        self.page.clean()
        result_window = ResultWindow(self.page, feedback, on_back_callback=self.show_home)
        result_window.build()

    async def _on_disconnect(self, e: ft.ControlEvent) -> None:
        """ウィンドウを閉じたときの後始末"""
        if self.session_window is not None:
            await self.session_window.controller.shutdown()
        else:
            self.contexts.close()


def main(page: ft.Page) -> None:
    """アプリケーションの起動"""
    App(page)


def run() -> None:
    """コマンドラインからの起動"""
    log_file = setup_logging()
    logger.info("FeedbackAI Coachを起動します (log=%s)", log_file)
    ft.app(target=main)


if __name__ == "__main__":
    run()
