"""
アプリケーション設定
"""
import logging
import os
import sys
from pathlib import Path


def get_app_data_dir() -> Path:
    """
    アプリケーションのデータディレクトリを取得

    Returns:
        アプリケーションデータディレクトリのパス
    """
    if sys.platform == "win32":
        # Windowsの場合、AppData\Local\FeedbackAICoachを使用
        app_data: str | None = os.getenv("LOCALAPPDATA")
        if app_data:
            app_dir: Path = Path(app_data) / "FeedbackAICoach"
            app_dir.mkdir(exist_ok=True)
            return app_dir
    elif sys.platform == "darwin":
        # macOSの場合、~/Library/Application Support/FeedbackAICoachを使用
        app_support: Path = Path.home() / "Library" / "Application Support" / "FeedbackAICoach"
        app_support.mkdir(parents=True, exist_ok=True)
        return app_support
    # その他のOSまたはフォールバック
    return Path.home() / ".feedbackai_coach"


def get_log_file() -> Path:
    """
    ログファイルのパスを取得

    Returns:
        ログファイルのパス
    """
    return get_app_data_dir() / "app.log"


def get_openai_api_key() -> str:
    """
    OpenAI APIキーを環境変数から取得

    Returns:
        APIキー

    Raises:
        ValueError: 環境変数が設定されていない場合
    """
    # OPENAI_API_KEYまたはOPENAI_APIのどちらかをサポート
    api_key: str | None = os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API")
    if not api_key:
        raise ValueError("OPENAI_API_KEYまたはOPENAI_API環境変数が設定されていません")
    return api_key


def setup_logging(log_file: Path | None = None, level: str | None = None) -> Path:
    """
    ログ出力を設定する（ファイルには詳細、コンソールには警告以上のみ）

    Args:
        log_file: ログファイルのパス（省略時はアプリケーションデータディレクトリ）
        level: ファイルに出力するログレベル（省略時はFEEDBACKAI_LOG_LEVEL）

    Returns:
        ログファイルのパス
    """
    log_path: Path = log_file or get_log_file()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    level_name: str = (level or os.getenv("FEEDBACKAI_LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(getattr(logging, level_name, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    return log_path


# アプリケーションデータディレクトリ
APP_DATA_DIR = get_app_data_dir()

# ログファイル
LOG_FILE = get_log_file()

# 音声設定（キャプチャは16kHz、再生は24kHz、いずれもモノラル）
CAPTURE_SAMPLE_RATE: int = 16000
PLAYBACK_SAMPLE_RATE: int = 24000
AUDIO_CHANNELS: int = 1
CAPTURE_CHUNK_SIZE: int = 4096  # 約256ms分のフレーム
OUTBOUND_MIME_TYPE: str = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE}"
OUTBOUND_QUEUE_SIZE: int = 64  # 送信待ちチャンクの上限（超過時は古いものから破棄）

# カメラ設定（シミュレーションフェーズのみ使用）
CAMERA_INDEX: int = int(os.getenv("FEEDBACKAI_CAMERA_INDEX", "0"))
PREVIEW_FRAME_INTERVAL: float = 1 / 15  # プレビューの更新間隔（秒）
PREVIEW_JPEG_QUALITY: int = 70

# モデル設定
DEFAULT_REALTIME_MODEL: str = "gpt-4o-realtime-preview-2024-12-17"
DEFAULT_REALTIME_VOICE: str = "alloy"
DEFAULT_TRANSCRIPTION_MODEL: str = "whisper-1"
DEFAULT_ANALYSIS_MODEL: str = "gpt-5-mini"
DEFAULT_REASONING_EFFORT: str = "medium"
