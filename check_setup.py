"""
セットアップ確認スクリプト
実行前に必要な依存関係・APIキー・プロジェクト構造を確認する
"""
import importlib
import os
import sys
from pathlib import Path

# (インポート名, パッケージ名)
REQUIRED_PACKAGES: list[tuple[str, str]] = [
    ("flet", "flet"),
    ("dotenv", "python-dotenv"),
    ("openai", "openai[realtime]"),
    ("pydantic", "pydantic"),
    ("numpy", "numpy"),
    ("sounddevice", "sounddevice"),
    ("cv2", "opencv-python-headless"),
]


def check_imports() -> bool:
    """必要なモジュールのインポートを確認"""
    errors: list[str] = []

    for module_name, package_name in REQUIRED_PACKAGES:
        try:
            importlib.import_module(module_name)
            print(f"✓ {package_name}: OK")
        except ImportError:
            errors.append(f"{package_name} がインストールされていません。pip install {package_name} を実行してください。")
        except OSError as e:
            # sounddeviceはPortAudioが見つからない場合にOSErrorを送出する
            errors.append(f"{package_name} の読み込みに失敗しました: {e}")

    # アプリケーションモジュール
    try:
        sys.path.insert(0, str(Path(__file__).parent))
        from feedbackai.config import APP_DATA_DIR  # noqa: F401
        from feedbackai.services.session_controller import SessionController  # noqa: F401
        from feedbackai.gui.home_window import HomeWindow  # noqa: F401
        print("✓ アプリケーションモジュール: OK")
    except ImportError as e:
        errors.append(f"アプリケーションモジュールのインポートエラー: {e}")

    if errors:
        print("\n❌ 以下の問題が見つかりました:")
        for error in errors:
            print(f"  - {error}")
        return False

    print("\n✓ 全ての依存関係が正しくインストールされています。")
    return True


def check_api_key() -> bool:
    """APIキーが設定されているか確認"""
    if os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API"):
        print("✓ OpenAI APIキー: OK")
        return True
    print("❌ OPENAI_API_KEYまたはOPENAI_API環境変数が設定されていません（.envファイルに記載してください）")
    return False


def check_structure() -> bool:
    """プロジェクト構造を確認"""
    base_path = Path(__file__).parent
    required_files = [
        "main.py",
        "feedbackai/config.py",
        "feedbackai/errors.py",
        "feedbackai/models/schemas.py",
        "feedbackai/models/scenarios.py",
        "feedbackai/services/audio_codec.py",
        "feedbackai/services/media_service.py",
        "feedbackai/services/realtime_service.py",
        "feedbackai/services/playback_service.py",
        "feedbackai/services/session_controller.py",
        "feedbackai/services/feedback_service.py",
        "feedbackai/gui/home_window.py",
        "feedbackai/gui/session_window.py",
        "feedbackai/gui/result_window.py",
    ]

    missing_files = [file_path for file_path in required_files if not (base_path / file_path).exists()]
    if missing_files:
        print("❌ 以下のファイルが見つかりません:")
        for file_path in missing_files:
            print(f"  - {file_path}")
        return False

    print("✓ プロジェクト構造: OK")
    return True


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent / ".env")
    print("=== セットアップ確認 ===\n")

    structure_ok = check_structure()
    print()
    imports_ok = check_imports()
    print()
    api_key_ok = check_api_key()

    print("\n" + "=" * 40)
    if structure_ok and imports_ok and api_key_ok:
        print("✓ セットアップは完了しています。")
        print("\n実行方法:")
        print("  feedbackai")
        print("  または")
        print("  python main.py")
        sys.exit(0)
    else:
        print("❌ セットアップに問題があります。")
        print("\n依存関係をインストールするには:")
        print("  pip install -e .")
        sys.exit(1)
