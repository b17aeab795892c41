"""
API接続チェックサービス
OpenAI APIの接続状態と音声デバイスの有無をチェックする
"""
import os
from typing import Dict, List

from openai import OpenAI


class APICheckService:
    """API接続状態をチェックするサービスクラス"""

    def check_openai_api(self) -> Dict[str, str]:
        """
        OpenAI APIの接続状態をチェック

        Returns:
            API名と状態を含む辞書
        """
        # OPENAI_API_KEYまたはOPENAI_APIのどちらかをサポート
        api_key: str | None = os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API")

        if not api_key:
            return {
                "name": "OpenAI API",
                "status": "不明",
                "message": "APIキーが設定されていません",
            }

        try:
            client = OpenAI(api_key=api_key)
        except Exception as e:
            return {
                "name": "OpenAI API",
                "status": "エラー",
                "message": f"初期化エラー: {e}",
            }

        # 簡単なリクエストで接続確認（models.list()を呼び出して確認）
        try:
            client.models.list()
        except Exception as e:
            return {
                "name": "OpenAI API",
                "status": "エラー",
                "message": f"API接続エラー: {e}",
            }
        return {
            "name": "OpenAI API",
            "status": "利用可能",
            "message": "APIキーが有効です",
        }

    def check_audio_devices(self) -> Dict[str, str]:
        """
        マイクとスピーカーの有無をチェック

        Returns:
            デバイス名と状態を含む辞書
        """
        try:
            import sounddevice as sd

            devices = sd.query_devices()
        except Exception as e:
            return {
                "name": "音声デバイス",
                "status": "エラー",
                "message": f"音声デバイスの取得に失敗しました: {e}",
            }

        inputs = [dev for dev in devices if dev["max_input_channels"] > 0]
        outputs = [dev for dev in devices if dev["max_output_channels"] > 0]
        if not inputs:
            return {
                "name": "音声デバイス",
                "status": "エラー",
                "message": "利用可能なマイクが見つかりません",
            }
        if not outputs:
            return {
                "name": "音声デバイス",
                "status": "エラー",
                "message": "利用可能なスピーカーが見つかりません",
            }
        return {
            "name": "音声デバイス",
            "status": "利用可能",
            "message": f"マイク{len(inputs)}台、スピーカー{len(outputs)}台",
        }

    def check_all(self) -> List[Dict[str, str]]:
        """
        全ての接続状態をチェック

        Returns:
            状態のリスト
        """
        return [self.check_openai_api(), self.check_audio_devices()]
