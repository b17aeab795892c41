"""
エラー定義
セッションの各段階で発生するエラーの分類
"""


class CoachSessionError(Exception):
    """コーチングセッション関連エラーの基底クラス"""


class MediaAccessDenied(CoachSessionError):
    """マイク・カメラへのアクセスが拒否された"""


class MediaUnavailable(CoachSessionError):
    """利用可能なマイク・カメラが存在しない"""


class ConnectionFailed(CoachSessionError):
    """Realtime APIとのストリームを確立できなかった"""


class TransportError(CoachSessionError):
    """セッション中にストリームが切断された（録音は停止するが致命的ではない）"""


class InvalidPhaseSwitch(CoachSessionError):
    """接続中にフェーズを切り替えようとした"""


class DecodeError(CoachSessionError):
    """受信した音声データの形式が不正"""


class AnalysisFailed(CoachSessionError):
    """フィードバック分析の生成または解析に失敗した"""
