"""
音声コーデックユーティリティ
マイクの浮動小数点サンプルとRealtime APIのPCM16形式を相互変換する
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from feedbackai.config import OUTBOUND_MIME_TYPE
from feedbackai.errors import DecodeError

PCM_SAMPLE_WIDTH: int = 2  # 16bit
PCM_SCALE: float = 32768.0
PCM_MIN: int = -32768
PCM_MAX: int = 32767


@dataclass(frozen=True)
class PcmBlob:
    """送信用のPCMペイロード"""

    data: bytes
    mime_type: str = OUTBOUND_MIME_TYPE


@dataclass(frozen=True)
class AudioBuffer:
    """再生可能な音声バッファ（samplesの形状は (フレーム数, チャンネル数)）"""

    samples: NDArray[np.float32]
    sample_rate: int
    channels: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """再生時間（秒）"""
        return self.frames / self.sample_rate


def encode_outbound(samples: Sequence[float] | NDArray[np.floating]) -> PcmBlob:
    """
    浮動小数点サンプル（-1.0～1.0）を16bitリトルエンディアンPCMに変換

    範囲外の値はクリップし、例外は投げない

    Args:
        samples: マイクから取得したサンプル列

    Returns:
        PCMペイロード
    """
    array: NDArray[np.float32] = np.asarray(samples, dtype=np.float32).reshape(-1)
    array = np.nan_to_num(array, nan=0.0, posinf=1.0, neginf=-1.0)
    clamped = np.clip(array, -1.0, 1.0)
    scaled = np.clip(clamped * PCM_SCALE, PCM_MIN, PCM_MAX)
    pcm: NDArray[np.int16] = scaled.astype("<i2")
    return PcmBlob(data=pcm.tobytes())


def decode_inbound_to_samples(data: bytes) -> NDArray[np.float32]:
    """
    16bitリトルエンディアンPCMを浮動小数点サンプルに変換

    Args:
        data: PCMバイト列

    Returns:
        -1.0～1.0に正規化されたサンプル列

    Raises:
        DecodeError: バイト長がサンプル幅の倍数でない場合
    """
    if len(data) % PCM_SAMPLE_WIDTH != 0:
        raise DecodeError(f"PCMデータのバイト長が不正です: {len(data)} bytes")
    int16_array = np.frombuffer(data, dtype="<i2")
    return int16_array.astype(np.float32) / PCM_SCALE


def decode_base64_audio(payload: str) -> bytes:
    """
    base64で受信した音声データをデコード

    Raises:
        DecodeError: base64として不正な場合
    """
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"音声データのbase64デコードに失敗しました: {e}") from e


def materialize_audio_buffer(data: bytes, sample_rate: int, channels: int = 1) -> AudioBuffer:
    """
    PCMバイト列から再生用の音声バッファを作成

    Args:
        data: PCMバイト列（チャンネルはインターリーブ）
        sample_rate: サンプリングレート
        channels: チャンネル数

    Returns:
        再生用の音声バッファ

    Raises:
        DecodeError: バイト長がサンプル幅の倍数でない場合
        ValueError: サンプリングレートまたはチャンネル数が不正な場合
    """
    if channels < 1:
        raise ValueError(f"チャンネル数が不正です: {channels}")
    if sample_rate <= 0:
        raise ValueError(f"サンプリングレートが不正です: {sample_rate}")

    samples = decode_inbound_to_samples(data)
    frames = len(samples) // channels
    # 1フレームに満たない端数サンプルは捨てる
    framed = samples[: frames * channels].reshape(frames, channels)
    return AudioBuffer(samples=framed, sample_rate=sample_rate, channels=channels)
