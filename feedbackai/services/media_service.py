"""
メディア管理サービス
マイク・カメラの取得と解放、キャプチャ用・再生用の音声コンテキストを管理する
"""

import asyncio
import logging
import threading
from typing import Any, Callable, List

import numpy as np
from numpy.typing import NDArray

from feedbackai.config import (
    AUDIO_CHANNELS,
    CAMERA_INDEX,
    CAPTURE_CHUNK_SIZE,
    CAPTURE_SAMPLE_RATE,
    PLAYBACK_SAMPLE_RATE,
    PREVIEW_JPEG_QUALITY,
)
from feedbackai.errors import MediaAccessDenied, MediaUnavailable
from feedbackai.models.schemas import SessionPhase
from feedbackai.services.audio_codec import AudioBuffer

logger = logging.getLogger(__name__)

SUSPENDED = "suspended"
RUNNING = "running"
CLOSED = "closed"


class AudioTrack:
    """マイク入力トラック（sounddeviceの入力ストリームをラップ）"""

    kind = "audio"

    def __init__(self, stream: Any, device: int | None) -> None:
        self.stream = stream
        self.device = device
        self.ended: bool = False
        self._sink: Callable[[NDArray[np.float32]], None] | None = None

    def set_sink(self, sink: Callable[[NDArray[np.float32]], None] | None) -> None:
        """ブロックの受け取り先を設定（Noneで切り離し）"""
        self._sink = sink

    def handle_block(self, indata: NDArray[np.float32], frames: int, time_info: Any, status: Any) -> None:
        """sounddeviceのコールバック関数（オーディオスレッドで実行される）"""
        if status:
            logger.debug("Audio callback status: %s", status)
        sink = self._sink
        if sink is None or self.ended:
            return
        audio_data = indata[:, 0] if indata.ndim > 1 else indata
        sink(audio_data.copy())

    def stop(self) -> None:
        """入力ストリームを停止して閉じる（複数回呼んでもよい）"""
        if self.ended:
            return
        self.ended = True
        self._sink = None
        try:
            self.stream.stop()
            self.stream.close()
        except Exception as e:
            logger.warning("マイクストリーム停止エラー: %s", e)


class VideoTrack:
    """カメラトラック（OpenCVのキャプチャをラップ）"""

    kind = "video"

    def __init__(self, capture: Any, index: int) -> None:
        self.capture = capture
        self.index = index
        self.ended: bool = False
        # 読み取り（ワーカースレッド）と解放を排他する
        self._lock = threading.Lock()

    def read_jpeg(self, quality: int = PREVIEW_JPEG_QUALITY) -> bytes | None:
        """
        1フレームを読み取りJPEGにエンコード（ブロックするためワーカースレッドで呼ぶ）

        Returns:
            JPEGのバイト列、フレームを取得できなかった場合はNone
        """
        with self._lock:
            if self.ended:
                return None
            ok, frame = self.capture.read()
        if not ok or frame is None:
            return None

        import cv2

        ok, encoded = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not ok:
            return None
        return encoded.tobytes()

    def stop(self) -> None:
        """カメラを解放（複数回呼んでもよい）"""
        with self._lock:
            if self.ended:
                return
            self.ended = True
            try:
                self.capture.release()
            except Exception as e:
                logger.warning("カメラ解放エラー: %s", e)


class MediaStream:
    """1セッション分のメディアトラックの集合"""

    def __init__(self, tracks: List[AudioTrack | VideoTrack]) -> None:
        self._tracks = list(tracks)

    def get_tracks(self) -> List[AudioTrack | VideoTrack]:
        return list(self._tracks)

    @property
    def audio_track(self) -> AudioTrack | None:
        return next((t for t in self._tracks if isinstance(t, AudioTrack)), None)

    @property
    def video_track(self) -> VideoTrack | None:
        return next((t for t in self._tracks if isinstance(t, VideoTrack)), None)

    def stop(self) -> None:
        """すべてのトラックを停止"""
        for track in self._tracks:
            track.stop()


class AudioContext:
    """音声処理コンテキストの基底クラス"""

    def __init__(self, sample_rate: int, channels: int = AUDIO_CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        # プラットフォームによっては停止状態で始まるため、使用前に必ずresume()する
        self.state: str = SUSPENDED

    async def resume(self) -> None:
        if self.state == CLOSED:
            raise RuntimeError("閉じられた音声コンテキストは再開できません")
        self.state = RUNNING

    def close(self) -> None:
        self.state = CLOSED


class CaptureContext(AudioContext):
    """キャプチャ用コンテキスト（マイクのブロックをイベントループへ届ける）"""

    def __init__(self, sample_rate: int = CAPTURE_SAMPLE_RATE, chunk_size: int = CAPTURE_CHUNK_SIZE) -> None:
        super().__init__(sample_rate)
        self.chunk_size = chunk_size
        self._track: AudioTrack | None = None

    def connect(self, track: AudioTrack, on_chunk: Callable[[NDArray[np.float32]], None]) -> None:
        """
        マイクトラックを接続する（イベントループ上で呼ぶこと）

        Args:
            track: マイクトラック
            on_chunk: イベントループのスレッドで呼ばれるコールバック
        """
        if self.state == CLOSED:
            raise RuntimeError("閉じられた音声コンテキストには接続できません")
        self.disconnect()
        loop = asyncio.get_running_loop()

        def deliver(samples: NDArray[np.float32]) -> None:
            if self.state != RUNNING:
                return
            try:
                loop.call_soon_threadsafe(on_chunk, samples)
            except RuntimeError:
                # イベントループ終了後に届いたブロック
                pass

        track.set_sink(deliver)
        self._track = track

    def disconnect(self) -> None:
        if self._track is not None:
            self._track.set_sink(None)
            self._track = None

    def close(self) -> None:
        self.disconnect()
        super().close()


class BufferSource:
    """再生コンテキスト上にスケジュールされる1つの音声断片"""

    def __init__(self, context: "PlaybackContext", buffer: AudioBuffer) -> None:
        self.context = context
        self.buffer = buffer
        self.samples: NDArray[np.float32] = buffer.samples
        self.on_ended: Callable[[], None] | None = None
        self.start_frame: int | None = None
        self.ended: bool = False

    @property
    def duration(self) -> float:
        return self.buffer.duration

    @property
    def frames(self) -> int:
        return self.buffer.frames

    def start(self, when: float) -> None:
        """タイムライン上の時刻when（秒）から再生する"""
        if self.start_frame is not None:
            raise RuntimeError("音声ソースは既に開始されています")
        self.context.schedule(self, when)

    def stop(self) -> None:
        """即座に停止する（終了済みなら何もしない）"""
        if self.start_frame is None:
            raise RuntimeError("開始されていない音声ソースは停止できません")
        self.ended = True
        self.context.unschedule(self)

    def _finish(self, loop: asyncio.AbstractEventLoop | None) -> None:
        """自然終了時の通知（オーディオスレッドから呼ばれる）"""
        self.ended = True
        callback = self.on_ended
        if callback is None:
            return
        if loop is None:
            callback()
            return
        try:
            loop.call_soon_threadsafe(callback)
        except RuntimeError:
            pass


class PlaybackContext(AudioContext):
    """再生用コンテキスト（常駐する出力ストリームでスケジュール済みの断片をミックスする）"""

    def __init__(self, sample_rate: int = PLAYBACK_SAMPLE_RATE, channels: int = AUDIO_CHANNELS) -> None:
        super().__init__(sample_rate, channels)
        self.stream: Any | None = None
        self._sources: List[BufferSource] = []
        self._frame_position: int = 0
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def current_time(self) -> float:
        """出力済みのフレーム数から求めた現在時刻（秒）"""
        with self._lock:
            return self._frame_position / self.sample_rate

    async def resume(self) -> None:
        await super().resume()
        self._loop = asyncio.get_running_loop()
        if self.stream is None:
            import sounddevice as sd

            # 24kHz、モノラル、float32形式で出力ストリームを開く
            self.stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=np.float32,
                callback=self.render,
            )
            self.stream.start()
            logger.info("音声出力ストリームを開始しました (%d Hz)", self.sample_rate)

    def create_source(self, buffer: AudioBuffer) -> BufferSource:
        if self.state == CLOSED:
            raise RuntimeError("閉じられた音声コンテキストです")
        if buffer.channels != self.channels:
            raise ValueError(
                f"チャンネル数が一致しません: buffer={buffer.channels}, context={self.channels}"
            )
        return BufferSource(self, buffer)

    def schedule(self, source: BufferSource, when: float) -> None:
        with self._lock:
            # 過去の時刻が指定された場合は現在位置から再生する
            source.start_frame = max(int(round(when * self.sample_rate)), self._frame_position)
            self._sources.append(source)

    def unschedule(self, source: BufferSource) -> None:
        with self._lock:
            if source in self._sources:
                self._sources.remove(source)

    def render(self, outdata: NDArray[np.float32], frames: int, time_info: Any, status: Any) -> None:
        """sounddeviceの出力コールバック（スケジュール済みの断片を合成する）"""
        if status:
            logger.debug("Playback callback status: %s", status)
        outdata.fill(0.0)
        finished: List[BufferSource] = []
        with self._lock:
            block_start = self._frame_position
            block_end = block_start + frames
            for source in self._sources:
                if source.start_frame is None or source.start_frame >= block_end:
                    continue
                offset = max(block_start, source.start_frame)
                source_index = offset - source.start_frame
                count = min(source.frames - source_index, block_end - offset)
                if count > 0:
                    out_index = offset - block_start
                    outdata[out_index : out_index + count] += source.samples[
                        source_index : source_index + count
                    ]
                if source_index + max(count, 0) >= source.frames:
                    finished.append(source)
            for source in finished:
                self._sources.remove(source)
            self._frame_position = block_end
        np.clip(outdata, -1.0, 1.0, out=outdata)
        for source in finished:
            source._finish(self._loop)

    def close(self) -> None:
        with self._lock:
            self._sources.clear()
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception as e:
                logger.warning("音声出力ストリーム停止エラー: %s", e)
            finally:
                self.stream = None
        super().close()


class AudioContexts:
    """
    キャプチャ用・再生用の音声コンテキストを保持する

    アプリケーション起動中は1つだけ生成し、コントローラに注入して再利用する
    """

    def __init__(
        self,
        capture_sample_rate: int = CAPTURE_SAMPLE_RATE,
        playback_sample_rate: int = PLAYBACK_SAMPLE_RATE,
        chunk_size: int = CAPTURE_CHUNK_SIZE,
    ) -> None:
        self.capture_sample_rate = capture_sample_rate
        self.playback_sample_rate = playback_sample_rate
        self.chunk_size = chunk_size
        self._capture: CaptureContext | None = None
        self._playback: PlaybackContext | None = None

    @property
    def capture(self) -> CaptureContext:
        if self._capture is None:
            self._capture = CaptureContext(self.capture_sample_rate, self.chunk_size)
        return self._capture

    @property
    def playback(self) -> PlaybackContext:
        if self._playback is None:
            self._playback = PlaybackContext(self.playback_sample_rate)
        return self._playback

    async def resume(self) -> None:
        """両方のコンテキストを再開（セッション開始ごとに呼ぶ）"""
        await self.capture.resume()
        await self.playback.resume()

    def close(self) -> None:
        """アプリケーション終了時に呼ぶ"""
        if self._capture is not None:
            self._capture.close()
        if self._playback is not None:
            self._playback.close()


class MediaService:
    """マイク・カメラの取得と解放を管理するサービスクラス"""

    def __init__(
        self,
        contexts: AudioContexts,
        input_device: int | None = None,
        camera_index: int = CAMERA_INDEX,
    ) -> None:
        """
        初期化処理

        Args:
            contexts: アプリケーション全体で共有する音声コンテキスト
            input_device: 優先して使う入力デバイス番号
            camera_index: カメラのデバイス番号
        """
        self.contexts = contexts
        self.input_device = input_device
        self.camera_index = camera_index
        self.stream: MediaStream | None = None
        self._acquire_lock = asyncio.Lock()

    async def acquire(self, phase: SessionPhase) -> MediaStream:
        """
        フェーズに応じたメディアを取得（マイクは常に、カメラはシミュレーション時のみ）

        既に保持しているストリームは先に解放する。同時に呼ばれた場合は順番に処理し、
        保持するストリームは常に1つだけ

        Raises:
            MediaAccessDenied: デバイスを開けなかった場合
            MediaUnavailable: 対応するデバイスが存在しない場合
        """
        async with self._acquire_lock:
            self.release()
            stream = await asyncio.to_thread(self._open_stream, phase)
            self.stream = stream
        logger.info(
            "メディアを取得しました (phase=%s, tracks=%s)",
            phase.value,
            [track.kind for track in stream.get_tracks()],
        )
        return stream

    def release(self) -> None:
        """保持しているすべてのトラックを停止（何も保持していなければ何もしない）"""
        stream = self.stream
        self.stream = None
        if stream is not None:
            stream.stop()
            logger.info("メディアを解放しました")

    def _open_stream(self, phase: SessionPhase) -> MediaStream:
        audio = self._open_microphone()
        tracks: List[AudioTrack | VideoTrack] = [audio]
        if phase is SessionPhase.SIMULATION:
            try:
                tracks.append(self._open_camera())
            except Exception:
                audio.stop()
                raise
        return MediaStream(tracks)

    def _candidate_input_devices(self, sd: Any) -> List[int | None]:
        """試行する入力デバイスのリストを作成"""
        try:
            devices = sd.query_devices()
        except sd.PortAudioError as e:
            raise MediaUnavailable(f"音声デバイスの取得に失敗しました: {e}") from e

        input_indexes = [i for i, dev in enumerate(devices) if dev["max_input_channels"] > 0]
        if not input_indexes:
            raise MediaUnavailable("利用可能なマイクが見つかりません")

        candidate_devices: List[int | None] = []
        # 1. 指定デバイス
        if self.input_device is not None:
            candidate_devices.append(self.input_device)
        # 2. デフォルトデバイス
        try:
            default_input = sd.default.device[0]
            if default_input is not None and default_input >= 0 and default_input not in candidate_devices:
                candidate_devices.append(default_input)
        except (TypeError, IndexError):
            pass
        # 3. その他の入力可能なデバイス
        for i in input_indexes:
            if i not in candidate_devices:
                candidate_devices.append(i)
        # 最後にNoneを追加（デフォルトの挙動を試す）
        candidate_devices.append(None)
        return candidate_devices

    def _open_microphone(self) -> AudioTrack:
        import sounddevice as sd

        last_error: Exception | None = None
        for device_index in self._candidate_input_devices(sd):
            track = AudioTrack(stream=None, device=device_index)
            try:
                stream = sd.InputStream(
                    samplerate=self.contexts.capture_sample_rate,
                    channels=AUDIO_CHANNELS,
                    dtype=np.float32,
                    blocksize=self.contexts.chunk_size,
                    callback=track.handle_block,
                    device=device_index,
                )
                stream.start()
            except sd.PortAudioError as e:
                logger.warning("デバイス %s でのエラー: %s", device_index, e)
                last_error = e
                continue
            track.stream = stream
            logger.info("マイクを開きました (Device Index: %s)", device_index)
            return track

        raise MediaAccessDenied(f"マイクを開けませんでした: {last_error}")

    def _open_camera(self) -> VideoTrack:
        import cv2

        capture = cv2.VideoCapture(self.camera_index)
        if not capture.isOpened():
            capture.release()
            raise MediaUnavailable(f"カメラを開けませんでした (index={self.camera_index})")
        logger.info("カメラを開きました (index=%d)", self.camera_index)
        return VideoTrack(capture, self.camera_index)
