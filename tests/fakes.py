"""
テスト用のフェイク
Realtime API・音声デバイス・カメラを使わずにセッションを動かす
"""
import asyncio
import base64
import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, Mock

import numpy as np

from feedbackai.models.schemas import SessionPhase
from feedbackai.services.media_service import (
    AudioContext,
    AudioContexts,
    AudioTrack,
    MediaService,
    MediaStream,
    PlaybackContext,
    VideoTrack,
)

_END = object()


class FakeConnection:
    """AsyncRealtimeConnectionの代わり（pushしたイベントを順番に返す）"""

    def __init__(self) -> None:
        self.session = SimpleNamespace(update=AsyncMock())
        self.response = SimpleNamespace(create=AsyncMock())
        self.input_audio_buffer = SimpleNamespace(append=AsyncMock())
        self.close = AsyncMock()
        self._events: asyncio.Queue = asyncio.Queue()

    def push(self, event_type: str, **fields: Any) -> None:
        self._events.put_nowait(SimpleNamespace(type=event_type, **fields))

    def finish(self) -> None:
        """ストリームの正常終了"""
        self._events.put_nowait(_END)

    def fail(self, error: BaseException) -> None:
        """ストリームの異常終了"""
        self._events.put_nowait(error)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Any:
        item = await self._events.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnectionManager:
    def __init__(self, connection: FakeConnection, error: Exception | None, gate: asyncio.Event | None) -> None:
        self.connection = connection
        self.error = error
        self.gate = gate

    async def enter(self) -> FakeConnection:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.connection


class FakeRealtimeClient:
    """AsyncOpenAIの代わり（beta.realtime.connectのみ）"""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.gate: asyncio.Event | None = None
        self.connections: List[FakeConnection] = []
        self.connect_calls: List[Dict[str, Any]] = []
        self.beta = SimpleNamespace(realtime=SimpleNamespace(connect=self._connect))

    def _connect(self, **kwargs: Any) -> FakeConnectionManager:
        self.connect_calls.append(kwargs)
        connection = FakeConnection()
        self.connections.append(connection)
        return FakeConnectionManager(connection, self.error, self.gate)

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


def completion(content: str | None) -> SimpleNamespace:
    """chat.completions.createの戻り値"""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeChatClient:
    """AsyncOpenAIの代わり（chat.completions.createのみ）"""

    def __init__(self, content: str | None = None, data: Dict[str, Any] | None = None, error: Exception | None = None) -> None:
        if data is not None:
            content = json.dumps(data, ensure_ascii=False)
        create = AsyncMock(return_value=completion(content))
        if error is not None:
            create.side_effect = error
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=create))

    @property
    def create(self) -> AsyncMock:
        return self.chat.completions.create


class FakePlaybackContext(PlaybackContext):
    """出力ストリームを開かない再生コンテキスト"""

    async def resume(self) -> None:
        await AudioContext.resume(self)
        self._loop = asyncio.get_running_loop()


class FakeAudioContexts(AudioContexts):
    @property
    def playback(self) -> PlaybackContext:
        if self._playback is None:
            self._playback = FakePlaybackContext(self.playback_sample_rate)
        return self._playback


class FakeMediaService(MediaService):
    """マイク・カメラの代わりにモックのトラックを返すメディアサービス"""

    def __init__(self, contexts: AudioContexts | None = None, error: Exception | None = None) -> None:
        super().__init__(contexts or FakeAudioContexts())
        self.error = error
        self.open_count: int = 0
        self.streams: List[MediaStream] = []
        self.frame: Any | None = None  # カメラが返すフレーム（Noneなら読み取り失敗）

    def _open_stream(self, phase: SessionPhase) -> MediaStream:
        self.open_count += 1
        if self.error is not None:
            raise self.error
        tracks: List[AudioTrack | VideoTrack] = [AudioTrack(Mock(), None)]
        if phase is SessionPhase.SIMULATION:
            camera = Mock()
            camera.read.side_effect = lambda: (self.frame is not None, self.frame)
            tracks.append(VideoTrack(camera, 0))
        stream = MediaStream(tracks)
        self.streams.append(stream)
        return stream


def pcm_base64(seconds: float, sample_rate: int = 24000) -> str:
    """指定した長さの無音PCM16（base64）"""
    frames = int(seconds * sample_rate)
    return base64.b64encode(np.zeros(frames, dtype="<i2").tobytes()).decode("utf-8")


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """条件が満たされるまでイベントループを回す"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("条件が時間内に満たされませんでした")
        await asyncio.sleep(0.01)
