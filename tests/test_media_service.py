"""
MediaServiceと音声コンテキストのテスト
sounddeviceとcv2はsys.modules経由でモックに差し替える
"""
import asyncio
import sys
from unittest.mock import Mock, patch

import numpy as np
import pytest

from feedbackai.errors import MediaAccessDenied, MediaUnavailable
from feedbackai.models.schemas import SessionPhase
from feedbackai.services.audio_codec import materialize_audio_buffer
from feedbackai.services.media_service import (
    CLOSED,
    RUNNING,
    SUSPENDED,
    AudioContexts,
    AudioTrack,
    CaptureContext,
    MediaService,
    PlaybackContext,
    VideoTrack,
)


class FakePortAudioError(Exception):
    pass


def make_sounddevice(devices=None, default_device=(1, 2)):
    sd = Mock()
    sd.PortAudioError = FakePortAudioError
    sd.query_devices.return_value = devices if devices is not None else [
        {"name": "Speaker", "max_input_channels": 0, "max_output_channels": 2},
        {"name": "Mic", "max_input_channels": 1, "max_output_channels": 0},
        {"name": "Headset", "max_input_channels": 1, "max_output_channels": 2},
    ]
    sd.default.device = list(default_device)
    return sd


def make_cv2(opened=True):
    cv2 = Mock()
    cv2.VideoCapture.return_value.isOpened.return_value = opened
    return cv2


def buffer_of(values, sample_rate=24000):
    data = (np.asarray(values, dtype=np.float32) * 32768).astype("<i2").tobytes()
    return materialize_audio_buffer(data, sample_rate, 1)


class TestMediaService:
    """MediaServiceのテストクラス"""

    @pytest.fixture
    def media_service(self):
        return MediaService(AudioContexts(), camera_index=0)

    @pytest.mark.asyncio
    async def test_acquire_coaching_opens_microphone_only(self, media_service):
        """コーチングではマイクのみ取得する"""
        sd, cv2 = make_sounddevice(), make_cv2()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            stream = await media_service.acquire(SessionPhase.COACHING)

        assert stream.audio_track is not None
        assert stream.video_track is None
        assert sd.InputStream.call_args.kwargs["device"] == 1
        assert sd.InputStream.call_args.kwargs["samplerate"] == 16000
        assert sd.InputStream.call_args.kwargs["blocksize"] == 4096
        sd.InputStream.return_value.start.assert_called_once()
        cv2.VideoCapture.assert_not_called()

    @pytest.mark.asyncio
    async def test_acquire_simulation_opens_camera(self, media_service):
        """シミュレーションではカメラも取得する"""
        sd, cv2 = make_sounddevice(), make_cv2()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            stream = await media_service.acquire(SessionPhase.SIMULATION)

        assert stream.video_track is not None
        assert len(stream.get_tracks()) == 2
        cv2.VideoCapture.assert_called_once_with(0)

    @pytest.mark.asyncio
    async def test_falls_back_to_next_device(self, media_service):
        """デフォルトデバイスが開けない場合は次の候補を試す"""
        sd = make_sounddevice()
        working = Mock()
        sd.InputStream.side_effect = [FakePortAudioError("busy"), working]
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": make_cv2()}):
            stream = await media_service.acquire(SessionPhase.COACHING)

        assert stream.audio_track.stream is working
        assert stream.audio_track.device == 2

    @pytest.mark.asyncio
    async def test_all_devices_fail_raises_access_denied(self, media_service):
        sd = make_sounddevice()
        sd.InputStream.side_effect = FakePortAudioError("denied")
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": make_cv2()}):
            with pytest.raises(MediaAccessDenied):
                await media_service.acquire(SessionPhase.COACHING)

        assert media_service.stream is None

    @pytest.mark.asyncio
    async def test_no_input_device_raises_unavailable(self, media_service):
        sd = make_sounddevice(devices=[{"name": "Speaker", "max_input_channels": 0, "max_output_channels": 2}])
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": make_cv2()}):
            with pytest.raises(MediaUnavailable):
                await media_service.acquire(SessionPhase.COACHING)

        sd.InputStream.assert_not_called()

    @pytest.mark.asyncio
    async def test_camera_unavailable_releases_microphone(self, media_service):
        """カメラが開けない場合はマイクを解放してからMediaUnavailable"""
        sd, cv2 = make_sounddevice(), make_cv2(opened=False)
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            with pytest.raises(MediaUnavailable):
                await media_service.acquire(SessionPhase.SIMULATION)

        sd.InputStream.return_value.stop.assert_called_once()
        sd.InputStream.return_value.close.assert_called_once()
        cv2.VideoCapture.return_value.release.assert_called_once()
        assert media_service.stream is None

    @pytest.mark.asyncio
    async def test_acquire_again_releases_previous_stream(self, media_service):
        sd, cv2 = make_sounddevice(), make_cv2()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            first = await media_service.acquire(SessionPhase.SIMULATION)
            second = await media_service.acquire(SessionPhase.COACHING)

        assert all(track.ended for track in first.get_tracks())
        assert media_service.stream is second
        assert not second.audio_track.ended

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, media_service):
        sd, cv2 = make_sounddevice(), make_cv2()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            stream = await media_service.acquire(SessionPhase.SIMULATION)

        media_service.release()
        media_service.release()

        assert media_service.stream is None
        assert all(track.ended for track in stream.get_tracks())
        sd.InputStream.return_value.stop.assert_called_once()
        cv2.VideoCapture.return_value.release.assert_called_once()

    def test_release_without_stream(self, media_service):
        """何も保持していなくても例外を投げない"""
        media_service.release()

        assert media_service.stream is None

    @pytest.mark.asyncio
    async def test_concurrent_acquire_keeps_single_stream(self, media_service):
        """同時に取得しても保持するのは後のストリームだけで、先のトラックはすべて止まる"""
        sd, cv2 = make_sounddevice(), make_cv2()
        sd.InputStream.side_effect = lambda *args, **kwargs: Mock()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": cv2}):
            first, second = await asyncio.gather(
                media_service.acquire(SessionPhase.SIMULATION),
                media_service.acquire(SessionPhase.COACHING),
            )

        assert media_service.stream is second
        assert all(track.ended for track in first.get_tracks())
        first.audio_track.stream.close.assert_called_once()
        cv2.VideoCapture.return_value.release.assert_called_once()
        assert not second.audio_track.ended
        second.audio_track.stream.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_during_acquire_keeps_new_stream_open(self, media_service):
        """取得中のrelease()は取得し終えたストリームに影響しない"""
        sd = make_sounddevice()
        with patch.dict(sys.modules, {"sounddevice": sd, "cv2": make_cv2()}):
            acquire = asyncio.create_task(media_service.acquire(SessionPhase.COACHING))
            await asyncio.sleep(0)
            media_service.release()
            stream = await acquire

        assert media_service.stream is stream
        assert not stream.audio_track.ended


class TestVideoTrack:
    """VideoTrackのテストクラス"""

    def test_read_jpeg_encodes_frame(self):
        frame = np.zeros((2, 2, 3), dtype=np.uint8)
        capture = Mock()
        capture.read.return_value = (True, frame)
        cv2 = Mock()
        cv2.imencode.return_value = (True, np.frombuffer(b"jpeg", dtype=np.uint8))
        track = VideoTrack(capture, 0)

        with patch.dict(sys.modules, {"cv2": cv2}):
            assert track.read_jpeg(quality=50) == b"jpeg"

        args = cv2.imencode.call_args.args
        assert args[0] == ".jpg"
        assert args[1] is frame
        assert args[2] == [cv2.IMWRITE_JPEG_QUALITY, 50]

    def test_read_jpeg_returns_none_when_read_fails(self):
        capture = Mock()
        capture.read.return_value = (False, None)
        cv2 = Mock()

        with patch.dict(sys.modules, {"cv2": cv2}):
            assert VideoTrack(capture, 0).read_jpeg() is None

        cv2.imencode.assert_not_called()

    def test_read_jpeg_returns_none_when_encoding_fails(self):
        capture = Mock()
        capture.read.return_value = (True, np.zeros((2, 2, 3), dtype=np.uint8))
        cv2 = Mock()
        cv2.imencode.return_value = (False, None)

        with patch.dict(sys.modules, {"cv2": cv2}):
            assert VideoTrack(capture, 0).read_jpeg() is None

    def test_stopped_track_is_not_read(self):
        capture = Mock()
        track = VideoTrack(capture, 0)

        track.stop()
        track.stop()

        assert track.read_jpeg() is None
        capture.read.assert_not_called()
        capture.release.assert_called_once()

    def test_release_failure_still_ends_track(self):
        capture = Mock()
        capture.release.side_effect = RuntimeError("device gone")
        track = VideoTrack(capture, 0)

        track.stop()

        assert track.ended


class TestAudioContexts:
    """AudioContextsのテストクラス"""

    def test_contexts_are_created_lazily_once(self):
        contexts = AudioContexts()

        assert contexts.capture is contexts.capture
        assert contexts.playback is contexts.playback
        assert contexts.capture.sample_rate == 16000
        assert contexts.playback.sample_rate == 24000
        assert contexts.capture.state == SUSPENDED

    @pytest.mark.asyncio
    async def test_resume_opens_output_stream_once(self):
        sd = make_sounddevice()
        contexts = AudioContexts()
        with patch.dict(sys.modules, {"sounddevice": sd}):
            await contexts.resume()
            await contexts.resume()

        assert contexts.capture.state == RUNNING
        assert contexts.playback.state == RUNNING
        sd.OutputStream.assert_called_once()
        assert sd.OutputStream.call_args.kwargs["samplerate"] == 24000

        contexts.close()

        assert contexts.playback.state == CLOSED
        sd.OutputStream.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_closed_context_cannot_resume(self):
        context = CaptureContext()
        context.close()

        with pytest.raises(RuntimeError):
            await context.resume()


class TestCaptureContext:
    """CaptureContextのテストクラス"""

    @pytest.mark.asyncio
    async def test_blocks_are_delivered_on_loop_while_running(self):
        context = CaptureContext()
        track = AudioTrack(Mock(), None)
        received = []
        context.connect(track, received.append)

        # 停止中のブロックは届かない
        track.handle_block(np.ones((4, 1), dtype=np.float32), 4, None, None)
        await asyncio.sleep(0)
        assert received == []

        await context.resume()
        block = np.full((4, 1), 0.25, dtype=np.float32)
        track.handle_block(block, 4, None, None)
        await asyncio.sleep(0)

        assert len(received) == 1
        assert received[0].tolist() == [0.25, 0.25, 0.25, 0.25]

        context.disconnect()
        track.handle_block(block, 4, None, None)
        await asyncio.sleep(0)
        assert len(received) == 1


class TestPlaybackContext:
    """PlaybackContextのテストクラス"""

    @pytest.fixture
    def context(self):
        return PlaybackContext(sample_rate=10)

    def test_render_mixes_scheduled_sources(self, context):
        first = context.create_source(buffer_of([0.5, 0.5, 0.5, 0.5], 10))
        second = context.create_source(buffer_of([0.25, 0.25], 10))
        first.start(0.0)
        second.start(0.3)

        out = np.zeros((6, 1), dtype=np.float32)
        context.render(out, 6, None, None)

        assert out[:, 0].tolist() == pytest.approx([0.5, 0.5, 0.5, 0.75, 0.25, 0.0])
        assert context.current_time == pytest.approx(0.6)
        assert first.ended and second.ended

    def test_source_scheduled_in_past_starts_now(self, context):
        context.render(np.zeros((5, 1), dtype=np.float32), 5, None, None)
        source = context.create_source(buffer_of([0.5], 10))

        source.start(0.0)

        assert source.start_frame == 5

    @pytest.mark.asyncio
    async def test_on_ended_fires_on_loop(self, context):
        await attach_loop(context)
        source = context.create_source(buffer_of([0.5, 0.5], 10))
        on_ended = Mock()
        source.on_ended = on_ended
        source.start(0.0)

        context.render(np.zeros((4, 1), dtype=np.float32), 4, None, None)
        await asyncio.sleep(0)

        on_ended.assert_called_once()

    def test_stop_before_start_raises(self, context):
        source = context.create_source(buffer_of([0.5], 10))

        with pytest.raises(RuntimeError):
            source.stop()

    def test_stop_removes_source_and_is_noop_after_end(self, context):
        source = context.create_source(buffer_of([0.5, 0.5], 10))
        source.start(0.0)
        source.stop()

        out = np.zeros((2, 1), dtype=np.float32)
        context.render(out, 2, None, None)

        assert out[:, 0].tolist() == [0.0, 0.0]
        source.stop()

    def test_render_skips_unscheduled_source(self, context):
        """開始位置のないソースが混じっていても描画を続ける"""
        unscheduled = context.create_source(buffer_of([0.5], 10))
        context._sources.append(unscheduled)
        scheduled = context.create_source(buffer_of([0.25, 0.25], 10))
        scheduled.start(0.0)

        out = np.zeros((3, 1), dtype=np.float32)
        context.render(out, 3, None, None)

        assert out[:, 0].tolist() == pytest.approx([0.25, 0.25, 0.0])
        assert scheduled.ended
        assert not unscheduled.ended

    def test_channel_mismatch_raises(self, context):
        data = np.zeros(4, dtype="<i2").tobytes()

        with pytest.raises(ValueError):
            context.create_source(materialize_audio_buffer(data, 10, 2))


async def attach_loop(context: PlaybackContext) -> None:
    """出力ストリームを開かずにイベントループだけ関連付ける"""
    context.state = RUNNING
    context._loop = asyncio.get_running_loop()
