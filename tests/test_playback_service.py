"""
PlaybackSchedulerのテスト
"""
from unittest.mock import Mock

import numpy as np
import pytest

from feedbackai.services.audio_codec import materialize_audio_buffer
from feedbackai.services.media_service import PlaybackContext
from feedbackai.services.playback_service import PlaybackScheduler


def silence(seconds: float, sample_rate: int = 24000):
    data = np.zeros(int(seconds * sample_rate), dtype="<i2").tobytes()
    return materialize_audio_buffer(data, sample_rate, 1)


class TestPlaybackScheduler:
    """PlaybackSchedulerのテストクラス"""

    @pytest.fixture
    def context(self):
        return PlaybackContext()

    @pytest.fixture
    def scheduler(self, context):
        return PlaybackScheduler(context)

    def test_fragments_are_scheduled_back_to_back(self, scheduler):
        """連続した断片は隙間なく・重ならずに並ぶ"""
        durations = [0.5, 0.25, 1.0]

        sources = [scheduler.enqueue(silence(d)) for d in durations]

        starts = [source.start_frame / 24000 for source in sources]
        assert starts == pytest.approx([0.0, 0.5, 0.75])
        for current, following in zip(sources, sources[1:]):
            assert following.start_frame / 24000 >= current.start_frame / 24000 + current.duration - 1e-9
        assert scheduler.cursor == pytest.approx(1.75)
        assert len(scheduler.active) == 3

    def test_enqueue_after_idle_starts_at_current_time(self, context, scheduler):
        """出力が進んでいれば現在時刻から再生する"""
        scheduler.enqueue(silence(0.25))
        context.render(np.zeros((24000, 1), dtype=np.float32), 24000, None, None)

        source = scheduler.enqueue(silence(0.5))

        assert source.start_frame == 24000
        assert scheduler.cursor == pytest.approx(1.5)

    def test_flush_all_stops_everything_and_resets_cursor(self, scheduler):
        """割り込み時はすべて停止してcursorを先頭に戻す"""
        sources = [scheduler.enqueue(silence(0.5)) for _ in range(3)]

        scheduler.flush_all()

        assert all(source.ended for source in sources)
        assert scheduler.active == set()
        assert scheduler.cursor == 0.0

        following = scheduler.enqueue(silence(0.5))
        assert following.start_frame == 0

    def test_flush_all_with_empty_set(self, scheduler):
        scheduler.flush_all()

        assert scheduler.active == set()
        assert scheduler.cursor == 0.0

    def test_flush_all_ignores_stop_failure(self, scheduler):
        """既に終了したソースの停止エラーは無視する"""
        broken = Mock()
        broken.stop.side_effect = RuntimeError("already finished")
        scheduler.active.add(broken)
        scheduler.enqueue(silence(0.5))

        scheduler.flush_all()

        broken.stop.assert_called_once()
        assert scheduler.active == set()

    def test_finished_fragment_leaves_active_set(self, context, scheduler):
        source = scheduler.enqueue(silence(0.5))

        source.on_ended()

        assert source not in scheduler.active
        assert scheduler.cursor == pytest.approx(0.5)

    def test_render_finishes_fragment(self, context, scheduler):
        """再生が終わった断片はon_endedで管理対象から外れる"""
        scheduler.enqueue(silence(0.01))

        context.render(np.zeros((480, 1), dtype=np.float32), 480, None, None)

        assert scheduler.active == set()
