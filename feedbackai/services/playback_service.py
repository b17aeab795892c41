"""
再生スケジューラ
受信したAI音声の断片を隙間なく・重ならないように順番に再生する
"""

import logging
from typing import Set

from feedbackai.services.audio_codec import AudioBuffer
from feedbackai.services.media_service import BufferSource, PlaybackContext

logger = logging.getLogger(__name__)

TIMELINE_BASE: float = 0.0


class PlaybackScheduler:
    """
    再生スケジューラ（接続ごとに生成する）

    cursorは次の断片の開始時刻で、flush_all()以外では減少しない
    """

    def __init__(self, context: PlaybackContext) -> None:
        self.context = context
        self.cursor: float = TIMELINE_BASE
        self.active: Set[BufferSource] = set()

    def enqueue(self, buffer: AudioBuffer) -> BufferSource:
        """
        音声断片を再生キューに追加

        Args:
            buffer: 再生する音声バッファ

        Returns:
            スケジュールされた音声ソース
        """
        start_at = max(self.cursor, self.context.current_time)
        source = self.context.create_source(buffer)
        source.on_ended = lambda: self.on_fragment_ended(source)
        source.start(start_at)
        self.cursor = start_at + source.duration
        self.active.add(source)
        logger.debug("音声断片をスケジュール: start=%.3f duration=%.3f", start_at, source.duration)
        return source

    def on_fragment_ended(self, source: BufferSource) -> None:
        """再生が終わった断片を管理対象から外す"""
        self.active.discard(source)

    def flush_all(self) -> None:
        """再生中・再生待ちの断片をすべて停止し、cursorを先頭に戻す"""
        if self.active:
            logger.info("再生中の音声を停止します (%d件)", len(self.active))
        for source in list(self.active):
            try:
                source.stop()
            except Exception as e:
                logger.debug("音声ソース停止エラー: %s", e)
        self.active.clear()
        self.cursor = TIMELINE_BASE
