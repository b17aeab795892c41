"""
セッションコントローラ
コーチング／シミュレーションの2フェーズの状態遷移と、メディア・接続・再生・分析の連携を管理する
"""

import asyncio
import base64
import logging
from typing import Callable, List, Tuple

import numpy as np
from numpy.typing import NDArray

from feedbackai.config import OUTBOUND_QUEUE_SIZE, PREVIEW_FRAME_INTERVAL
from feedbackai.errors import (
    AnalysisFailed,
    CoachSessionError,
    ConnectionFailed,
    DecodeError,
    InvalidPhaseSwitch,
    MediaAccessDenied,
    MediaUnavailable,
    TransportError,
)
from feedbackai.models.schemas import Language, Scenario, SessionFeedback, SessionPhase
from feedbackai.services.audio_codec import (
    PcmBlob,
    decode_base64_audio,
    encode_outbound,
    materialize_audio_buffer,
)
from feedbackai.services.feedback_service import FeedbackService
from feedbackai.services.media_service import MediaService, MediaStream, VideoTrack
from feedbackai.services.playback_service import PlaybackScheduler
from feedbackai.services.realtime_service import (
    ConnectionHandle,
    LiveEvent,
    LiveEventType,
    RealtimeService,
)

logger = logging.getLogger(__name__)


def format_elapsed(seconds: int) -> str:
    """経過秒数を「M:SS」形式に変換"""
    minutes, secs = divmod(max(int(seconds), 0), 60)
    return f"{minutes}:{secs:02d}"


class TranscriptBuffer:
    """話者の発話の書き起こし（追記のみ）"""

    def __init__(self) -> None:
        self._fragments: List[str] = []

    def append(self, text: str) -> None:
        self._fragments.append(text)

    def reset(self) -> None:
        self._fragments = []

    @property
    def fragments(self) -> Tuple[str, ...]:
        return tuple(self._fragments)

    def text(self) -> str:
        return "".join(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)


class SessionController:
    """
    1つの練習セッションを管理するコントローラ

    公開メソッドは例外を送出せず、エラーはlast_errorとon_errorで通知する
    """

    def __init__(
        self,
        media: MediaService,
        realtime: RealtimeService,
        feedback: FeedbackService,
        scenario: Scenario,
        language: Language = Language.ES,
        *,
        phase: SessionPhase = SessionPhase.COACHING,
        on_feedback_ready: Callable[[SessionFeedback], None] | None = None,
        on_abort: Callable[[], None] | None = None,
        on_error: Callable[[CoachSessionError], None] | None = None,
        on_state_changed: Callable[[], None] | None = None,
        on_tick: Callable[[int], None] | None = None,
        on_video_frame: Callable[[str], None] | None = None,
        tick_interval: float = 1.0,
        preview_interval: float = PREVIEW_FRAME_INTERVAL,
        outbound_queue_size: int = OUTBOUND_QUEUE_SIZE,
    ) -> None:
        """
        初期化処理

        Args:
            media: メディア管理サービス（音声コンテキストを保持する）
            realtime: Realtime APIサービス
            feedback: フィードバック分析サービス
            scenario: 練習シナリオ
            language: セッション言語
            phase: 開始時のフェーズ
            on_feedback_ready: フィードバック完成時のコールバック
            on_abort: 分析失敗時・途中終了時のコールバック
            on_error: エラー発生時のコールバック
            on_state_changed: 状態変化時のコールバック
            on_tick: シミュレーション中、1秒ごとに経過秒数を通知するコールバック
            on_video_frame: カメラプレビューのフレーム（JPEG、base64）を受け取るコールバック
            tick_interval: タイマーの間隔（秒）
            preview_interval: カメラプレビューの更新間隔（秒）
            outbound_queue_size: 送信待ち音声チャンクの上限
        """
        self.media = media
        self.contexts = media.contexts
        self.realtime = realtime
        self.feedback = feedback
        self.scenario = scenario
        self.language = language
        self.phase = phase

        self.on_feedback_ready = on_feedback_ready
        self.on_abort = on_abort
        self.on_error = on_error
        self.on_state_changed = on_state_changed
        self.on_tick = on_tick
        self.on_video_frame = on_video_frame
        self.tick_interval = tick_interval
        self.preview_interval = preview_interval
        self.outbound_queue_size = outbound_queue_size

        self.recording: bool = False
        self.is_ending: bool = False
        self.elapsed_seconds: int = 0
        self.transcript = TranscriptBuffer()
        self.last_error: CoachSessionError | None = None

        self._session_id: int = 0
        self._starting: bool = False
        self._feedback_produced: bool = False
        self._stream: MediaStream | None = None
        self._handle: ConnectionHandle | None = None
        self._scheduler: PlaybackScheduler | None = None
        self._events: "asyncio.Queue[LiveEvent] | None" = None
        self._outbound: "asyncio.Queue[PcmBlob] | None" = None
        self._pump_task: "asyncio.Task[None] | None" = None
        self._sender_task: "asyncio.Task[None] | None" = None
        self._timer_task: "asyncio.Task[None] | None" = None
        self._preview_task: "asyncio.Task[None] | None" = None

    @property
    def handle(self) -> ConnectionHandle | None:
        return self._handle

    @property
    def is_connected(self) -> bool:
        """接続中（OPENINGまたはOPEN）かどうか"""
        return self._handle is not None and self._handle.is_active

    @property
    def is_busy(self) -> bool:
        return self._starting or self.recording or self.is_connected

    # ------------------------------------------------------------------
    # UI向けインターフェース
    # ------------------------------------------------------------------

    async def start_session(
        self, scenario: Scenario, phase: SessionPhase, language: Language
    ) -> bool:
        """シナリオ・フェーズ・言語を指定してセッションを開始"""
        if self.is_ending:
            self._report(CoachSessionError("分析中は新しいセッションを開始できません"))
            return False
        await self.stop()
        self.scenario = scenario
        self.language = language
        self.phase = phase
        return await self.start()

    async def end_session(self) -> SessionFeedback | None:
        """セッションを終了（コーチングは停止のみ、シミュレーションは分析まで行う）"""
        if self.phase is SessionPhase.SIMULATION:
            return await self.finalize()
        await self.stop()
        return None

    def switch_phase(self, phase: SessionPhase) -> bool:
        return self.select_phase(phase)

    # ------------------------------------------------------------------
    # セッション制御
    # ------------------------------------------------------------------

    def select_phase(self, phase: SessionPhase) -> bool:
        """
        フェーズを選択（接続中・開始処理中は拒否）

        Returns:
            切り替えできた場合True
        """
        if self.is_busy:
            self._report(
                InvalidPhaseSwitch(f"セッション中はフェーズを変更できません ({self.phase.value} -> {phase.value})")
            )
            return False
        if phase is not self.phase:
            logger.info("フェーズを切り替えました: %s -> %s", self.phase.value, phase.value)
            self.phase = phase
            self._notify()
        return True

    async def start(self) -> bool:
        """
        セッションを開始（メディア取得→接続→録音開始）

        既存のセッションがあれば先に停止する

        Returns:
            録音を開始できた場合True
        """
        await self.stop()
        self._session_id += 1
        session_id = self._session_id
        phase = self.phase

        self._starting = True
        self.last_error = None
        self.transcript.reset()
        self.elapsed_seconds = 0
        self._feedback_produced = False
        logger.info(
            "セッションを開始します (phase=%s, language=%s, scenario=%s)",
            phase.value,
            self.language.value,
            self.scenario.id,
        )
        self._notify()

        try:
            try:
                stream = await self.media.acquire(phase)
            except (MediaAccessDenied, MediaUnavailable) as e:
                self._report(e)
                return False
            if session_id != self._session_id:
                # 取得中に停止された
                self._release_late_stream(stream)
                return False
            self._stream = stream

            try:
                await self.contexts.resume()
            except Exception as e:
                await self.stop()
                self._report(MediaUnavailable(f"音声コンテキストを再開できません: {e}"))
                return False

            events: "asyncio.Queue[LiveEvent]" = asyncio.Queue()
            self._events = events
            self._outbound = asyncio.Queue(maxsize=self.outbound_queue_size)
            self._pump_task = asyncio.create_task(self._pump(events), name="session-pump")

            try:
                handle = await self.realtime.open(phase, self.language, self.scenario, events.put_nowait)
            except Exception as e:
                await self.stop()
                self._report(ConnectionFailed(f"Realtime API接続エラー: {e}"))
                return False
            if session_id != self._session_id:
                await self.realtime.close(handle)
                return False
            self._handle = handle
            self._scheduler = PlaybackScheduler(self.contexts.playback)

            try:
                await handle.wait_open()
            except ConnectionFailed as e:
                if session_id != self._session_id:
                    return False
                await self.stop()
                self._report(e)
                return False
            if session_id != self._session_id:
                return False

            self._begin_streaming()
            return True
        finally:
            if session_id == self._session_id:
                self._starting = False

    async def stop(self) -> None:
        """
        セッションを停止（何度呼んでもよく、開始前に呼んでもよい）

        録音停止→接続終了→メディア解放→再生停止の順に後始末する
        """
        self._session_id += 1
        self._starting = False
        was_active = (
            self.recording or self._handle is not None or self._stream is not None or self._pump_task is not None
        )
        self.recording = False
        if was_active:
            logger.info("セッションを停止します")

        self.contexts.capture.disconnect()

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._preview_task, self._timer_task, self._sender_task, self._pump_task)
            if task is not None and task is not current
        ]
        self._preview_task = self._timer_task = self._sender_task = self._pump_task = None
        for task in tasks:
            task.cancel()

        handle, self._handle = self._handle, None
        if handle is not None:
            await self.realtime.close(handle)

        # media側が別のストリームを保持していても自分のストリームは必ず止める
        stream, self._stream = self._stream, None
        self.media.release()
        if stream is not None:
            stream.stop()

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.flush_all()

        self._events = None
        self._outbound = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if was_active:
            self._notify()

    async def finalize(self) -> SessionFeedback | None:
        """
        シミュレーションを終了してフィードバックを作成

        分析に失敗した場合はon_abortを呼ぶ。1セッションにつき1回だけ作成する

        Returns:
            作成したフィードバック、作成しなかった場合はNone
        """
        if self.is_ending or self._feedback_produced:
            logger.info("フィードバックは作成中または作成済みです")
            return None
        if self.phase is not SessionPhase.SIMULATION:
            # コーチングはリハーサルのため分析しない
            await self.stop()
            return None

        self.is_ending = True
        self._notify()
        try:
            await self.stop()
            try:
                feedback = await self.feedback.analyze(
                    self.transcript.fragments, self.scenario, self.language
                )
            except Exception as e:
                error = e if isinstance(e, AnalysisFailed) else AnalysisFailed(str(e))
                self._report(error)
                if self.on_abort:
                    self.on_abort()
                return None

            self._feedback_produced = True
            if self.on_feedback_ready:
                self.on_feedback_ready(feedback)
            return feedback
        finally:
            self.is_ending = False
            self._notify()

    async def abort(self) -> None:
        """セッションを途中で終了して呼び出し側に戻る"""
        await self.stop()
        if self.on_abort:
            self.on_abort()

    async def shutdown(self) -> None:
        """アプリケーション終了時の後始末（音声コンテキストも閉じる）"""
        await self.stop()
        self.contexts.close()

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _release_late_stream(self, stream: MediaStream) -> None:
        if self.media.stream is stream:
            self.media.release()
        else:
            stream.stop()

    def _begin_streaming(self) -> None:
        """マイク音声の送信を開始（接続確立時に1回だけ）"""
        handle = self._handle
        stream = self._stream
        if self.recording or handle is None or stream is None or self._outbound is None:
            return
        track = stream.audio_track
        if track is None:
            return

        self.recording = True
        self.contexts.capture.connect(track, self._on_capture_chunk)
        self._sender_task = asyncio.create_task(
            self._send_loop(handle, self._outbound), name="session-sender"
        )
        if handle.phase is SessionPhase.SIMULATION:
            self._timer_task = asyncio.create_task(self._run_timer(), name="session-timer")
        if stream.video_track is not None:
            self._preview_task = asyncio.create_task(
                self._run_preview(stream.video_track), name="session-preview"
            )
        logger.info("録音を開始しました (generation=%d)", handle.generation)
        self._notify()

    def _on_capture_chunk(self, samples: NDArray[np.float32]) -> None:
        """マイクのブロックをエンコードして送信キューに積む（満杯なら最も古いものを捨てる）"""
        queue = self._outbound
        if not self.recording or queue is None:
            return
        blob = encode_outbound(samples)
        if queue.full():
            queue.get_nowait()
            logger.debug("送信キューが満杯のため古い音声チャンクを破棄しました")
        queue.put_nowait(blob)

    async def _send_loop(self, handle: ConnectionHandle, queue: "asyncio.Queue[PcmBlob]") -> None:
        while True:
            blob = await queue.get()
            await self.realtime.send_audio(handle, blob)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            if not (self.recording and self.phase is SessionPhase.SIMULATION):
                continue
            self.elapsed_seconds += 1
            if self.on_tick:
                self.on_tick(self.elapsed_seconds)

    async def _run_preview(self, track: VideoTrack) -> None:
        """カメラのフレームを読み取りon_video_frameへ渡す（セッション停止時にキャンセルされる）"""
        while not track.ended:
            try:
                frame = await asyncio.to_thread(track.read_jpeg)
            except Exception as e:
                logger.warning("カメラプレビューを停止しました: %s", e)
                return
            if frame is not None and self.on_video_frame:
                self.on_video_frame(base64.b64encode(frame).decode("ascii"))
            await asyncio.sleep(self.preview_interval)

    async def _pump(self, events: "asyncio.Queue[LiveEvent]") -> None:
        """受信イベントを到着順に1つずつ処理"""
        while True:
            event = await events.get()
            handle = self._handle
            if handle is None or event.generation != handle.generation:
                logger.debug("古い接続のイベントを破棄しました: %s (generation=%d)", event.type.value, event.generation)
                continue

            if event.type is LiveEventType.OPEN:
                self._begin_streaming()
            elif event.type is LiveEventType.TRANSCRIPT:
                self.transcript.append(event.text)
                self._notify()
            elif event.type is LiveEventType.AUDIO:
                # シミュレーション中のAI音声は受信しても再生しない
                if handle.phase is SessionPhase.COACHING:
                    self._play(event.audio)
            elif event.type is LiveEventType.INTERRUPTED:
                if self._scheduler is not None:
                    self._scheduler.flush_all()
            elif event.type is LiveEventType.TURN_COMPLETE:
                logger.debug("AIの応答が完了しました")
            elif event.type in (LiveEventType.CLOSE, LiveEventType.ERROR):
                await self._on_transport_end(event)
                return

    def _play(self, payload: str) -> None:
        scheduler = self._scheduler
        if scheduler is None:
            return
        playback = self.contexts.playback
        try:
            buffer = materialize_audio_buffer(
                decode_base64_audio(payload), playback.sample_rate, playback.channels
            )
        except DecodeError as e:
            logger.warning("不正な音声断片を破棄しました: %s", e)
            return
        if buffer.frames == 0:
            return
        try:
            scheduler.enqueue(buffer)
        except (RuntimeError, ValueError) as e:
            logger.warning("音声断片を再生できませんでした: %s", e)

    async def _on_transport_end(self, event: LiveEvent) -> None:
        """ストリーム切断時の暗黙の停止（書き起こしは保持する）"""
        self.recording = False
        if event.type is LiveEventType.ERROR:
            error = event.error
            self._report(error if isinstance(error, CoachSessionError) else TransportError(str(error)))
        else:
            logger.info("接続が終了しました (generation=%d)", event.generation)
        await self.stop()

    def _report(self, error: CoachSessionError) -> None:
        self.last_error = error
        if isinstance(error, AnalysisFailed):
            logger.error("%s: %s", type(error).__name__, error)
        else:
            logger.warning("%s: %s", type(error).__name__, error)
        if self.on_error:
            self.on_error(error)

    def _notify(self) -> None:
        if self.on_state_changed:
            self.on_state_changed()
