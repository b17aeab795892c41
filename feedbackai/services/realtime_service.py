"""
OpenAI Realtime APIサービス
フェーズ別の指示でライブ音声セッションを開き、受信イベントを順番通りにコントローラへ渡す
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

from openai import AsyncOpenAI

from feedbackai.config import (
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_VOICE,
    DEFAULT_TRANSCRIPTION_MODEL,
    get_openai_api_key,
)
from feedbackai.errors import ConnectionFailed, TransportError
from feedbackai.models.schemas import Language, Scenario, SessionPhase
from feedbackai.services.audio_codec import PcmBlob

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """接続の状態"""

    UNOPENED = "UNOPENED"
    OPENING = "OPENING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


class LiveEventType(str, Enum):
    """コントローラに渡すイベントの種類"""

    OPEN = "OPEN"
    TRANSCRIPT = "TRANSCRIPT"  # 話者（人間）の発話の書き起こし
    AUDIO = "AUDIO"  # AI音声（base64）
    INTERRUPTED = "INTERRUPTED"  # 話者がAIの発話に割り込んだ
    TURN_COMPLETE = "TURN_COMPLETE"
    CLOSE = "CLOSE"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LiveEvent:
    """接続の世代番号付きの受信イベント"""

    type: LiveEventType
    generation: int
    text: str = ""
    audio: str = ""
    error: BaseException | None = None


EventSink = Callable[[LiveEvent], None]


SYSTEM_INSTRUCTIONS: Dict[Language, Dict[SessionPhase, str]] = {
    Language.ES: {
        SessionPhase.COACHING: (
            "ERES UN MENTOR COACH DE LIDERAZGO EJECUTIVO. DEBES RESPONDER SIEMPRE EN ESPAÑOL.\n"
            "Tu misión es preparar al Líder para una conversación de alto impacto.\n"
            "1. Pregunta por el escenario: ¿Es un 1-on-1, Reconocimiento o Feedback?\n"
            "2. Si es 1-on-1: Insiste en la escucha activa y preguntas abiertas para generar seguridad psicológica.\n"
            "3. Si es Reconocimiento: Guíalo a conectar el logro con un VALOR de la empresa y el impacto real.\n"
            "4. Si es Feedback: Usa el marco SBI (Situación, Comportamiento, Impacto) y compromiso SMART.\n"
            "Sé breve, directo y profesional."
        ),
        SessionPhase.SIMULATION: (
            "ERES UN OBSERVADOR SILENCIOSO DE LIDERAZGO. RESPONDE SIEMPRE EN ESPAÑOL.\n"
            "Tu rol es ESTRICTAMENTE ESCUCHAR Y ANALIZAR.\n"
            "NO INTERVENGAS. NO HABLES. NO RESPONDAS AL LÍDER.\n"
            "Incluso si el líder te hace una pregunta, mantente en silencio.\n"
            "Solo procesa la entrada para la transcripción y el análisis posterior."
        ),
    },
    Language.EN: {
        SessionPhase.COACHING: (
            "YOU ARE AN EXECUTIVE LEADERSHIP MENTOR COACH. ALWAYS RESPOND IN ENGLISH.\n"
            "Your mission is to prepare the Leader for high-impact conversations.\n"
            "1. Ask about the scenario: Is it a 1-on-1, Recognition, or Feedback session?\n"
            "2. If 1-on-1: Stress active listening and open-ended questions to build psychological safety.\n"
            "3. If Recognition: Guide them to connect the achievement to a company VALUE and real business impact.\n"
            "4. If Feedback: Use the SBI framework (Situation, Behavior, Impact) and SMART commitments.\n"
            "Be brief, direct, and professional."
        ),
        SessionPhase.SIMULATION: (
            "YOU ARE A SILENT LEADERSHIP OBSERVER. ALWAYS RESPOND IN ENGLISH.\n"
            "Your role is STRICTLY TO LISTEN AND ANALYZE.\n"
            "DO NOT INTERVENE. DO NOT SPEAK. DO NOT RESPOND TO THE LEADER.\n"
            "Even if the leader asks you a question, remain silent.\n"
            "Only process the input for transcription and subsequent analysis."
        ),
    },
}

SCENARIO_LABELS: Dict[Language, tuple[str, str]] = {
    Language.ES: ("Escenario Seleccionado", "Detalles del Escenario"),
    Language.EN: ("Selected Scenario", "Scenario Details"),
}

PROACTIVE_DIRECTIVES: Dict[Language, Dict[SessionPhase, str]] = {
    Language.ES: {
        SessionPhase.COACHING: (
            "IMPORTANTE: Saluda al usuario inmediatamente de forma profesional. "
            "No esperes a que él hable primero."
        ),
        SessionPhase.SIMULATION: "IMPORTANTE: MANTENTE EN SILENCIO ABSOLUTO. Solo escucha.",
    },
    Language.EN: {
        SessionPhase.COACHING: (
            "IMPORTANT: Greet the user immediately in a professional manner. "
            "Do not wait for them to speak first."
        ),
        SessionPhase.SIMULATION: "IMPORTANT: STAY COMPLETELY SILENT. Only listen.",
    },
}


def build_system_instruction(phase: SessionPhase, language: Language, scenario: Scenario) -> str:
    """
    フェーズ・言語・シナリオからシステム指示を組み立てる

    Args:
        phase: セッションのフェーズ
        language: セッション言語
        scenario: 練習シナリオ

    Returns:
        システム指示のテキスト
    """
    title_label, details_label = SCENARIO_LABELS[language]
    return (
        SYSTEM_INSTRUCTIONS[language][phase]
        + f"\n\n{title_label}: {scenario.localized_title(language)}."
        + f"\n{details_label}: {scenario.localized_description(language)}."
        + f"\n{PROACTIVE_DIRECTIVES[language][phase]}"
    )


def build_session_config(
    phase: SessionPhase,
    instructions: str,
    voice: str = DEFAULT_REALTIME_VOICE,
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL,
) -> Dict[str, Any]:
    """session.updateで送信するセッション設定を作成"""
    coaching = phase is SessionPhase.COACHING
    return {
        "modalities": ["text", "audio"],
        "instructions": instructions,
        "voice": voice,
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": {"model": transcription_model},
        "turn_detection": {
            "type": "server_vad",  # サーバー側のVADを使用
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 1000,  # 1秒無音が続いたら発話終了と判断
            # シミュレーションではサーバー側でも応答を生成させない
            "create_response": coaching,
            "interrupt_response": coaching,
        },
        "temperature": 0.7,
    }


def _retrieve_exception(future: "asyncio.Future[bool]") -> None:
    # 誰もwait_open()しなかった場合の未取得例外の警告を抑える
    if not future.cancelled():
        future.exception()


class ConnectionHandle:
    """1つのライブ接続を表すハンドル"""

    def __init__(self, generation: int, phase: SessionPhase, system_instruction: str) -> None:
        self.generation = generation
        self.phase = phase
        self.system_instruction = system_instruction
        self.state: ConnectionState = ConnectionState.UNOPENED
        self.close_requested: bool = False
        self.transcript_count: int = 0
        self._connection: Any | None = None
        self._task: "asyncio.Task[None] | None" = None
        self._ready: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
        self._ready.add_done_callback(_retrieve_exception)

    @property
    def is_active(self) -> bool:
        return self.state in (ConnectionState.OPENING, ConnectionState.OPEN)

    async def wait_open(self) -> None:
        """
        接続が確立するまで待機

        Raises:
            ConnectionFailed: 接続が確立しなかった場合
        """
        await asyncio.shield(self._ready)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is not state:
            logger.info("接続状態: %s -> %s (generation=%d)", self.state.value, state.value, self.generation)
            self.state = state

    def _resolve(self) -> None:
        if not self._ready.done():
            self._ready.set_result(True)

    def _fail(self, error: BaseException) -> None:
        if not self._ready.done():
            self._ready.set_exception(error)


class RealtimeService:
    """OpenAI Realtime APIを使用するサービスクラス"""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        voice: str | None = None,
        transcription_model: str | None = None,
    ) -> None:
        """
        初期化処理
        クライアントが渡されない場合は環境変数からAPIキーを取得して作成する

        Raises:
            ValueError: APIキーが設定されていない場合
        """
        if client is None:
            client = AsyncOpenAI(api_key=get_openai_api_key())
        self.client = client
        self.model: str = model or os.getenv("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL)
        self.voice: str = voice or os.getenv("OPENAI_REALTIME_VOICE", DEFAULT_REALTIME_VOICE)
        self.transcription_model: str = transcription_model or os.getenv(
            "OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL
        )
        self.generation: int = 0
        self.active: ConnectionHandle | None = None

    async def open(
        self,
        phase: SessionPhase,
        language: Language,
        scenario: Scenario,
        emit: EventSink,
    ) -> ConnectionHandle:
        """
        ライブセッションを開始

        既存の接続があれば先に閉じる。ハンドルはOPENING状態のまま即座に返り、
        接続の確立はwait_open()で待つ

        Args:
            phase: セッションのフェーズ
            language: セッション言語
            scenario: 練習シナリオ
            emit: 受信イベントを受け取るコールバック（イベントループ上で到着順に呼ばれる）

        Returns:
            接続ハンドル
        """
        if self.active is not None:
            await self.close(self.active)

        self.generation += 1
        handle = ConnectionHandle(
            self.generation, phase, build_system_instruction(phase, language, scenario)
        )
        handle._set_state(ConnectionState.OPENING)
        self.active = handle
        handle._task = asyncio.create_task(
            self._run(handle, language, emit), name=f"realtime-{handle.generation}"
        )
        return handle

    async def _run(self, handle: ConnectionHandle, language: Language, emit: EventSink) -> None:
        """接続を確立し、イベントを受信し続ける"""
        connection: Any | None = None
        try:
            try:
                manager = self.client.beta.realtime.connect(model=self.model)
                connection = await manager.enter()
            except Exception as e:
                logger.error("Realtime API接続エラー: %s", e)
                handle._set_state(ConnectionState.ERROR)
                handle._fail(ConnectionFailed(f"Realtime API接続エラー: {e}"))
                return

            if handle.close_requested:
                # 接続中にclose()が要求された場合は即座に閉じる
                logger.info("接続完了前に終了が要求されたため接続を閉じます (generation=%d)", handle.generation)
                handle._fail(ConnectionFailed("接続完了前に終了が要求されました"))
                return

            handle._connection = connection
            try:
                await connection.session.update(
                    session=build_session_config(
                        handle.phase, handle.system_instruction, self.voice, self.transcription_model
                    )
                )
                if handle.phase is SessionPhase.COACHING:
                    # メンターから先に挨拶させる
                    await connection.response.create()
            except Exception as e:
                logger.error("セッション設定エラー: %s", e)
                handle._set_state(ConnectionState.ERROR)
                handle._fail(ConnectionFailed(f"セッション設定エラー: {e}"))
                return

            handle._set_state(ConnectionState.OPEN)
            handle._resolve()
            emit(LiveEvent(LiveEventType.OPEN, handle.generation))

            try:
                async for event in connection:
                    self._handle_event(handle, event, emit)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if handle.close_requested:
                    return
                logger.warning("Realtime APIイベントループエラー: %s", e)
                handle._set_state(ConnectionState.ERROR)
                emit(
                    LiveEvent(
                        LiveEventType.ERROR,
                        handle.generation,
                        error=TransportError(f"Realtime APIイベントループエラー: {e}"),
                    )
                )
                return

            if not handle.close_requested:
                logger.info("Realtime APIのストリームが終了しました (generation=%d)", handle.generation)
                handle._set_state(ConnectionState.CLOSED)
                emit(LiveEvent(LiveEventType.CLOSE, handle.generation))
        except asyncio.CancelledError:
            handle._fail(ConnectionFailed("接続がキャンセルされました"))
            raise
        finally:
            handle._connection = None
            if connection is not None:
                await self._close_connection(connection)

    def _handle_event(self, handle: ConnectionHandle, event: Any, emit: EventSink) -> None:
        """イベントを処理"""
        event_type = getattr(event, "type", None)
        logger.debug("Realtime APIイベント: %s", event_type)

        if event_type == "conversation.item.input_audio_transcription.completed":
            # 話者の音声転写完了（AI自身の発話は含まない）
            transcript = (getattr(event, "transcript", None) or "").strip()
            if not transcript:
                return
            if handle.transcript_count > 0:
                transcript = " " + transcript
            handle.transcript_count += 1
            emit(LiveEvent(LiveEventType.TRANSCRIPT, handle.generation, text=transcript))

        elif event_type == "response.audio.delta":
            delta = getattr(event, "delta", None)
            if delta:
                emit(LiveEvent(LiveEventType.AUDIO, handle.generation, audio=delta))

        elif event_type == "input_audio_buffer.speech_started":
            # 話者の発話開始（AIの発話中なら割り込み）
            emit(LiveEvent(LiveEventType.INTERRUPTED, handle.generation))

        elif event_type == "response.done":
            emit(LiveEvent(LiveEventType.TURN_COMPLETE, handle.generation))

        elif event_type == "error":
            error_obj = getattr(event, "error", None)
            message = getattr(error_obj, "message", None) or str(error_obj or "Unknown error")
            logger.warning("Realtime APIエラー: %s", message)

    async def send_audio(self, handle: ConnectionHandle, blob: PcmBlob) -> bool:
        """
        音声データを送信（接続確立前なら確立を待ってから送る）

        Args:
            handle: 接続ハンドル
            blob: PCMペイロード

        Returns:
            送信成功時True、失敗時False
        """
        if handle.close_requested or handle.state in (
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
            ConnectionState.ERROR,
        ):
            logger.debug("接続が閉じているため音声を送信しません (generation=%d)", handle.generation)
            return False

        try:
            await handle.wait_open()
        except ConnectionFailed as e:
            logger.warning("音声データ送信エラー: %s", e)
            return False

        connection = handle._connection
        if handle.state is not ConnectionState.OPEN or connection is None:
            return False

        try:
            audio_base64 = base64.b64encode(blob.data).decode("utf-8")
            await connection.input_audio_buffer.append(audio=audio_base64)
            return True
        except Exception as e:
            logger.warning("音声データ送信エラー: %s", e)
            return False

    async def close(self, handle: ConnectionHandle) -> None:
        """
        接続を終了（未接続・接続失敗・終了済みのハンドルでもよい）

        Args:
            handle: 接続ハンドル
        """
        if self.active is handle:
            self.active = None
        if handle.state is ConnectionState.CLOSED and handle._task is None:
            return

        handle.close_requested = True
        if handle.is_active:
            handle._set_state(ConnectionState.CLOSING)
        handle._fail(ConnectionFailed("接続は終了しました"))

        task = handle._task
        handle._task = None
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            results = await asyncio.gather(task, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.debug("接続タスク終了時のエラー: %s", result)
        handle._set_state(ConnectionState.CLOSED)

    async def _close_connection(self, connection: Any) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Realtime API切断エラー: %s", e)
