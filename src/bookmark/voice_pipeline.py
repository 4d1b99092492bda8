"""
Voice turn state machine.

IDLE -> CAPTURING -> TRANSCRIBING -> PROCESSING -> SYNTHESIZING -> SPEAKING -> IDLE

Captured audio is cut into fixed-length segments. A segment that transcribes
to nothing returns the pipeline to CAPTURING while audio keeps buffering; the
first non-empty transcript ends listening and drives one conversation turn.
``stop_listening`` and barge-in bump an epoch so results from work already
handed to a model are dropped when they arrive.
"""
from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import numpy as np

from .config import (
    SYNTHESIS_MODEL_NAME,
    TRANSCRIPTION_MODEL_NAME,
    VOICE_LANGUAGE,
    VOICE_SAMPLE_RATE,
    VOICE_SEGMENT_SECONDS,
)
from .errors import RecordingPermissionDenied
from .observability import get_logger

if TYPE_CHECKING:
    from .engine import RetrievalAugmentedEngine
    from .model_lifecycle import ModelLifecycleManager
    from .records import ConversationSession

logger = get_logger(__name__)


class VoiceState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"


class AudioSource(Protocol):
    def start(self, on_audio: Callable[[np.ndarray], None]):
        """Begins delivering mono float32 blocks; raises RecordingPermissionDenied on refusal."""
        ...

    def stop(self):
        ...


class AudioSink(Protocol):
    def play(self, samples: np.ndarray, sample_rate: int):
        """Blocks until playback completes or ``stop`` is called."""
        ...

    def stop(self):
        ...


Transcribe = Callable[[np.ndarray], Awaitable[str]]
Respond = Callable[[str], Awaitable[str]]
Synthesize = Callable[[str], Awaitable[tuple[np.ndarray, int]]]


class VoicePipeline:
    def __init__(
        self,
        source: AudioSource,
        sink: AudioSink,
        *,
        transcribe: Transcribe,
        respond: Respond,
        synthesize: Synthesize,
        sample_rate: int = VOICE_SAMPLE_RATE,
        segment_seconds: float = VOICE_SEGMENT_SECONDS,
        on_state_change: Callable[[VoiceState, VoiceState], None] | None = None,
        on_transcript: Callable[[str], None] | None = None,
        on_response: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ):
        self._source = source
        self._sink = sink
        self._transcribe = transcribe
        self._respond = respond
        self._synthesize = synthesize
        self.sample_rate = int(sample_rate)
        self.segment_samples = max(1, int(round(float(segment_seconds) * self.sample_rate)))
        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_response = on_response
        self._on_error = on_error

        self._state = VoiceState.IDLE
        self._epoch = 0
        self._capturing = False
        self._buffer: list[np.ndarray] = []
        self._buffered = 0
        self._segments: deque[np.ndarray] = deque()
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._changed: asyncio.Event | None = None

    @classmethod
    def connect(
        cls,
        source: AudioSource,
        sink: AudioSink,
        models: "ModelLifecycleManager",
        engine: "RetrievalAugmentedEngine",
        session: "ConversationSession",
        *,
        transcription_model: str = TRANSCRIPTION_MODEL_NAME,
        synthesis_model: str = SYNTHESIS_MODEL_NAME,
        **kwargs: Any,
    ) -> "VoicePipeline":
        """Wires the pipeline to the lifecycle-managed speech models and the engine's answer."""
        sample_rate = int(kwargs.pop("sample_rate", VOICE_SAMPLE_RATE))

        async def transcribe(samples: np.ndarray) -> str:
            transcriber = models.get(transcription_model)
            return await asyncio.to_thread(
                transcriber.transcribe, samples, sample_rate, {"language": VOICE_LANGUAGE}
            )

        async def respond(text: str) -> str:
            message = await engine.answer(text, session)
            return message.content

        async def synthesize(text: str) -> tuple[np.ndarray, int]:
            synthesizer = models.get(synthesis_model)
            audio = await asyncio.to_thread(synthesizer.synthesize, text)
            return audio, int(synthesizer.sample_rate)

        return cls(
            source,
            sink,
            transcribe=transcribe,
            respond=respond,
            synthesize=synthesize,
            sample_rate=sample_rate,
            **kwargs,
        )

    @property
    def state(self) -> VoiceState:
        return self._state

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------
    def start_listening(self):
        """
        Enters CAPTURING from IDLE, or interrupts playback when SPEAKING.
        A no-op while a turn is capturing, transcribing or being answered.
        """
        if self._state is VoiceState.SPEAKING:
            logger.info("voice_barge_in")
            self._abandon_turn()
            self._sink.stop()
        elif self._state is not VoiceState.IDLE:
            return

        self._loop = asyncio.get_running_loop()
        self._epoch += 1
        self._reset_buffers()
        epoch = self._epoch
        try:
            self._source.start(lambda block: self._deliver(epoch, block))
        except RecordingPermissionDenied:
            self._set_state(VoiceState.IDLE)
            logger.warning("voice_recording_denied")
            raise
        except Exception as exc:
            self._set_state(VoiceState.IDLE)
            logger.error("voice_capture_failed", error=str(exc))
            raise
        self._capturing = True
        self._set_state(VoiceState.CAPTURING)

    def stop_listening(self):
        """Returns to IDLE from any state, discarding in-flight work."""
        was_speaking = self._state is VoiceState.SPEAKING
        self._abandon_turn()
        self._stop_capture()
        if was_speaking:
            self._sink.stop()
        self._set_state(VoiceState.IDLE)

    async def wait_for(self, state: VoiceState):
        """Waits until the pipeline reaches ``state``."""
        while self._state is not state:
            if self._changed is None:
                self._changed = asyncio.Event()
            self._changed.clear()
            await self._changed.wait()

    # ------------------------------------------------------------------
    # Audio intake
    # ------------------------------------------------------------------
    def _deliver(self, epoch: int, block: np.ndarray):
        """Audio callback; may run on the audio driver's thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        samples = np.asarray(block, dtype=np.float32).reshape(-1).copy()
        loop.call_soon_threadsafe(self._accept_audio, epoch, samples)

    def _accept_audio(self, epoch: int, samples: np.ndarray):
        if epoch != self._epoch or not self._capturing:
            return
        self._buffer.append(samples)
        self._buffered += samples.shape[0]
        while self._buffered >= self.segment_samples:
            joined = np.concatenate(self._buffer)
            self._segments.append(joined[: self.segment_samples])
            rest = joined[self.segment_samples:]
            self._buffer = [rest] if rest.size else []
            self._buffered = int(rest.size)
        self._pump()

    def _pump(self):
        if self._state is not VoiceState.CAPTURING or not self._segments or self._task is not None:
            return
        segment = self._segments.popleft()
        self._set_state(VoiceState.TRANSCRIBING)
        self._task = asyncio.get_running_loop().create_task(self._run_turn(self._epoch, segment))
        self._task.add_done_callback(self._turn_done)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------
    async def _run_turn(self, epoch: int, segment: np.ndarray):
        try:
            transcript = str(await self._transcribe(segment) or "").strip()
            if epoch != self._epoch:
                return
            if not transcript:
                self._task = None
                self._set_state(VoiceState.CAPTURING)
                self._pump()
                return

            self._stop_capture()
            logger.info("voice_transcribed", chars=len(transcript))
            self._set_state(VoiceState.PROCESSING)
            self._emit(self._on_transcript, transcript)
            reply = await self._respond(transcript)
            if epoch != self._epoch:
                return

            self._emit(self._on_response, reply)
            self._set_state(VoiceState.SYNTHESIZING)
            audio, sample_rate = await self._synthesize(reply)
            if epoch != self._epoch:
                return

            self._set_state(VoiceState.SPEAKING)
            await asyncio.to_thread(self._sink.play, audio, int(sample_rate))
            if epoch != self._epoch:
                return
            self._set_state(VoiceState.IDLE)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if epoch != self._epoch:
                return
            logger.error("voice_turn_failed", state=self._state.value, error=str(exc))
            self._epoch += 1
            self._stop_capture()
            self._set_state(VoiceState.IDLE)
            self._emit(self._on_error, exc)

    def _turn_done(self, task: asyncio.Task):
        if self._task is task:
            self._task = None

    def _abandon_turn(self):
        self._epoch += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _stop_capture(self):
        if self._capturing:
            self._capturing = False
            self._source.stop()
        self._reset_buffers()

    def _reset_buffers(self):
        self._buffer = []
        self._buffered = 0
        self._segments.clear()

    def _set_state(self, new: VoiceState):
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("voice_state_changed", old=old.value, new=new.value)
        if self._changed is not None:
            self._changed.set()
        self._emit(self._on_state_change, old, new)

    def _emit(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning("voice_callback_failed", error=str(exc))
