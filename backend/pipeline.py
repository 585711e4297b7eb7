import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from backend.meeting_history import MeetingHistory
from backend.processing_queue import PipelineError, ProcessingQueue
from backend.segments import AudioSegment
from backend.suggestion_batcher import SuggestionBatcher
from backend.suggestions import SuggestionService
from backend.transcription import TranscriptionGateway
from backend.vad import VoiceActivityAnalyzer

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RECORDING = "recording"
STATE_STOPPING = "stopping"


class EventSink(Protocol):
    async def emit(self, event: str, payload: dict) -> None: ...


class CollectingSink:
    """In-memory sink; keeps every emitted event in order."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def emit(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def of_type(self, event: str) -> list[dict]:
        return [p for e, p in self.events if e == event]


@dataclass
class PipelineOptions:
    vad_enabled: bool = True
    enable_quick_vad: bool = True
    delete_after_transcription: bool = True
    keep_for_playback: bool = False
    pause_check_interval_s: float = 2.0
    stop_timeout_s: float | None = 30.0


@dataclass
class PipelineStats:
    queue_depth: int = 0
    in_flight: int = 0
    total_queued: int = 0
    total_processed: int = 0
    total_dropped: int = 0
    total_errors: int = 0
    segments_received: int = 0
    transcription: dict = field(default_factory=dict)
    suggestions: dict = field(default_factory=dict)
    total_cost: float = 0.0
    session_duration_ms: float = 0.0
    is_processing: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        vad: VoiceActivityAnalyzer,
        transcription: TranscriptionGateway,
        batcher: SuggestionBatcher,
        suggestions: SuggestionService,
        history: MeetingHistory,
        queue: ProcessingQueue,
        options: PipelineOptions | None = None,
    ):
        self.vad = vad
        self.transcription = transcription
        self.batcher = batcher
        self.suggestions = suggestions
        self.history = history
        self.queue = queue
        self.options = options or PipelineOptions()

        self.state = STATE_IDLE
        self._sink: EventSink | None = None
        self._session_started: float | None = None
        self._segments_received = 0
        self._pause_task: asyncio.Task | None = None
        self._session_seq = 0
        self._delivery_tasks: set[asyncio.Task] = set()

    @property
    def is_recording(self) -> bool:
        return self.state == STATE_RECORDING

    @property
    def is_stopping(self) -> bool:
        return self.state == STATE_STOPPING

    def _is_current(self, session: int) -> bool:
        return self.state == STATE_RECORDING and session == self._session_seq

    async def _emit(self, event: str, payload: dict) -> None:
        sink = self._sink
        if sink is None:
            return
        try:
            await sink.emit(event, payload)
        except Exception as e:
            logger.warning(f"Event sink failed for '{event}': {e}")

    def _should_delete_segments(self) -> bool:
        return bool(self.options.delete_after_transcription) and not bool(self.options.keep_for_playback)

    async def _release(self, segment: AudioSegment) -> None:
        if self._should_delete_segments():
            await self.transcription.delete_audio_file(segment.path)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, sink: EventSink | None = None) -> str:
        if self.state == STATE_RECORDING and self.history.current_meeting is not None:
            logger.warning("Recording already active; keeping current session")
            if sink is not None:
                self._sink = sink
            return self.history.current_meeting.id

        self._sink = sink
        self.transcription.reset_stats()
        self.suggestions.reset_stats()
        self.suggestions.clear_context()
        self.batcher.clear_buffer()
        self._segments_received = 0
        meeting_id = self.history.start_meeting()
        self._session_seq += 1
        self._session_started = time.monotonic()
        self.state = STATE_RECORDING
        self._start_pause_loop()
        logger.info(f"Recording session started (meeting={meeting_id})")
        await self._emit("meeting-started", {"meeting_id": meeting_id})
        return meeting_id

    async def stop_session(self) -> dict | None:
        if self.state != STATE_RECORDING:
            logger.info("Stop requested while not recording")
            return None

        self.state = STATE_STOPPING
        await self._stop_pause_loop()
        self.batcher.clear_buffer()

        drained = await self.queue.wait_for_completion(timeout=self.options.stop_timeout_s)
        if not drained:
            # Tasks still running belong to this session and are discarded when they finish.
            self.queue.clear()
        stats = self.get_stats()
        self.history.update_metadata(total_chunks=self._segments_received, total_cost=stats.total_cost)
        saved = self.history.end_meeting()

        self.state = STATE_IDLE
        summary = {
            "meeting": saved,
            "stats": stats.to_dict(),
            "session_duration_ms": stats.session_duration_ms,
            "drained": drained,
        }
        await self._emit("recording-stopped", summary)
        logger.info(
            "Recording session stopped (segments=%s processed=%s dropped=%s errors=%s)",
            self._segments_received,
            stats.total_processed,
            stats.total_dropped,
            stats.total_errors,
        )
        self._session_started = None
        return summary

    async def shutdown(self) -> None:
        if self.state == STATE_RECORDING:
            await self.stop_session()
        await self._stop_pause_loop()
        self.queue.clear()
        for t in list(self._delivery_tasks):
            t.cancel()
        for t in list(self._delivery_tasks):
            with suppress(BaseException):
                await t

    def has_sink(self, sink: EventSink) -> bool:
        return self._sink is sink

    def detach_sink(self, sink: EventSink) -> None:
        if self._sink is sink:
            self._sink = None

    # ------------------------------------------------------------------
    # Segment flow
    # ------------------------------------------------------------------

    def handle_segment(self, path: str | Path, size: int | None = None, error: Any = None) -> asyncio.Task | None:
        """Delivery callback for the audio source. Schedules processing and returns the task."""
        if error is not None:
            logger.error(f"Audio capture failed for {path}: {error}")
            self._spawn(self._emit("error", {"message": f"Audio capture failed: {error}"}))
            return None
        segment = AudioSegment.from_path(path, size=size)
        return self._spawn(self.process_segment(segment))

    def _spawn(self, coro) -> asyncio.Task:
        t = asyncio.get_running_loop().create_task(coro)
        self._delivery_tasks.add(t)
        t.add_done_callback(self._delivery_tasks.discard)
        return t

    async def process_segment(self, segment: AudioSegment) -> Any:
        if self.state != STATE_RECORDING:
            logger.debug(f"Not recording, skipping segment {segment.segment_id}")
            return None

        self._segments_received += 1
        await self._emit(
            "segment-received",
            {
                "id": segment.segment_id,
                "size": segment.size_bytes,
                "timestamp": datetime.now().isoformat(),
            },
        )

        session = self._session_seq
        try:
            return await self.queue.enqueue(
                lambda: self._process_segment_task(segment, session),
                {"segment_id": segment.segment_id, "size": segment.size_bytes, "path": str(segment.path)},
            )
        except PipelineError as e:
            # Dropped under overload; reflected in queue counters only.
            logger.warning(f"Segment {segment.segment_id} not processed: {e}")
            await self._release(segment)
            return None
        except Exception as e:
            logger.debug(f"Segment {segment.segment_id} failed: {e}")
            return None

    async def _process_segment_task(self, segment: AudioSegment, session: int):
        try:
            if not self._is_current(session):
                logger.debug(f"Recording stopped during queue wait, skipping {segment.segment_id}")
                return None

            if self.options.vad_enabled:
                verdict = await self.vad.analyze(segment.path, use_quick_check=self.options.enable_quick_vad)
                if not verdict.has_voice:
                    logger.debug(
                        "VAD: no voice in %s (reason=%s energy=%.4f)",
                        segment.segment_id,
                        verdict.reason,
                        verdict.energy,
                    )
                    await self._release(segment)
                    return None

                if not self._is_current(session):
                    await self._release(segment)
                    return None

            await self._emit("processing", {"stage": "transcribing", "id": segment.segment_id})
            fragment = await self.transcription.transcribe(segment.path)
            if fragment.is_silence or not fragment.text or not self._is_current(session):
                await self._release(segment)
                return None

            self.history.add_transcription(fragment.text, fragment.timestamp)
            await self._emit("transcript", fragment.to_dict())
            await self._release(segment)

            if self._is_current(session):
                batch = self.batcher.add_transcription(fragment.text)
                if batch:
                    await self._generate_suggestions(batch, session)

            await self._emit("stats", self.get_stats().to_dict())
            return fragment
        except Exception as e:
            logger.exception(f"Error processing segment {segment.segment_id}")
            if session == self._session_seq:
                await self._emit("error", {"message": f"Error processing audio: {e}"})
            raise

    async def _generate_suggestions(self, batch_text: str, session: int) -> None:
        if not self._is_current(session):
            return
        await self._emit("processing", {"stage": "generating-suggestions"})
        try:
            result = await self.suggestions.generate_suggestions(batch_text)
        except Exception as e:
            logger.error(f"Suggestion generation failed: {e}")
            return
        if result is None or not self._is_current(session):
            return
        payload = result.to_dict()
        self.history.add_suggestion(payload)
        await self._emit("suggestions", payload)

    # ------------------------------------------------------------------
    # Pause detection
    # ------------------------------------------------------------------

    def _start_pause_loop(self) -> None:
        if self._pause_task is not None and not self._pause_task.done():
            return
        self._pause_task = asyncio.get_running_loop().create_task(self._pause_loop())

    async def _stop_pause_loop(self) -> None:
        task = self._pause_task
        self._pause_task = None
        if task is None:
            return
        task.cancel()
        with suppress(BaseException):
            await task

    async def _pause_loop(self) -> None:
        while True:
            # Re-read each tick so settings changes apply to a running session.
            await asyncio.sleep(max(0.01, float(self.options.pause_check_interval_s)))
            await self.check_pause()

    async def check_pause(self) -> bool:
        """Flush the batcher if the speaker paused; returns True when suggestions were requested."""
        if self.state != STATE_RECORDING:
            return False
        try:
            batch = self.batcher.check_pause_timeout()
            if not batch:
                return False
            await self._generate_suggestions(batch, self._session_seq)
            await self._emit("stats", self.get_stats().to_dict())
            return True
        except Exception:
            logger.exception("Pause check failed")
            return False

    # ------------------------------------------------------------------
    # Settings and stats
    # ------------------------------------------------------------------

    def update_settings(
        self,
        *,
        vad_enabled: bool | None = None,
        enable_quick_vad: bool | None = None,
        energy_threshold: float | None = None,
        min_speech_duration_ms: float | None = None,
        silence_threshold: float | None = None,
        max_concurrent: int | None = None,
        max_queue_size: int | None = None,
        delete_after_transcription: bool | None = None,
        keep_for_playback: bool | None = None,
        pause_check_interval_s: float | None = None,
    ) -> None:
        if vad_enabled is not None:
            self.options.vad_enabled = bool(vad_enabled)
        if enable_quick_vad is not None:
            self.options.enable_quick_vad = bool(enable_quick_vad)
        if delete_after_transcription is not None:
            self.options.delete_after_transcription = bool(delete_after_transcription)
        if keep_for_playback is not None:
            self.options.keep_for_playback = bool(keep_for_playback)
        if energy_threshold is not None or min_speech_duration_ms is not None or silence_threshold is not None:
            self.vad.update_config(
                energy_threshold=energy_threshold,
                min_speech_duration_ms=min_speech_duration_ms,
                silence_threshold=silence_threshold,
            )
        if max_concurrent is not None or max_queue_size is not None:
            self.queue.reconfigure(max_concurrent=max_concurrent, max_queue_size=max_queue_size)
        if pause_check_interval_s is not None:
            interval = float(pause_check_interval_s)
            changed = interval != self.options.pause_check_interval_s
            self.options.pause_check_interval_s = interval
            task = self._pause_task
            if changed and task is not None and not task.done():
                # Restart so the new interval applies without waiting out the old sleep.
                task.cancel()
                self._pause_task = asyncio.get_running_loop().create_task(self._pause_loop())

    def clear_context(self) -> None:
        self.suggestions.clear_context()
        self.batcher.clear_buffer()

    def get_stats(self) -> PipelineStats:
        q = self.queue.get_stats()
        t = self.transcription.get_stats()
        s = self.suggestions.get_stats()
        session_ms = 0.0
        if self._session_started is not None:
            session_ms = (time.monotonic() - self._session_started) * 1000.0
        return PipelineStats(
            queue_depth=q["queue_size"],
            in_flight=q["processing"],
            total_queued=q["total_queued"],
            total_processed=q["total_processed"],
            total_dropped=q["total_dropped"],
            total_errors=q["total_errors"],
            segments_received=self._segments_received,
            transcription=t,
            suggestions=s,
            total_cost=float(t["total_cost"]) + float(s["total_cost"]),
            session_duration_ms=session_ms,
            is_processing=self.state == STATE_RECORDING,
        )
