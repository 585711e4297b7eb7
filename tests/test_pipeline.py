import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

import numpy as np

from backend.meeting_history import MeetingHistory
from backend.pipeline import STATE_IDLE, STATE_STOPPING, CollectingSink, PipelineOptions, PipelineOrchestrator
from backend.processing_queue import ProcessingQueue
from backend.segments import write_wav
from backend.suggestion_batcher import SuggestionBatcher
from backend.suggestions import SuggestionService
from backend.transcription import TranscriptionGateway
from backend.vad import VoiceActivityAnalyzer


class _FakeBackend:
    name = "fake"

    def __init__(self, result="We should finalize the budget before the review.", gate: asyncio.Event | None = None):
        self.result = result
        self.gate = gate
        self.calls: list[Path] = []

    async def transcribe(self, path):
        self.calls.append(Path(path))
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class _FakeLLM:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def chat_create(self, **kwargs):
        self.calls += 1
        if self.fail:
            raise RuntimeError("All configured LLM APIs failed. #1 primary")
        content = json.dumps({"questions": ["When is the review?"], "actionItems": ["Finalize budget"]})
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=100, completion_tokens=50),
        )


class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _tone(seconds: float, amplitude: float = 0.3) -> np.ndarray:
    t = np.arange(int(seconds * 16000), dtype=np.float32) / 16000.0
    return (amplitude * np.sin(2.0 * np.pi * 1000.0 * t)).astype(np.float32)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestPipelineOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.sink = CollectingSink()
        self.clock = _FakeClock()
        self.orchestrator: PipelineOrchestrator | None = None

    async def asyncTearDown(self):
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        self._tmp.cleanup()

    def _build(self, backend, *, llm=None, max_concurrent=2, max_queue_size=10, **options) -> PipelineOrchestrator:
        options.setdefault("pause_check_interval_s", 60.0)
        options.setdefault("stop_timeout_s", 5.0)

        async def _no_sleep(_delay):
            return None

        self.orchestrator = PipelineOrchestrator(
            vad=VoiceActivityAnalyzer(),
            transcription=TranscriptionGateway(backend, min_file_bytes=0, sleep=_no_sleep),
            batcher=SuggestionBatcher(clock=self.clock),
            suggestions=SuggestionService(llm),
            history=MeetingHistory(self.dir / "meetings"),
            queue=ProcessingQueue(max_concurrent=max_concurrent, max_queue_size=max_queue_size),
            options=PipelineOptions(**options),
        )
        return self.orchestrator

    def _segment(self, name: str, samples: np.ndarray | None = None) -> Path:
        path = self.dir / name
        write_wav(path, _tone(1.0) if samples is None else samples)
        return path

    def _event_names(self) -> list[str]:
        return [e for e, _ in self.sink.events]

    async def test_silent_segment_never_reaches_transcription(self):
        backend = _FakeBackend()
        orch = self._build(backend, enable_quick_vad=False)
        await orch.start_session(self.sink)
        path = self._segment("chunk_silent.wav", np.zeros(800, dtype=np.float32))

        result = await orch.handle_segment(path)

        self.assertIsNone(result)
        self.assertEqual(backend.calls, [])
        self.assertEqual(self.sink.of_type("transcript"), [])
        self.assertFalse(path.exists())
        self.assertEqual(orch.get_stats().total_processed, 1)

    async def test_voiced_segment_produces_transcript_and_suggestions(self):
        backend = _FakeBackend()
        llm = _FakeLLM()
        orch = self._build(backend, llm=llm)
        meeting_id = await orch.start_session(self.sink)
        path = self._segment("chunk_1.wav")

        fragment = await orch.handle_segment(path)

        self.assertEqual(fragment.text, "We should finalize the budget before the review.")
        self.assertEqual(
            self._event_names(),
            [
                "meeting-started",
                "segment-received",
                "processing",
                "transcript",
                "processing",
                "suggestions",
                "stats",
            ],
        )
        self.assertEqual(self.sink.of_type("segment-received")[0]["id"], "chunk_1")
        self.assertEqual(self.sink.of_type("transcript")[0]["text"], fragment.text)
        self.assertEqual(self.sink.of_type("suggestions")[0]["action_items"], ["Finalize budget"])
        self.assertFalse(path.exists())

        summary = await orch.stop_session()

        self.assertTrue(summary["drained"])
        self.assertEqual(summary["meeting"]["meeting_id"], meeting_id)
        saved = json.loads(Path(summary["meeting"]["json_path"]).read_text(encoding="utf-8"))
        self.assertEqual(len(saved["transcriptions"]), 1)
        self.assertEqual(len(saved["suggestions"]), 1)
        self.assertEqual(saved["metadata"]["total_chunks"], 1)
        self.assertEqual(summary["stats"]["segments_received"], 1)
        self.assertGreater(summary["stats"]["total_cost"], 0.0)
        self.assertEqual(self._event_names()[-1], "recording-stopped")
        self.assertEqual(orch.state, STATE_IDLE)

    async def test_stop_waits_for_in_flight_work_and_suppresses_results(self):
        gate = asyncio.Event()
        backend = _FakeBackend(gate=gate)
        orch = self._build(backend, max_concurrent=3, vad_enabled=False)
        await orch.start_session(self.sink)
        tasks = [orch.handle_segment(self._segment(f"chunk_{i}.wav")) for i in range(3)]
        await _wait_until(lambda: len(backend.calls) == 3)

        stop = asyncio.create_task(orch.stop_session())
        await asyncio.sleep(0)
        self.assertEqual(orch.state, STATE_STOPPING)
        await asyncio.sleep(0.02)
        self.assertFalse(stop.done())

        gate.set()
        summary = await stop
        await asyncio.gather(*tasks)

        self.assertTrue(summary["drained"])
        self.assertEqual(summary["stats"]["total_processed"], 3)
        self.assertEqual(summary["stats"]["in_flight"], 0)
        self.assertEqual(self.sink.of_type("transcript"), [])
        self.assertEqual(self.sink.of_type("suggestions"), [])

    async def test_stop_timeout_discards_work_from_previous_session(self):
        gate = asyncio.Event()
        backend = _FakeBackend(result="Stale words from the previous meeting session.", gate=gate)
        orch = self._build(backend, max_concurrent=1, vad_enabled=False, stop_timeout_s=0.05)
        await orch.start_session(self.sink)
        running = orch.handle_segment(self._segment("chunk_slow.wav"))
        waiting_path = self._segment("chunk_waiting.wav")
        waiting = orch.handle_segment(waiting_path)
        await _wait_until(lambda: len(backend.calls) == 1 and len(orch.queue) == 1)

        summary = await orch.stop_session()

        self.assertFalse(summary["drained"])
        # The backlog is rejected once the wait gives up.
        self.assertIsNone(await waiting)
        self.assertFalse(waiting_path.exists())

        second_sink = CollectingSink()
        await orch.start_session(second_sink)
        gate.set()

        self.assertIsNone(await running)
        self.assertEqual(second_sink.of_type("transcript"), [])
        self.assertEqual(second_sink.of_type("error"), [])
        self.assertEqual([e for e, _ in second_sink.events], ["meeting-started"])
        self.assertEqual(orch.history.current_meeting.transcriptions, [])
        self.assertEqual(len(orch.batcher), 0)
        self.assertEqual(len(backend.calls), 1)

    async def test_pause_timer_flushes_without_manual_check(self):
        orch = self._build(_FakeBackend(), pause_check_interval_s=0.01)
        await orch.start_session(self.sink)
        loop_task = orch._pause_task
        orch.batcher.add_transcription("so the main thing I wanted to raise is")

        self.clock.now += 6
        await _wait_until(lambda: bool(self.sink.of_type("suggestions")))

        await orch.stop_session()
        self.assertTrue(loop_task.done())
        self.assertIsNone(orch._pause_task)

        # Nothing flushes once the timer is gone.
        orch.batcher.add_transcription("another thought that trails off into")
        self.clock.now += 60
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.sink.of_type("suggestions")), 1)

    async def test_pause_interval_change_applies_to_running_timer(self):
        orch = self._build(_FakeBackend(), pause_check_interval_s=60.0)
        await orch.start_session(self.sink)
        orch.batcher.add_transcription("so the main thing I wanted to raise is")
        self.clock.now += 6

        orch.update_settings(pause_check_interval_s=0.01)

        await _wait_until(lambda: bool(self.sink.of_type("suggestions")))
        self.assertEqual(orch.options.pause_check_interval_s, 0.01)

    async def test_processing_error_emits_single_error_event(self):
        backend = _FakeBackend(result=ValueError("decoder exploded"))
        orch = self._build(backend, vad_enabled=False)
        await orch.start_session(self.sink)
        path = self._segment("chunk_bad.wav")

        result = await orch.handle_segment(path)

        self.assertIsNone(result)
        errors = self.sink.of_type("error")
        self.assertEqual(len(errors), 1)
        self.assertTrue(errors[0]["message"].startswith("Error processing audio:"))
        self.assertIn("decoder exploded", errors[0]["message"])
        self.assertEqual(orch.get_stats().total_errors, 1)

        # The session keeps accepting segments after a failure.
        backend.result = "Next topic is hiring for the platform team."
        fragment = await orch.handle_segment(self._segment("chunk_good.wav"))
        self.assertEqual(fragment.text, "Next topic is hiring for the platform team.")

    async def test_overflow_drop_is_counted_without_error_event(self):
        gate = asyncio.Event()
        backend = _FakeBackend(gate=gate)
        orch = self._build(backend, max_concurrent=1, max_queue_size=1, vad_enabled=False)
        await orch.start_session(self.sink)
        paths = [self._segment(f"chunk_{i}.wav") for i in range(3)]
        tasks = [orch.handle_segment(p) for p in paths]
        await _wait_until(lambda: orch.queue.total_dropped == 1 and len(backend.calls) == 1)

        gate.set()
        await asyncio.gather(*tasks)

        self.assertEqual(self.sink.of_type("error"), [])
        self.assertEqual(orch.get_stats().total_dropped, 1)
        self.assertEqual(len(backend.calls), 2)
        # The evicted segment is cleaned up as well.
        self.assertFalse(paths[1].exists())

    async def test_suggestion_failure_is_not_a_segment_error(self):
        backend = _FakeBackend()
        orch = self._build(backend, llm=_FakeLLM(fail=True))
        await orch.start_session(self.sink)

        fragment = await orch.handle_segment(self._segment("chunk_1.wav"))

        self.assertIsNotNone(fragment)
        self.assertEqual(self.sink.of_type("error"), [])
        self.assertEqual(self.sink.of_type("suggestions"), [])
        self.assertEqual(len(self.sink.of_type("transcript")), 1)

    async def test_pause_flushes_pending_batch(self):
        orch = self._build(_FakeBackend())
        await orch.start_session(self.sink)
        orch.batcher.add_transcription("so the main thing I wanted to raise is")

        self.assertFalse(await orch.check_pause())
        self.clock.now += 6
        self.assertTrue(await orch.check_pause())

        suggestions = self.sink.of_type("suggestions")
        self.assertEqual(len(suggestions), 1)
        self.assertTrue(suggestions[0]["questions"][0].startswith("[TEST MODE]"))

    async def test_capture_error_is_reported(self):
        orch = self._build(_FakeBackend())
        await orch.start_session(self.sink)

        self.assertIsNone(orch.handle_segment(self.dir / "chunk_x.wav", error="device unplugged"))
        await _wait_until(lambda: bool(self.sink.of_type("error")))

        self.assertEqual(self.sink.of_type("error")[0]["message"], "Audio capture failed: device unplugged")

    async def test_segments_after_stop_are_ignored(self):
        backend = _FakeBackend()
        orch = self._build(backend)
        await orch.start_session(self.sink)
        await orch.stop_session()
        count = len(self.sink.events)

        result = await orch.handle_segment(self._segment("chunk_late.wav"))

        self.assertIsNone(result)
        self.assertEqual(len(self.sink.events), count)
        self.assertEqual(backend.calls, [])
        self.assertIsNone(await orch.stop_session())

    async def test_keep_for_playback_retains_files(self):
        orch = self._build(_FakeBackend(), keep_for_playback=True)
        await orch.start_session(self.sink)
        path = self._segment("chunk_keep.wav")

        await orch.handle_segment(path)

        self.assertTrue(path.exists())

    async def test_update_settings_reaches_components(self):
        orch = self._build(_FakeBackend())
        orch.update_settings(energy_threshold=0.02, max_concurrent=4, max_queue_size=7, vad_enabled=False)

        self.assertEqual(orch.vad.get_config()["energy_threshold"], 0.02)
        self.assertEqual(orch.queue.max_concurrent, 4)
        self.assertEqual(orch.queue.max_queue_size, 7)
        self.assertFalse(orch.options.vad_enabled)


if __name__ == "__main__":
    unittest.main()
