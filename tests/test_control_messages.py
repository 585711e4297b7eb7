import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import main
from backend.meeting_history import MeetingHistory
from backend.pipeline import STATE_RECORDING, CollectingSink, PipelineOptions, PipelineOrchestrator
from backend.processing_queue import ProcessingQueue
from backend.suggestion_batcher import SuggestionBatcher
from backend.suggestions import SuggestionService
from backend.transcription import MockTranscriptionBackend, TranscriptionGateway
from backend.vad import VoiceActivityAnalyzer


class TestControlMessages(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self._config = main.config
        self._pipeline = main.pipeline
        main.config = dict(main.DEFAULT_CONFIG)
        main.pipeline = PipelineOrchestrator(
            vad=VoiceActivityAnalyzer(),
            transcription=TranscriptionGateway(MockTranscriptionBackend()),
            batcher=SuggestionBatcher(),
            suggestions=SuggestionService(None),
            history=MeetingHistory(Path(self._tmp.name) / "meetings"),
            queue=ProcessingQueue(),
            options=PipelineOptions(pause_check_interval_s=60.0),
        )
        self.sink = CollectingSink()

    async def asyncTearDown(self):
        await main.pipeline.shutdown()
        main.config = self._config
        main.pipeline = self._pipeline
        self._tmp.cleanup()

    async def test_start_and_stop_recording(self):
        reply = await main.handle_control_message({"type": "start_recording"}, self.sink)
        self.assertEqual(reply["type"], "recording-started")
        self.assertEqual(main.pipeline.state, STATE_RECORDING)
        self.assertEqual(self.sink.of_type("meeting-started")[0]["meeting_id"], reply["meeting_id"])

        reply = await main.handle_control_message({"type": "stop_recording"}, self.sink)
        self.assertIsNone(reply)
        stopped = self.sink.of_type("recording-stopped")
        self.assertEqual(len(stopped), 1)
        self.assertEqual(stopped[0]["meeting"]["meeting_id"], self.sink.of_type("meeting-started")[0]["meeting_id"])

    async def test_stop_when_idle(self):
        reply = await main.handle_control_message({"type": "stop_recording"}, self.sink)
        self.assertEqual(reply, {"type": "status", "message": "Not recording"})

    async def test_get_stats(self):
        reply = await main.handle_control_message({"type": "get_stats"}, self.sink)
        self.assertEqual(reply["type"], "stats")
        self.assertEqual(reply["total_dropped"], 0)
        self.assertFalse(reply["is_processing"])

    async def test_clear_context(self):
        main.pipeline.batcher.add_transcription("half a thought that never")
        reply = await main.handle_control_message({"type": "clear_context"}, self.sink)
        self.assertEqual(reply, {"type": "context-cleared"})
        self.assertEqual(len(main.pipeline.batcher), 0)

    async def test_update_settings_applies_to_running_pipeline(self):
        with patch.object(main, "save_config") as save, patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
            reply = await main.handle_control_message(
                {"type": "update_settings", "settings": {"max_concurrent": 4, "energy_threshold": 0.01}},
                self.sink,
            )
        save.assert_called_once()
        self.assertEqual(reply["type"], "settings-updated")
        self.assertIn("max_concurrent", reply["changed"])
        self.assertEqual(main.config["max_concurrent"], 4)
        self.assertEqual(main.pipeline.queue.max_concurrent, 4)
        self.assertEqual(main.pipeline.vad.get_config()["energy_threshold"], 0.01)

    async def test_update_settings_hot_reloads_batching_and_transcription_limits(self):
        await main.handle_control_message({"type": "start_recording"}, self.sink)
        old_timer = main.pipeline._pause_task
        settings = {
            "max_context_length": 3,
            "transcription_min_file_bytes": 1200,
            "chunk_duration_ms": 2500,
            "pause_check_interval_seconds": 0.5,
        }
        with patch.object(main, "save_config"), patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
            reply = await main.handle_control_message({"type": "update_settings", "settings": settings}, self.sink)

        self.assertEqual(reply["type"], "settings-updated")
        p = main.pipeline
        self.assertEqual(p.suggestions.max_context_length, 3)
        self.assertEqual(p.transcription.min_file_bytes, 1200)
        self.assertEqual(p.transcription.chunk_duration_ms, 2500)
        self.assertEqual(p.options.pause_check_interval_s, 0.5)
        self.assertIsNot(p._pause_task, old_timer)
        self.assertFalse(p._pause_task.done())

    async def test_update_settings_rejects_non_object(self):
        reply = await main.handle_control_message({"type": "update_settings", "settings": [1, 2]}, self.sink)
        self.assertEqual(reply["type"], "error")

    async def test_update_settings_save_failure_is_reported(self):
        with patch.object(main, "save_config", side_effect=OSError("disk full")):
            reply = await main.handle_control_message(
                {"type": "update_settings", "settings": {"max_queue_size": 3}}, self.sink
            )
        self.assertEqual(reply["type"], "error")
        self.assertIn("disk full", reply["message"])
        self.assertEqual(main.config["max_queue_size"], 10)

    async def test_audio_segment_requires_path(self):
        reply = await main.handle_control_message({"type": "audio_segment"}, self.sink)
        self.assertEqual(reply["type"], "error")

    async def test_unknown_message_type(self):
        reply = await main.handle_control_message({"type": "dance"}, self.sink)
        self.assertEqual(reply, {"type": "error", "message": "Unknown message type: dance"})


if __name__ == "__main__":
    unittest.main()
