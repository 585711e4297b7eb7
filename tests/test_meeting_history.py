import json
import tempfile
import unittest
from pathlib import Path

from backend.meeting_history import Meeting, MeetingHistory


class TestMeetingHistory(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name) / "meetings"
        self.history = MeetingHistory(self.dir)

    def tearDown(self):
        self._tmp.cleanup()

    def test_end_meeting_persists_json(self):
        meeting_id = self.history.start_meeting()
        self.history.add_transcription("We agreed to ship on Friday.", "2024-05-01T10:00:00")
        self.history.add_suggestion({"questions": ["Is QA signed off?"], "metadata": {"cost": 0.001}})
        self.history.update_metadata(total_chunks=4, total_cost=0.0031, unknown_field=1)

        saved = self.history.end_meeting()

        self.assertEqual(saved["meeting_id"], meeting_id)
        path = Path(saved["json_path"])
        self.assertTrue(path.is_file())
        self.assertEqual(path.name, f"meeting_{meeting_id}.json")
        self.assertFalse(path.with_suffix(".json.tmp").exists())

        data = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(data["transcriptions"], [{"text": "We agreed to ship on Friday.", "timestamp": "2024-05-01T10:00:00"}])
        self.assertEqual(data["suggestions"][0]["questions"], ["Is QA signed off?"])
        self.assertIn("timestamp", data["suggestions"][0])
        self.assertEqual(data["metadata"]["total_chunks"], 4)
        self.assertIsNotNone(data["end_time"])
        self.assertIsNone(self.history.current_meeting)

    def test_end_without_active_meeting(self):
        self.assertIsNone(self.history.end_meeting())
        # Additions without a meeting are ignored.
        self.history.add_transcription("orphan")
        self.assertIsNone(self.history.current_meeting)

    def test_ids_are_unique_for_back_to_back_meetings(self):
        first = self.history.start_meeting()
        self.history.end_meeting()
        second = self.history.start_meeting()
        self.history.end_meeting()
        self.assertNotEqual(first, second)
        self.assertGreater(int(second), int(first))

    def test_list_meetings_most_recent_first(self):
        ids = []
        for i in range(3):
            ids.append(self.history.start_meeting())
            self.history.add_transcription(f"line {i}")
            self.history.end_meeting()
        (self.dir / "meeting_broken.json").write_text("{not json", encoding="utf-8")

        listed = self.history.list_meetings()

        self.assertEqual([m["id"] for m in listed], list(reversed(ids)))
        self.assertEqual(listed[0]["transcription_count"], 1)

    def test_list_meetings_without_directory(self):
        self.assertEqual(MeetingHistory(self.dir / "missing").list_meetings(), [])

    def test_get_meeting_round_trips(self):
        meeting_id = self.history.start_meeting()
        self.history.add_transcription("Budget is approved.")
        self.history.end_meeting()

        meeting = self.history.get_meeting(meeting_id)

        self.assertIsInstance(meeting, Meeting)
        self.assertEqual(meeting.transcriptions[0].text, "Budget is approved.")
        self.assertIsNone(self.history.get_meeting("0"))


if __name__ == "__main__":
    unittest.main()
