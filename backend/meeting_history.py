import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class MeetingTranscript:
    text: str
    timestamp: str


@dataclass
class MeetingMetadata:
    duration: int = 0  # seconds
    total_chunks: int = 0
    total_cost: float = 0.0


@dataclass
class Meeting:
    id: str
    start_time: str
    end_time: Optional[str] = None
    transcriptions: List[MeetingTranscript] = field(default_factory=list)
    suggestions: List[dict] = field(default_factory=list)
    metadata: MeetingMetadata = field(default_factory=MeetingMetadata)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "transcriptions": [asdict(t) for t in self.transcriptions],
            "suggestions": [dict(s) for s in self.suggestions],
            "metadata": asdict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Meeting":
        transcriptions: list[MeetingTranscript] = []
        for t in data.get("transcriptions", []) or []:
            if isinstance(t, dict) and "text" in t:
                transcriptions.append(MeetingTranscript(text=str(t["text"]), timestamp=str(t.get("timestamp") or "")))

        meta_raw = data.get("metadata") or {}
        metadata = MeetingMetadata(
            duration=int(meta_raw.get("duration") or 0),
            total_chunks=int(meta_raw.get("total_chunks") or 0),
            total_cost=float(meta_raw.get("total_cost") or 0.0),
        )
        return cls(
            id=str(data["id"]),
            start_time=data["start_time"],
            end_time=data.get("end_time"),
            transcriptions=transcriptions,
            suggestions=[s for s in (data.get("suggestions") or []) if isinstance(s, dict)],
            metadata=metadata,
        )


class MeetingHistory:
    """Accumulates the active meeting and persists finished meetings as JSON files."""

    def __init__(self, meetings_dir: str | Path):
        self.meetings_dir = Path(meetings_dir)
        self.current_meeting: Meeting | None = None
        self._last_id = 0

    def _ensure_dir(self) -> Path:
        self.meetings_dir.mkdir(parents=True, exist_ok=True)
        return self.meetings_dir

    def _path_for(self, meeting_id: str) -> Path:
        return self.meetings_dir / f"meeting_{meeting_id}.json"

    def _next_id(self) -> str:
        ms = int(time.time() * 1000)
        if ms <= self._last_id:
            ms = self._last_id + 1
        self._last_id = ms
        return str(ms)

    def start_meeting(self) -> str:
        self.current_meeting = Meeting(id=self._next_id(), start_time=datetime.now().isoformat())
        logger.info(f"Meeting started: {self.current_meeting.id}")
        return self.current_meeting.id

    def add_transcription(self, text: str, timestamp: str | None = None) -> None:
        if self.current_meeting is None:
            return
        self.current_meeting.transcriptions.append(
            MeetingTranscript(text=text, timestamp=timestamp or datetime.now().isoformat())
        )

    def add_suggestion(self, suggestion: dict) -> None:
        if self.current_meeting is None:
            return
        self.current_meeting.suggestions.append({**suggestion, "timestamp": datetime.now().isoformat()})

    def update_metadata(self, **fields) -> None:
        if self.current_meeting is None:
            return
        meta = self.current_meeting.metadata
        for key, value in fields.items():
            if hasattr(meta, key):
                setattr(meta, key, value)

    def end_meeting(self) -> dict | None:
        meeting = self.current_meeting
        if meeting is None:
            logger.warning("No active meeting to end")
            return None

        end = datetime.now()
        meeting.end_time = end.isoformat()
        meeting.metadata.duration = int((end - datetime.fromisoformat(meeting.start_time)).total_seconds())

        path = self._path_for(meeting.id)
        self._ensure_dir()
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(meeting.to_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(path)
        logger.info(f"Meeting data saved: {path}")

        self.current_meeting = None
        return {"meeting_id": meeting.id, "json_path": str(path), "meeting": meeting.to_dict()}

    def get_meeting(self, meeting_id: str) -> Meeting | None:
        try:
            path = self._path_for(str(meeting_id))
            if path.is_file():
                return Meeting.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except Exception:
            logger.exception(f"Failed to load meeting {meeting_id}")
        return None

    def list_meetings(self) -> list[dict]:
        """Return meeting summaries, most recent first."""
        meetings = []
        if not self.meetings_dir.is_dir():
            return meetings
        for f in self.meetings_dir.glob("meeting_*.json"):
            try:
                data = json.loads(f.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.warning(f"Skipping unreadable meeting file: {f}")
                continue
            meta = data.get("metadata") or {}
            meetings.append(
                {
                    "id": str(data.get("id")),
                    "start_time": data.get("start_time"),
                    "end_time": data.get("end_time"),
                    "transcription_count": len(data.get("transcriptions") or []),
                    "suggestion_count": len(data.get("suggestions") or []),
                    "duration": meta.get("duration", 0),
                    "total_cost": meta.get("total_cost", 0.0),
                }
            )
        meetings.sort(key=lambda m: int(m["id"]) if m["id"].isdigit() else 0, reverse=True)
        return meetings
