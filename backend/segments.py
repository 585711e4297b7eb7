import itertools
import logging
import time
import wave
from dataclasses import dataclass
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_SEGMENT_MS = 5000


@dataclass(frozen=True)
class AudioSegment:
    segment_id: str
    path: Path
    size_bytes: int
    duration_ms: float = float(DEFAULT_SEGMENT_MS)
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = 1

    @classmethod
    def from_path(cls, path: str | Path, size: int | None = None) -> "AudioSegment":
        p = Path(path)
        if size is None:
            try:
                size = p.stat().st_size
            except OSError:
                size = 0

        sample_rate = DEFAULT_SAMPLE_RATE
        channels = 1
        duration_ms = float(DEFAULT_SEGMENT_MS)
        if p.suffix.lower() == ".wav" and p.is_file():
            try:
                with wave.open(str(p), "rb") as wf:
                    channels = wf.getnchannels()
                    sample_rate = wf.getframerate()
                    nframes = wf.getnframes()
                if sample_rate > 0:
                    duration_ms = nframes / float(sample_rate) * 1000.0
            except (wave.Error, EOFError, OSError) as e:
                logger.debug(f"Could not read WAV header for {p.name}: {e}")

        return cls(
            segment_id=p.stem,
            path=p,
            size_bytes=int(size),
            duration_ms=duration_ms,
            sample_rate=int(sample_rate),
            channels=int(channels),
        )


def write_wav(path: str | Path, audio: np.ndarray, sample_rate: int = DEFAULT_SAMPLE_RATE) -> None:
    """Write float samples in [-1, 1] as mono 16-bit PCM."""
    arr = np.clip(np.nan_to_num(np.asarray(audio, dtype=np.float32).reshape(-1)), -1.0, 1.0)
    pcm16 = (arr * 32767.0).astype("<i2")
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm16.tobytes())


class SegmentStore:
    """Owns segment files that arrive as raw bytes (e.g. over the websocket)."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._counter = itertools.count(1)

    def write(self, data: bytes, *, suffix: str = ".wav") -> AudioSegment:
        self.directory.mkdir(parents=True, exist_ok=True)
        name = f"chunk_{int(time.time() * 1000)}_{next(self._counter)}{suffix}"
        path = self.directory / name
        path.write_bytes(data)
        return AudioSegment.from_path(path, size=len(data))

    def cleanup(self) -> int:
        if not self.directory.is_dir():
            return 0
        removed = 0
        for p in self.directory.glob("chunk_*"):
            try:
                p.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete leftover segment {p}: {e}")
        return removed
