import logging
import re
import time
from typing import Callable

logger = logging.getLogger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?]\s*$")


class SuggestionBatcher:
    """Accumulates transcript fragments until they read like a complete thought.

    A batch is released when the buffer is large enough, when it ends on a
    sentence boundary, or when the speaker has paused long enough. Releasing
    a batch always empties the buffer.
    """

    def __init__(
        self,
        *,
        min_batch_size: int = 30,
        sufficient_size: int = 100,
        pause_threshold_s: float = 5.0,
        min_fragment_chars: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_batch_size = max(1, int(min_batch_size))
        self.sufficient_size = max(self.min_batch_size, int(sufficient_size))
        self.pause_threshold_s = max(0.0, float(pause_threshold_s))
        self.min_fragment_chars = max(0, int(min_fragment_chars))
        self._clock = clock
        self._buffer: list[str] = []
        self._last_fragment_ts: float | None = None

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def pending_chars(self) -> int:
        return len(self.pending_text())

    def pending_text(self) -> str:
        return " ".join(self._buffer)

    def add_transcription(self, text: str | None) -> str | None:
        t = (text or "").strip()
        if len(t) < self.min_fragment_chars:
            return None

        self._buffer.append(t)
        self._last_fragment_ts = self._clock()

        buffer_text = self.pending_text()
        reason = self._flush_reason(buffer_text)
        if reason is None:
            return None

        logger.info(f"Sending batch: {reason} (chars={len(buffer_text)})")
        self._reset()
        return buffer_text

    def _flush_reason(self, buffer_text: str) -> str | None:
        if len(buffer_text) < self.min_batch_size:
            return None
        if len(buffer_text) >= self.sufficient_size:
            return "sufficient content"
        if _SENTENCE_END_RE.search(buffer_text.strip()):
            return "complete sentence"
        return None

    def check_pause_timeout(self) -> str | None:
        if not self._buffer or self._last_fragment_ts is None:
            return None

        elapsed = self._clock() - self._last_fragment_ts
        if elapsed < self.pause_threshold_s:
            return None

        buffer_text = self.pending_text()
        self._reset()
        if len(buffer_text) >= self.min_batch_size:
            logger.info(f"Sending batch: pause detected after speech (pause={elapsed:.1f}s chars={len(buffer_text)})")
            return buffer_text

        logger.debug(f"Discarding short buffer after pause (chars={len(buffer_text)})")
        return None

    def _reset(self) -> None:
        self._buffer = []
        self._last_fragment_ts = None

    def clear_buffer(self) -> None:
        self._reset()
        logger.info("Transcription buffer cleared")
