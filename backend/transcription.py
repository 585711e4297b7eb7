import asyncio
import logging
import random
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import openai
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# Whisper tends to emit these on silent or near-silent input.
_HALLUCINATIONS = frozenset(
    {
        "thank you",
        "thanks for watching",
        "thank you for watching",
        "you",
        "bye",
        "goodbye",
        "thanks",
        "music",
        "[music]",
        "(music)",
        "applause",
        "[applause]",
        "(applause)",
    }
)

_RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EAI_AGAIN", "EPIPE"})


@dataclass(frozen=True)
class TranscriptFragment:
    text: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    duration_ms: float = 0.0
    cost: float = 0.0
    is_silence: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("is_silence", None)
        return data


class TranscriptionError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, code: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.code = code
        self.retryable = bool(retryable)


class TranscriptionBackend(Protocol):
    name: str

    async def transcribe(self, path: Path) -> str: ...


def _error_status(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        val = getattr(exc, attr, None)
        if isinstance(val, int):
            return val
    return None


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, TranscriptionError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    status = _error_status(exc)
    if status is not None and (status == 429 or 500 <= status < 600):
        return True
    code = getattr(exc, "code", None)
    return isinstance(code, str) and code.upper() in _RETRYABLE_ERROR_CODES


def normalize_transcript_text(text: str) -> str:
    t = " ".join((text or "").split()).strip()
    if not t:
        return ""

    # Collapse repeated words/short phrases ("the the", "I think, I think").
    phrase_pat = re.compile(
        r"\b([a-z][a-z0-9']{2,}\s+[a-z][a-z0-9']{2,})\b(?:[\s,.;:!?-]+\1\b)+",
        flags=re.I,
    )
    word_pat = re.compile(r"\b([a-z][a-z0-9']{2,})\b(?:[\s,;:-]+\1\b)+", flags=re.I)

    prev = None
    while prev != t:
        prev = t
        t = phrase_pat.sub(lambda m: m.group(1), t)
        t = word_pat.sub(lambda m: m.group(1), t)

    t = re.sub(r"\s+([,.;:!?])", r"\1", t)
    return t.strip()


def is_hallucination(text: str) -> bool:
    low = (text or "").strip().casefold()
    if not low:
        return False
    return low.rstrip(".!").strip() in _HALLUCINATIONS


class OpenAIWhisperBackend:
    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        model: str = "whisper-1",
        language: str | None = "en",
    ):
        self.model = str(model or "whisper-1")
        self.language = (language or "").strip() or None
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url or None)

    async def transcribe(self, path: Path) -> str:
        data = await asyncio.to_thread(Path(path).read_bytes)
        kwargs = {
            "model": self.model,
            "file": (Path(path).name, data),
            "response_format": "text",
        }
        if self.language:
            kwargs["language"] = self.language
        resp = await self.client.audio.transcriptions.create(**kwargs)
        if isinstance(resp, str):
            return resp
        return str(getattr(resp, "text", "") or "")


class LocalWhisperBackend:
    """faster-whisper running on this machine; inference is serialized and kept off the event loop."""

    name = "local"

    def __init__(self, model_size: str = "tiny", device: str = "cpu", *, language: str | None = "en"):
        self._lock = threading.Lock()
        self.model_size = str(model_size or "tiny").strip() or "tiny"
        device = (str(device or "cpu").strip().lower() or "cpu")
        self.device = "cuda" if device in ("gpu", "cuda") else "cpu"
        self.compute_type = "float16" if self.device == "cuda" else "int8"
        self.language = (language or "").strip() or None
        self.model = None

    def _load_model(self) -> None:
        from faster_whisper import WhisperModel

        logger.info(f"Loading Whisper model: {self.model_size} on {self.device} ({self.compute_type})...")
        try:
            self.model = WhisperModel(self.model_size, device=self.device, compute_type=self.compute_type)
        except Exception as e:
            if self.device == "cpu":
                raise
            logger.warning(f"Failed to load Whisper on {self.device}; falling back to CPU: {e}")
            self.model = WhisperModel(self.model_size, device="cpu", compute_type="int8")
            self.device = "cpu"
            self.compute_type = "int8"

    def _transcribe_sync(self, path: str) -> str:
        with self._lock:
            if self.model is None:
                self._load_model()
            kwargs = {"beam_size": 1, "vad_filter": False, "temperature": 0.0}
            if self.language:
                kwargs["language"] = self.language
            segments, _info = self.model.transcribe(path, **kwargs)
            return " ".join(seg.text.strip() for seg in segments if seg.text)

    async def transcribe(self, path: Path) -> str:
        return await asyncio.to_thread(self._transcribe_sync, str(path))


class MockTranscriptionBackend:
    name = "mock"

    async def transcribe(self, path: Path) -> str:
        size_kb = Path(path).stat().st_size / 1024.0
        return f"[TEST MODE] Audio captured: {size_kb:.2f}KB at {datetime.now().strftime('%H:%M:%S')}"


class TranscriptionGateway:
    def __init__(
        self,
        backend: TranscriptionBackend,
        *,
        max_retries: int = 3,
        base_delay_s: float = 0.5,
        max_delay_s: float = 8.0,
        min_file_bytes: int = 5000,
        chunk_duration_ms: int = 5000,
        cost_per_minute: float = 0.006,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.max_retries = max(0, int(max_retries))
        self.base_delay_s = max(0.0, float(base_delay_s))
        self.max_delay_s = max(self.base_delay_s, float(max_delay_s))
        self.min_file_bytes = max(0, int(min_file_bytes))
        self.chunk_duration_ms = max(0, int(chunk_duration_ms))
        self.cost_per_minute = max(0.0, float(cost_per_minute))
        self._sleep = sleep

        self.transcription_count = 0
        self.total_cost = 0.0

    @property
    def is_mock(self) -> bool:
        return getattr(self.backend, "name", "") == "mock"

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.max_delay_s, self.base_delay_s * (2 ** attempt))
        return delay + random.uniform(0.0, self.base_delay_s)

    async def _call_with_retry(self, path: Path) -> str:
        attempt = 0
        while True:
            try:
                return await self.backend.transcribe(path)
            except Exception as e:
                retryable = is_retryable_error(e)
                if not retryable or attempt >= self.max_retries:
                    if isinstance(e, TranscriptionError):
                        raise
                    raise TranscriptionError(
                        f"Transcription failed: {e}",
                        status=_error_status(e),
                        code=getattr(e, "code", None) if isinstance(getattr(e, "code", None), str) else None,
                        retryable=retryable,
                    ) from e
                delay = self._backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    "Transcription attempt %s/%s failed (%s); retrying in %.2fs",
                    attempt,
                    self.max_retries + 1,
                    e,
                    delay,
                )
                await self._sleep(delay)

    async def transcribe(self, path: str | Path) -> TranscriptFragment:
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"Audio file not found: {p}")

        size = p.stat().st_size
        if size < self.min_file_bytes:
            logger.debug(f"Audio file too small, likely silence ({size} bytes)")
            return TranscriptFragment(text="", is_silence=True)

        started = time.monotonic()
        raw = await self._call_with_retry(p)
        duration_ms = (time.monotonic() - started) * 1000.0

        text = normalize_transcript_text(raw)
        if len(text) < 3 or is_hallucination(text):
            logger.debug(f"Empty or hallucinated transcription, treating as silence: {text!r}")
            return TranscriptFragment(text="", duration_ms=duration_ms, is_silence=True)

        cost = 0.0 if self.is_mock else (self.chunk_duration_ms / 1000.0 / 60.0) * self.cost_per_minute
        self.total_cost += cost
        self.transcription_count += 1
        logger.info(f"Transcription completed ({duration_ms:.0f}ms, {len(text)} chars, ${cost:.4f})")
        return TranscriptFragment(text=text, duration_ms=duration_ms, cost=cost)

    async def delete_audio_file(self, path: str | Path) -> None:
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
            logger.debug(f"Deleted audio file: {path}")
        except OSError as e:
            logger.error(f"Error deleting audio file {path}: {e}")

    def get_stats(self) -> dict:
        return {
            "count": self.transcription_count,
            "total_cost": self.total_cost,
            "average_cost": (self.total_cost / self.transcription_count) if self.transcription_count else 0.0,
        }

    def reset_stats(self) -> None:
        self.transcription_count = 0
        self.total_cost = 0.0
