import asyncio
import logging
import struct
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

_QUICK_READ_BYTES = 1024
_QUICK_SCAN_LIMIT = 200
_QUICK_MAX_SAMPLES = 256
_PCM_SCALE = 32768.0


@dataclass(frozen=True)
class VadVerdict:
    has_voice: bool
    confidence: float
    reason: str
    energy: float = 0.0
    zero_crossing_rate: float = 0.0
    duration_ms: float = 0.0
    spectral_centroid: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class QuickCheck:
    """Ambiguous quick-check outcome; the full analyzer has to decide."""

    needs_full_vad: bool = True
    energy: float | None = None


@dataclass
class VadConfig:
    energy_threshold: float = 0.003
    min_speech_duration_ms: float = 200.0
    silence_threshold: float = 0.001


@dataclass(frozen=True)
class WavAudio:
    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return float(len(self.samples)) / float(self.sample_rate) * 1000.0


def _is_wav_path(path: str | Path) -> bool:
    return Path(path).suffix.lower() == ".wav"


def _find_data_chunk(buffer: bytes, *, scan_limit: int | None = None) -> tuple[int, int, dict]:
    """Walk RIFF sub-chunks from offset 12 and return (data_offset, data_size, fmt)."""
    fmt: dict = {}
    offset = 12
    end = len(buffer) - 8
    if scan_limit is not None:
        end = min(end, scan_limit)
    while offset < end:
        chunk_id = buffer[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", buffer, offset + 4)
        if chunk_id == b"data":
            return offset + 8, int(chunk_size), fmt
        if chunk_id == b"fmt " and chunk_size >= 16 and offset + 24 <= len(buffer):
            audio_format, channels, sample_rate = struct.unpack_from("<HHI", buffer, offset + 8)
            (bits,) = struct.unpack_from("<H", buffer, offset + 22)
            fmt = {
                "audio_format": int(audio_format),
                "channels": int(channels),
                "sample_rate": int(sample_rate),
                "bits_per_sample": int(bits),
            }
        # Odd-sized chunks carry a pad byte.
        offset += 8 + int(chunk_size) + (int(chunk_size) & 1)
    return -1, 0, fmt


def parse_wav(buffer: bytes) -> WavAudio | None:
    """Decode a 16-bit PCM WAV buffer into mono float32 samples in [-1, 1]."""
    try:
        if len(buffer) < 12 or buffer[0:4] != b"RIFF" or buffer[8:12] != b"WAVE":
            logger.warning("Invalid WAV file format")
            return None

        data_offset, data_size, fmt = _find_data_chunk(buffer)
        if data_offset < 0:
            logger.warning("No data chunk found in WAV file")
            return None

        sample_rate = int(fmt.get("sample_rate") or 0)
        if sample_rate <= 0 and len(buffer) >= 28:
            (sample_rate,) = struct.unpack_from("<I", buffer, 24)
        if sample_rate <= 0:
            return None
        channels = max(1, int(fmt.get("channels") or 1))

        data = buffer[data_offset : data_offset + data_size]
        usable = len(data) - (len(data) % 2)
        pcm = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / _PCM_SCALE
        if channels > 1:
            frames = len(pcm) // channels
            pcm = pcm[: frames * channels].reshape(frames, channels).mean(axis=1).astype(np.float32)
        return WavAudio(samples=pcm, sample_rate=sample_rate, channels=channels)
    except Exception as e:
        logger.error(f"Error parsing WAV file: {e}")
        return None


def _rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


def _zero_crossing_rate(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    nonneg = samples >= 0
    crossings = int(np.count_nonzero(nonneg[1:] != nonneg[:-1]))
    return crossings / float(samples.size)


def _spectral_centroid(samples: np.ndarray) -> float:
    # Magnitude-weighted sample index; advisory only.
    mags = np.abs(samples.astype(np.float64))
    total = float(mags.sum())
    if total <= 0.0:
        return 0.0
    return float(np.dot(np.arange(mags.size, dtype=np.float64), mags) / total)


class EnergyGate:
    """Cheap pre-filter over the first few hundred samples of a WAV file."""

    def __init__(self, config: VadConfig):
        self.config = config

    def check(self, path: str | Path) -> VadVerdict | QuickCheck:
        try:
            p = Path(path)
            if not p.is_file():
                return VadVerdict(has_voice=False, confidence=0.0, reason="file_not_found")
            if not _is_wav_path(p):
                return VadVerdict(has_voice=True, confidence=0.5, reason="non_wav_format")

            with p.open("rb") as f:
                head = f.read(_QUICK_READ_BYTES)

            data_offset, _, _ = _find_data_chunk(head, scan_limit=_QUICK_SCAN_LIMIT)
            if data_offset < 0:
                return QuickCheck()

            available = (len(head) - data_offset) // 2
            count = min(_QUICK_MAX_SAMPLES, available)
            if count <= 0:
                return QuickCheck()
            raw = np.frombuffer(head, dtype="<i2", count=count, offset=data_offset)
            energy = _rms(raw.astype(np.float32) / _PCM_SCALE)

            if energy > self.config.energy_threshold * 2:
                return VadVerdict(
                    has_voice=True,
                    confidence=0.8,
                    reason="quick_check_high_energy",
                    energy=energy,
                )
            if energy < self.config.silence_threshold:
                return VadVerdict(
                    has_voice=False,
                    confidence=0.2,
                    reason="quick_check_low_energy",
                    energy=energy,
                )
            return QuickCheck(needs_full_vad=True, energy=energy)
        except Exception as e:
            logger.debug(f"Quick VAD check error, falling back to full VAD: {e}")
            return QuickCheck()


class VoiceActivityAnalyzer:
    def __init__(
        self,
        energy_threshold: float = 0.003,
        min_speech_duration_ms: float = 200.0,
        silence_threshold: float = 0.001,
    ):
        self.config = VadConfig(
            energy_threshold=float(energy_threshold),
            min_speech_duration_ms=float(min_speech_duration_ms),
            silence_threshold=float(silence_threshold),
        )
        self.gate = EnergyGate(self.config)
        logger.info(
            "VAD initialized (energy=%s min_speech_ms=%s silence=%s)",
            self.config.energy_threshold,
            self.config.min_speech_duration_ms,
            self.config.silence_threshold,
        )

    async def analyze(self, path: str | Path, use_quick_check: bool = True) -> VadVerdict:
        try:
            p = Path(path)
            if not p.is_file():
                raise FileNotFoundError(f"Audio file not found: {p}")

            if use_quick_check:
                quick = await asyncio.to_thread(self.gate.check, p)
                if isinstance(quick, VadVerdict):
                    logger.debug(
                        "VAD quick check: has_voice=%s reason=%s energy=%.4f",
                        quick.has_voice,
                        quick.reason,
                        quick.energy,
                    )
                    return quick

            if not _is_wav_path(p):
                logger.debug(f"VAD skipping non-WAV file, assuming voice: {p}")
                return VadVerdict(has_voice=True, confidence=0.5, reason="non_wav_format")

            buffer = await asyncio.to_thread(p.read_bytes)
            audio = parse_wav(buffer)
            if audio is None:
                logger.warning(f"Failed to parse WAV file, assuming voice: {p}")
                return VadVerdict(has_voice=True, confidence=0.5, reason="parse_error")

            verdict = self.analyze_samples(audio)
            logger.debug(
                "VAD analysis: has_voice=%s confidence=%.3f energy=%.4f duration_ms=%.0f reason=%s",
                verdict.has_voice,
                verdict.confidence,
                verdict.energy,
                verdict.duration_ms,
                verdict.reason,
            )
            return verdict
        except Exception as e:
            logger.error(f"VAD analysis error for {path}: {e}")
            return VadVerdict(has_voice=True, confidence=0.5, reason="error_fallback")

    def analyze_samples(self, audio: WavAudio) -> VadVerdict:
        samples = np.asarray(audio.samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return VadVerdict(has_voice=False, confidence=0.0, reason="empty_audio")

        cfg = self.config
        duration_ms = audio.duration_ms
        energy = _rms(samples)
        zcr = _zero_crossing_rate(samples)
        centroid = _spectral_centroid(samples)

        has_voice = False
        confidence = 0.0
        reasons: list[str] = []

        if energy > cfg.energy_threshold:
            has_voice = True
            confidence = min(energy / cfg.energy_threshold, 1.0) if cfg.energy_threshold > 0 else 1.0
            reasons.append("energy_detected")

        # Speech tends to sit in a moderate zero-crossing band.
        if 0.05 < zcr < 0.3:
            confidence = min(confidence + 0.2, 1.0)
            reasons.append("zcr_match")

        reason = ",".join(reasons)

        if has_voice and duration_ms < cfg.min_speech_duration_ms:
            has_voice = False
            confidence = 0.0
            reason = "too_short"

        # Only short segments are treated as silence; long quiet speech is kept.
        if energy < cfg.silence_threshold and duration_ms < 1000:
            has_voice = False
            confidence = 0.0
            reason = "silence_detected"

        return VadVerdict(
            has_voice=has_voice,
            confidence=min(confidence, 1.0),
            reason=reason or "no_voice",
            energy=energy,
            zero_crossing_rate=zcr,
            duration_ms=duration_ms,
            spectral_centroid=centroid,
        )

    def update_config(
        self,
        *,
        energy_threshold: float | None = None,
        min_speech_duration_ms: float | None = None,
        silence_threshold: float | None = None,
    ) -> None:
        if energy_threshold is not None:
            self.config.energy_threshold = float(energy_threshold)
        if min_speech_duration_ms is not None:
            self.config.min_speech_duration_ms = float(min_speech_duration_ms)
        if silence_threshold is not None:
            self.config.silence_threshold = float(silence_threshold)
        logger.info(
            "VAD configuration updated (energy=%s min_speech_ms=%s silence=%s)",
            self.config.energy_threshold,
            self.config.min_speech_duration_ms,
            self.config.silence_threshold,
        )

    def get_config(self) -> dict:
        return asdict(self.config)
