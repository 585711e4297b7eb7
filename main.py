import asyncio
import json
import os
import socket
import logging
import faulthandler
import time
from pathlib import Path
from typing import Any
import uvicorn
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager, suppress
from starlette.websockets import WebSocketDisconnect

from backend.llm import LLMClient
from backend.meeting_history import MeetingHistory
from backend.pipeline import PipelineOptions, PipelineOrchestrator
from backend.processing_queue import ProcessingQueue
from backend.segments import SegmentStore
from backend.suggestion_batcher import SuggestionBatcher
from backend.suggestions import SuggestionService
from backend.transcription import (
    LocalWhisperBackend,
    MockTranscriptionBackend,
    OpenAIWhisperBackend,
    TranscriptionGateway,
)
from backend.vad import VoiceActivityAnalyzer

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")
important_logger = logging.getLogger("Main.IMPORTANT")

_IMPORTANT_LAST_BY_KEY: dict[str, float] = {}
_NOISY_LOGGERS = (
    "backend.vad",
    "backend.processing_queue",
    "backend.transcription",
    "faster_whisper",
    "httpx",
    "openai",
    "uvicorn.access",
)


def _safe_log_value(value: Any, *, max_len: int = 96) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    s = str(value).strip()
    if not s:
        return "-"
    s = " ".join(s.split())
    if len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    try:
        ev = _safe_log_value(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0:
            token = f"{ev}|{dedupe_key}"
            now_ts = time.time()
            prev_ts = _IMPORTANT_LAST_BY_KEY.get(token, 0.0)
            if now_ts - prev_ts < float(dedupe_window_s):
                return
            _IMPORTANT_LAST_BY_KEY[token] = now_ts

        if fields:
            parts = [f"{k}={_safe_log_value(v)}" for k, v in sorted(fields.items())]
            important_logger.log(level, f"IMPORTANT {ev} | " + " ".join(parts))
        else:
            important_logger.log(level, f"IMPORTANT {ev}")
    except Exception:
        logger.exception("Failed to emit important log")

# Best-effort: dump tracebacks on native crashes (segfault/abort).
with suppress(Exception):
    faulthandler.enable(all_threads=True)


# ============================================
# CONFIGURATION
# ============================================

DEFAULT_CONFIG = {
    # Suggestion LLM (OpenAI-compatible)
    "api_key": "",
    "base_url": "https://api.openai.com/v1",
    "model": "gpt-4o-mini",
    "api_extra_headers": {},
    "api_fallback_enabled": True,
    # Ordered fallback routes, each {"provider","api_key","base_url","model","api_extra_headers"}.
    "api_routes": [],

    # Transcription
    "transcription_backend": "auto",  # "auto", "openai", "local", "mock"
    "whisper_model": "whisper-1",
    "transcription_base_url": "",
    "transcription_language": "en",
    "local_whisper_model_size": "tiny",
    "local_whisper_device": "cpu",
    "transcription_max_retries": 3,
    "transcription_min_file_bytes": 5000,
    "chunk_duration_ms": 5000,

    # Processing queue
    "max_concurrent": 2,
    "max_queue_size": 10,

    # Voice activity detection
    "vad_enabled": True,
    "enable_quick_vad": True,
    "energy_threshold": 0.003,
    "min_speech_duration_ms": 200,
    "silence_threshold": 0.001,

    # Suggestions
    "suggestion_min_batch_chars": 30,
    "suggestion_sufficient_chars": 100,
    "suggestion_pause_seconds": 5.0,
    "pause_check_interval_seconds": 2.0,
    "max_context_length": 10,

    # Segment cleanup
    "delete_after_transcription": True,
    "keep_for_playback": False,

    "verbose_logging": False,
}


def _get_config_path() -> Path:
    configured = os.environ.get("MEETING_COPILOT_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()

    base_dir = os.environ.get("APPDATA") or str(Path.home())
    config_dir = Path(base_dir) / "Meeting Copilot"
    return (config_dir / "settings.json").resolve()


def _get_data_dir() -> Path:
    configured = os.environ.get("MEETING_COPILOT_DATA_DIR")
    if configured:
        data_dir = Path(configured).expanduser()
    else:
        base_dir = os.environ.get("APPDATA") or str(Path.home())
        data_dir = Path(base_dir) / "Meeting Copilot" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


_CONFIG_PATH = _get_config_path()
_DATA_DIR = _get_data_dir()


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except ValueError:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except (TypeError, ValueError, OverflowError):
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        out = float(default)
    if out != out:  # NaN
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_choice(value: object, choices: set[str], default: str) -> str:
    s = _coerce_str(value, default).lower()
    return s if s in choices else default


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    base_url = _coerce_str(value.get("base_url"), "", max_len=2048)
    model = _coerce_str(value.get("model"), "", max_len=512)
    if not base_url or not model:
        return None
    return {
        "provider": _coerce_str(value.get("provider"), "custom", max_len=64).lower() or "custom",
        "api_key": _coerce_str(value.get("api_key"), "", max_len=4096),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(value.get("api_extra_headers")),
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def _sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if isinstance(raw, dict):
        src.update(raw)

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048) or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(src.get("api_fallback_enabled"), bool(DEFAULT_CONFIG["api_fallback_enabled"]))
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))

    out["transcription_backend"] = _coerce_choice(
        src.get("transcription_backend"),
        {"auto", "openai", "local", "mock"},
        str(DEFAULT_CONFIG["transcription_backend"]),
    )
    out["whisper_model"] = _coerce_str(src.get("whisper_model"), "whisper-1", max_len=128) or "whisper-1"
    out["transcription_base_url"] = _coerce_str(src.get("transcription_base_url"), "", max_len=2048)
    out["transcription_language"] = _coerce_str(src.get("transcription_language"), "en", max_len=16).lower()
    out["local_whisper_model_size"] = _coerce_choice(
        src.get("local_whisper_model_size"),
        {"tiny", "base", "small", "medium", "large-v3"},
        str(DEFAULT_CONFIG["local_whisper_model_size"]),
    )
    device = _coerce_str(src.get("local_whisper_device"), "cpu").lower()
    out["local_whisper_device"] = "cuda" if device in ("gpu", "cuda") else "cpu"
    out["transcription_max_retries"] = _coerce_int_in_range(src.get("transcription_max_retries"), 3, min_v=0, max_v=10)
    out["transcription_min_file_bytes"] = _coerce_int_in_range(src.get("transcription_min_file_bytes"), 5000, min_v=0, max_v=1_000_000)
    out["chunk_duration_ms"] = _coerce_int_in_range(src.get("chunk_duration_ms"), 5000, min_v=500, max_v=60_000)

    out["max_concurrent"] = _coerce_int_in_range(src.get("max_concurrent"), 2, min_v=1, max_v=16)
    out["max_queue_size"] = _coerce_int_in_range(src.get("max_queue_size"), 10, min_v=1, max_v=500)

    out["vad_enabled"] = _coerce_bool(src.get("vad_enabled"), bool(DEFAULT_CONFIG["vad_enabled"]))
    out["enable_quick_vad"] = _coerce_bool(src.get("enable_quick_vad"), bool(DEFAULT_CONFIG["enable_quick_vad"]))
    out["energy_threshold"] = _coerce_float_in_range(src.get("energy_threshold"), 0.003, min_v=0.0, max_v=1.0)
    out["min_speech_duration_ms"] = _coerce_int_in_range(src.get("min_speech_duration_ms"), 200, min_v=0, max_v=10_000)
    out["silence_threshold"] = _coerce_float_in_range(src.get("silence_threshold"), 0.001, min_v=0.0, max_v=1.0)

    out["suggestion_min_batch_chars"] = _coerce_int_in_range(src.get("suggestion_min_batch_chars"), 30, min_v=1, max_v=2000)
    # Sufficient size can never be below the minimum batch size.
    out["suggestion_sufficient_chars"] = _coerce_int_in_range(
        src.get("suggestion_sufficient_chars"),
        100,
        min_v=int(out["suggestion_min_batch_chars"]),
        max_v=10_000,
    )
    out["suggestion_pause_seconds"] = _coerce_float_in_range(src.get("suggestion_pause_seconds"), 5.0, min_v=0.5, max_v=120.0)
    out["pause_check_interval_seconds"] = _coerce_float_in_range(src.get("pause_check_interval_seconds"), 2.0, min_v=0.1, max_v=60.0)
    out["max_context_length"] = _coerce_int_in_range(src.get("max_context_length"), 10, min_v=1, max_v=100)

    out["delete_after_transcription"] = _coerce_bool(src.get("delete_after_transcription"), bool(DEFAULT_CONFIG["delete_after_transcription"]))
    out["keep_for_playback"] = _coerce_bool(src.get("keep_for_playback"), bool(DEFAULT_CONFIG["keep_for_playback"]))
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), bool(DEFAULT_CONFIG["verbose_logging"]))
    return out


def _resolve_api_key(cfg: dict) -> str:
    key = str(cfg.get("api_key") or "").strip()
    return key or os.environ.get("OPENAI_API_KEY", "").strip()


def load_config() -> dict:
    loaded: dict = {}
    try:
        if _CONFIG_PATH.is_file():
            data = json.loads(_CONFIG_PATH.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    return _sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict) -> None:
    clean_cfg = _sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        _CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = _CONFIG_PATH.with_suffix(_CONFIG_PATH.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(_CONFIG_PATH)
    except Exception:
        logger.exception("Failed to save settings file")
        raise


def _apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    important_logger.setLevel(logging.INFO)

    # In default mode, keep noisy libraries to warnings/errors only.
    noisy_level = logging.DEBUG if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("debug" if verbose else "warning"),
    )


config = load_config()
_apply_runtime_log_levels(config)


# ============================================
# PIPELINE WIRING
# ============================================

pipeline: PipelineOrchestrator | None = None
segment_store = SegmentStore(_DATA_DIR / "segments")


def _llm_signature(cfg: dict) -> dict:
    return {
        "api_key": _resolve_api_key(cfg),
        "base_url": str(cfg.get("base_url") or ""),
        "model": str(cfg.get("model") or ""),
        "api_extra_headers": _coerce_headers(cfg.get("api_extra_headers")),
        "fallback_enabled": bool(cfg.get("api_fallback_enabled", True)),
        "routes": list(cfg.get("api_routes") or []),
    }


def build_llm_client(cfg: dict) -> LLMClient | None:
    signature = _llm_signature(cfg)
    fallback_routes = signature["routes"] if signature["fallback_enabled"] else []
    try:
        client = LLMClient(
            api_key=signature["api_key"],
            base_url=signature["base_url"],
            model=signature["model"],
            default_headers=signature["api_extra_headers"],
            fallback_routes=fallback_routes,
            failover_enabled=signature["fallback_enabled"],
        )
    except ValueError:
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            mode="mock-suggestions",
        )
        return None
    client.set_config_signature(signature)
    log_important(
        "llm.configured",
        model=client.model,
        base_url=client.base_url,
        endpoints=len(client.endpoints),
        fallback_enabled=signature["fallback_enabled"],
    )
    return client


def build_transcription_backend(cfg: dict):
    choice = str(cfg.get("transcription_backend") or "auto")
    api_key = _resolve_api_key(cfg)
    language = str(cfg.get("transcription_language") or "") or None

    if choice == "auto":
        choice = "openai" if api_key else "mock"
    if choice == "openai" and not api_key:
        logger.warning("OpenAI transcription selected but no API key is configured; using mock transcription.")
        choice = "mock"

    if choice == "openai":
        backend = OpenAIWhisperBackend(
            api_key,
            base_url=str(cfg.get("transcription_base_url") or "") or None,
            model=str(cfg.get("whisper_model") or "whisper-1"),
            language=language,
        )
    elif choice == "local":
        backend = LocalWhisperBackend(
            model_size=str(cfg.get("local_whisper_model_size") or "tiny"),
            device=str(cfg.get("local_whisper_device") or "cpu"),
            language=language,
        )
    else:
        backend = MockTranscriptionBackend()

    log_important("transcription.backend", backend=backend.name, language=language)
    return backend


def _pipeline_options_from_config(cfg: dict) -> PipelineOptions:
    return PipelineOptions(
        vad_enabled=bool(cfg["vad_enabled"]),
        enable_quick_vad=bool(cfg["enable_quick_vad"]),
        delete_after_transcription=bool(cfg["delete_after_transcription"]),
        keep_for_playback=bool(cfg["keep_for_playback"]),
        pause_check_interval_s=float(cfg["pause_check_interval_seconds"]),
    )


def build_pipeline(cfg: dict) -> PipelineOrchestrator:
    transcription = TranscriptionGateway(
        build_transcription_backend(cfg),
        max_retries=int(cfg["transcription_max_retries"]),
        min_file_bytes=int(cfg["transcription_min_file_bytes"]),
        chunk_duration_ms=int(cfg["chunk_duration_ms"]),
    )
    return PipelineOrchestrator(
        vad=VoiceActivityAnalyzer(
            energy_threshold=float(cfg["energy_threshold"]),
            min_speech_duration_ms=float(cfg["min_speech_duration_ms"]),
            silence_threshold=float(cfg["silence_threshold"]),
        ),
        transcription=transcription,
        batcher=SuggestionBatcher(
            min_batch_size=int(cfg["suggestion_min_batch_chars"]),
            sufficient_size=int(cfg["suggestion_sufficient_chars"]),
            pause_threshold_s=float(cfg["suggestion_pause_seconds"]),
        ),
        suggestions=SuggestionService(
            build_llm_client(cfg),
            max_context_length=int(cfg["max_context_length"]),
        ),
        history=MeetingHistory(_DATA_DIR / "meetings"),
        queue=ProcessingQueue(
            max_concurrent=int(cfg["max_concurrent"]),
            max_queue_size=int(cfg["max_queue_size"]),
        ),
        options=_pipeline_options_from_config(cfg),
    )


def get_pipeline() -> PipelineOrchestrator:
    global pipeline
    if pipeline is None:
        pipeline = build_pipeline(config)
    return pipeline


def apply_config_to_pipeline(cfg: dict, prev_cfg: dict | None = None) -> None:
    """Hot-reload settings into the running pipeline."""
    p = get_pipeline()
    p.update_settings(
        vad_enabled=bool(cfg["vad_enabled"]),
        enable_quick_vad=bool(cfg["enable_quick_vad"]),
        energy_threshold=float(cfg["energy_threshold"]),
        min_speech_duration_ms=float(cfg["min_speech_duration_ms"]),
        silence_threshold=float(cfg["silence_threshold"]),
        max_concurrent=int(cfg["max_concurrent"]),
        max_queue_size=int(cfg["max_queue_size"]),
        delete_after_transcription=bool(cfg["delete_after_transcription"]),
        keep_for_playback=bool(cfg["keep_for_playback"]),
        pause_check_interval_s=float(cfg["pause_check_interval_seconds"]),
    )
    p.batcher.min_batch_size = int(cfg["suggestion_min_batch_chars"])
    p.batcher.sufficient_size = int(cfg["suggestion_sufficient_chars"])
    p.batcher.pause_threshold_s = float(cfg["suggestion_pause_seconds"])
    p.transcription.max_retries = int(cfg["transcription_max_retries"])
    p.transcription.min_file_bytes = int(cfg["transcription_min_file_bytes"])
    p.transcription.chunk_duration_ms = int(cfg["chunk_duration_ms"])
    p.suggestions.set_max_context_length(int(cfg["max_context_length"]))

    current = p.suggestions.llm_client
    current_sig = current.get_config_signature() if current is not None else None
    if current_sig != _llm_signature(cfg):
        p.suggestions.llm_client = build_llm_client(cfg)

    transcription_keys = (
        "transcription_backend",
        "whisper_model",
        "transcription_base_url",
        "transcription_language",
        "local_whisper_model_size",
        "local_whisper_device",
        "api_key",
    )
    if prev_cfg is None or any(cfg.get(k) != prev_cfg.get(k) for k in transcription_keys):
        p.transcription.backend = build_transcription_backend(cfg)


# ============================================
# APP
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Server starting...")
    log_important("server.starting", data_dir=str(_DATA_DIR))
    get_pipeline()
    yield
    logger.info("Shutting down...")
    log_important("server.stopping")
    if pipeline is not None:
        await pipeline.shutdown()
    removed = segment_store.cleanup()
    if removed:
        log_important("segments.cleanup", removed=removed)


app = FastAPI(lifespan=lifespan)


async def _ws_send_json(
    websocket: WebSocket,
    payload: dict,
    send_lock: asyncio.Lock | None = None,
) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


class WebSocketSink:
    """Pushes pipeline events to one websocket client as {"type": <event>, ...payload}."""

    def __init__(self, websocket: WebSocket, send_lock: asyncio.Lock | None = None):
        self.websocket = websocket
        self.send_lock = send_lock or asyncio.Lock()

    async def emit(self, event: str, payload: dict) -> None:
        ok = await _ws_send_json(self.websocket, {"type": event, **payload}, self.send_lock)
        if not ok:
            log_important(
                "ws.send.failed",
                level=logging.WARNING,
                dedupe_key=event,
                dedupe_window_s=5.0,
                event=event,
            )


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/api/health")
def api_health():
    p = get_pipeline()
    return {"status": "ok", "state": p.state}


@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": config}


@app.post("/api/settings")
async def update_settings(request: Request):
    global config
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)

    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)

    try:
        _update_config(data)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)
    return {"status": "ok", "config": config}


def _update_config(data: dict) -> list[str]:
    global config
    prev_config = dict(config)
    new_config = _sanitize_config_values(data, base=config)
    save_config(new_config)
    config = new_config

    _apply_runtime_log_levels(config)
    apply_config_to_pipeline(config, prev_config)
    changed = [k for k in config.keys() if config.get(k) != prev_config.get(k)]
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )
    return changed


@app.get("/api/stats")
def api_stats():
    p = get_pipeline()
    return {"status": "ok", "stats": p.get_stats().to_dict(), "vad": p.vad.get_config()}


@app.get("/api/meetings")
def api_list_meetings():
    return {"status": "ok", "meetings": get_pipeline().history.list_meetings()}


@app.get("/api/meetings/{meeting_id}")
def api_get_meeting(meeting_id: str):
    meeting = get_pipeline().history.get_meeting(meeting_id)
    if meeting is None:
        return JSONResponse({"status": "error", "message": "Meeting not found"}, status_code=404)
    return {"status": "ok", "meeting": meeting.to_dict()}


# ============================================
# WEBSOCKET
# ============================================

async def handle_control_message(msg: dict, sink: WebSocketSink) -> dict | None:
    """Dispatch one JSON control message; returns a reply payload or None."""
    p = get_pipeline()
    msg_type = str(msg.get("type") or "").strip()

    if msg_type == "start_recording":
        meeting_id = await p.start_session(sink)
        log_important("session.start", meeting_id=meeting_id)
        return {"type": "recording-started", "meeting_id": meeting_id}

    if msg_type == "stop_recording":
        summary = await p.stop_session()
        if summary is None:
            return {"type": "status", "message": "Not recording"}
        stats = summary["stats"]
        log_important(
            "session.stop",
            meeting_id=(summary.get("meeting") or {}).get("meeting_id"),
            processed=stats["total_processed"],
            dropped=stats["total_dropped"],
            errors=stats["total_errors"],
            cost=f"{stats['total_cost']:.4f}",
        )
        return None

    if msg_type == "update_settings":
        settings = msg.get("settings")
        if not isinstance(settings, dict):
            return {"type": "error", "message": "settings must be an object"}
        try:
            changed = _update_config(settings)
        except Exception as e:
            return {"type": "error", "message": f"Failed to save settings: {e}"}
        return {"type": "settings-updated", "changed": changed, "config": config}

    if msg_type == "clear_context":
        p.clear_context()
        return {"type": "context-cleared"}

    if msg_type == "get_stats":
        return {"type": "stats", **p.get_stats().to_dict()}

    if msg_type == "audio_segment":
        path = _coerce_str(msg.get("path"), "")
        if not path and msg.get("error") is None:
            return {"type": "error", "message": "audio_segment requires a path"}
        size = msg.get("size")
        p.handle_segment(path, size=int(size) if isinstance(size, (int, float)) else None, error=msg.get("error"))
        return None

    return {"type": "error", "message": f"Unknown message type: {msg_type or '-'}"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")
    log_important("ws.connected")

    send_lock = asyncio.Lock()
    sink = WebSocketSink(websocket, send_lock)
    p = get_pipeline()
    await _ws_send_json(websocket, {"type": "status", "state": p.state, "config": config}, send_lock)

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break

            data_bytes = message.get("bytes")
            if data_bytes:
                if not p.is_recording:
                    continue
                try:
                    segment = segment_store.write(data_bytes)
                except OSError as e:
                    logger.exception("Failed to store uploaded segment")
                    await sink.emit("error", {"message": f"Failed to store audio segment: {e}"})
                    continue
                p.handle_segment(segment.path, size=segment.size_bytes)
                continue

            text = message.get("text")
            if not text:
                continue
            try:
                msg = json.loads(text)
            except ValueError:
                await _ws_send_json(websocket, {"type": "error", "message": "Invalid JSON"}, send_lock)
                continue
            if not isinstance(msg, dict):
                await _ws_send_json(websocket, {"type": "error", "message": "Message must be an object"}, send_lock)
                continue

            reply = await handle_control_message(msg, sink)
            if reply is not None:
                await _ws_send_json(websocket, reply, send_lock)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket handler error")
    finally:
        logger.info("WebSocket disconnected")
        log_important("ws.disconnected")
        if p.is_recording and p.has_sink(sink):
            with suppress(Exception):
                await p.stop_session()
        p.detach_sink(sink)


# ============================================
# SERVER STARTUP
# ============================================

def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    server_host = os.environ.get("MEETING_COPILOT_HOST", "127.0.0.1")
    preferred_port = int(os.environ.get("MEETING_COPILOT_PORT", "8000"))
    server_port = find_available_port(server_host, preferred_port)
    logger.info(f"Starting server on http://{server_host}:{server_port}")
    try:
        start_server(server_host, server_port)
    except KeyboardInterrupt:
        logger.info("Stopping...")
