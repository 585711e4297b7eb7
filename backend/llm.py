from openai import AsyncOpenAI
import logging
import json
from typing import Any

logger = logging.getLogger(__name__)


class LLMClient:
    """OpenAI-compatible chat client with ordered failover across endpoints."""

    def __init__(
        self,
        api_key,
        base_url="https://api.openai.com/v1",
        model="gpt-4o-mini",
        default_headers=None,
        *,
        fallback_routes=None,
        failover_enabled: bool = True,
    ):
        self.failover_enabled = bool(failover_enabled)
        self._active_endpoint_index = 0
        self.endpoints = []
        self._config_signature = None

        self._add_endpoint(
            {
                "provider": "primary",
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": default_headers,
            }
        )
        for route in (fallback_routes or []):
            self._add_endpoint(route)

        if not self.endpoints:
            raise ValueError("LLMClient requires at least one endpoint with an API key.")

        self._refresh_active_fields()

    def set_config_signature(self, sig) -> None:
        self._config_signature = sig

    def get_config_signature(self):
        return self._config_signature

    def _add_endpoint(self, route: dict) -> None:
        if not isinstance(route, dict):
            return
        api_key = str(route.get("api_key") or "").strip()
        base_url = str(route.get("base_url") or "").strip()
        model = str(route.get("model") or "").strip()
        if not api_key or not base_url or not model:
            return

        headers = route.get("api_extra_headers", route.get("default_headers"))
        if not isinstance(headers, dict):
            headers = {}
        provider = str(route.get("provider") or "custom").strip().lower() or "custom"

        # First occurrence of a connection tuple wins.
        for cur in self.endpoints:
            if (
                cur["base_url"] == base_url
                and cur["model"] == model
                and cur["api_key"] == api_key
                and cur["api_extra_headers"] == headers
            ):
                return

        self.endpoints.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": headers,
                "client": AsyncOpenAI(api_key=api_key, base_url=base_url, default_headers=headers),
            }
        )

    def _refresh_active_fields(self) -> None:
        idx = self._active_endpoint_index
        if idx < 0 or idx >= len(self.endpoints):
            idx = 0
            self._active_endpoint_index = 0
        ep = self.endpoints[idx]
        self.base_url = ep["base_url"]
        self.model = ep["model"]
        self.client = ep["client"]

    async def chat_create(self, **kwargs):
        errors = []
        attempt_count = len(self.endpoints) if self.failover_enabled else 1
        for idx in range(attempt_count):
            ep = self.endpoints[idx]
            req = dict(kwargs)
            req["model"] = ep["model"]
            try:
                resp = await ep["client"].chat.completions.create(**req)
            except Exception as e:
                errors.append(f"#{idx + 1} {ep['provider']} {ep['base_url']} ({ep['model']}): {e}")
                if idx + 1 < attempt_count:
                    logger.warning(
                        "LLM endpoint failed, trying fallback #%s: %s (%s) -> %s",
                        idx + 2,
                        ep["provider"],
                        ep["base_url"],
                        e,
                    )
                continue

            prev_idx = self._active_endpoint_index
            self._active_endpoint_index = idx
            self._refresh_active_fields()
            if idx != prev_idx:
                logger.warning("LLM failover selected endpoint #%s (%s %s)", idx + 1, ep["provider"], ep["base_url"])
            return resp

        raise RuntimeError("All configured LLM APIs failed. " + " | ".join(errors))


def extract_chat_content(response_obj: Any) -> str:
    """Pull the first choice's text out of an SDK object or a plain dict."""

    def _from_content(content_val: Any) -> str:
        if isinstance(content_val, str):
            return content_val
        if not isinstance(content_val, list):
            return ""
        parts: list[str] = []
        for item in content_val:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "\n".join(p for p in parts if p).strip()

    choices = response_obj.get("choices") if isinstance(response_obj, dict) else getattr(response_obj, "choices", None)
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    msg = first.get("message") if isinstance(first, dict) else getattr(first, "message", None)
    content_val = msg.get("content") if isinstance(msg, dict) else getattr(msg, "content", None)
    return _from_content(content_val)


def extract_usage_tokens(response_obj: Any) -> tuple[int, int]:
    usage = response_obj.get("usage") if isinstance(response_obj, dict) else getattr(response_obj, "usage", None)
    if usage is None:
        return 0, 0

    def _get(name: str) -> int:
        val = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, 0)
        try:
            return max(0, int(val or 0))
        except (TypeError, ValueError):
            return 0

    return _get("prompt_tokens"), _get("completion_tokens")


def parse_json_object(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str):
        return {}

    s = value.strip()
    if not s:
        return {}

    try:
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else {}
    except ValueError:
        pass

    # Models sometimes wrap the object in prose or code fences.
    start = s.find("{")
    end = s.rfind("}")
    if start != -1 and end > start:
        try:
            obj = json.loads(s[start : end + 1])
            return obj if isinstance(obj, dict) else {}
        except ValueError:
            return {}
    return {}


def coerce_string_list(value: Any) -> list[str]:
    """Best-effort normalize model output into a list of strings (avoid iterating over characters)."""
    if value is None:
        return []

    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if item is None:
                continue
            s = item.strip() if isinstance(item, str) else str(item).strip()
            if s:
                out.append(s)
        return out

    if isinstance(value, str):
        s = value.strip()
        if not s:
            return []
        if s.startswith("[") and s.endswith("]"):
            try:
                decoded = json.loads(s)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                return coerce_string_list(decoded)

        lines: list[str] = []
        for line in s.splitlines():
            ln = line.strip().lstrip("-* \t").strip()
            if ln:
                lines.append(ln)
        return lines or [s]

    s = str(value).strip()
    return [s] if s else []
