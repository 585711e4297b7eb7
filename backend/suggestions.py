import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from backend.llm import LLMClient, coerce_string_list, extract_chat_content, extract_usage_tokens, parse_json_object

logger = logging.getLogger(__name__)

SUGGESTION_SYSTEM_PROMPT = """You are an AI assistant helping during a live meeting. Provide CONCISE, ACTIONABLE suggestions:
1. 2-3 relevant questions to deepen the discussion
2. 1-2 related resources (realistic URLs)
3. Action items if any were mentioned
4. 1-2 key insights

Keep it brief. Respond with a JSON object only:
{
  "questions": ["q1", "q2"],
  "resources": [{"title": "Title", "url": "https://...", "description": "desc"}],
  "actionItems": ["action1"],
  "insights": ["insight1"]
}"""


@dataclass
class Suggestions:
    questions: list[str] = field(default_factory=list)
    resources: list[dict] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "questions": list(self.questions),
            "resources": [dict(r) for r in self.resources],
            "action_items": list(self.action_items),
            "insights": list(self.insights),
            "metadata": dict(self.metadata),
        }


def _coerce_resources(value: Any) -> list[dict]:
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return [{"title": s, "url": "", "description": ""} for s in coerce_string_list(value)]

    out: list[dict] = []
    for item in value:
        if isinstance(item, dict):
            title = str(item.get("title") or "").strip()
            url = str(item.get("url") or "").strip()
            description = str(item.get("description") or "").strip()
            if title or url:
                out.append({"title": title or url, "url": url, "description": description})
        elif isinstance(item, str) and item.strip():
            out.append({"title": item.strip(), "url": "", "description": ""})
    return out


class SuggestionService:
    def __init__(
        self,
        llm_client: LLMClient | None = None,
        *,
        max_context_length: int = 10,
        context_window: int = 3,
        input_cost_per_million: float = 0.15,
        output_cost_per_million: float = 0.60,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ):
        self.llm_client = llm_client
        self.max_context_length = max(1, int(max_context_length))
        self.context_window = max(1, int(context_window))
        self.input_cost_per_million = float(input_cost_per_million)
        self.output_cost_per_million = float(output_cost_per_million)
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self._context: deque[str] = deque(maxlen=self.max_context_length)

        self.suggestion_count = 0
        self.total_cost = 0.0

    @property
    def is_mock(self) -> bool:
        return self.llm_client is None

    def rolling_context(self) -> list[str]:
        return list(self._context)

    def _mock_suggestions(self, started: float) -> Suggestions:
        duration_ms = (time.monotonic() - started) * 1000.0
        logger.info("Mock suggestions generated (test mode)")
        return Suggestions(
            questions=["[TEST MODE] Audio capture is working!"],
            resources=[
                {
                    "title": "Audio Test Successful",
                    "url": "#",
                    "description": "Audio is being captured. Configure an API key to enable AI suggestions.",
                }
            ],
            action_items=["Set OPENAI_API_KEY (or api_key in settings) to enable AI features"],
            insights=["Audio capture pipeline is functioning"],
            metadata={
                "timestamp": datetime.now().isoformat(),
                "duration_ms": duration_ms,
                "cost": 0.0,
                "tokens": {"input": 0, "output": 0, "total": 0},
            },
        )

    async def generate_suggestions(self, batch_text: str) -> Suggestions | None:
        text = (batch_text or "").strip()
        if len(text) < 10:
            return None

        started = time.monotonic()
        if self.llm_client is None:
            return self._mock_suggestions(started)

        self._context.append(text)
        recent = " ".join(list(self._context)[-self.context_window :])

        resp = await self.llm_client.chat_create(
            messages=[
                {"role": "system", "content": SUGGESTION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Context: {recent}\n\nLatest: {text}\n\nProvide quick suggestions.",
                },
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
        )

        data = parse_json_object(extract_chat_content(resp))
        if not data:
            logger.warning("Suggestion response was not a JSON object; returning empty suggestions")

        input_tokens, output_tokens = extract_usage_tokens(resp)
        cost = (
            input_tokens * self.input_cost_per_million / 1_000_000
            + output_tokens * self.output_cost_per_million / 1_000_000
        )
        self.total_cost += cost
        self.suggestion_count += 1
        duration_ms = (time.monotonic() - started) * 1000.0

        logger.info(
            "Suggestions generated (%.0fms, tokens=%s, cost=$%.6f)",
            duration_ms,
            input_tokens + output_tokens,
            cost,
        )
        return Suggestions(
            questions=coerce_string_list(data.get("questions")),
            resources=_coerce_resources(data.get("resources")),
            action_items=coerce_string_list(data.get("actionItems", data.get("action_items"))),
            insights=coerce_string_list(data.get("insights")),
            metadata={
                "timestamp": datetime.now().isoformat(),
                "duration_ms": duration_ms,
                "cost": cost,
                "tokens": {
                    "input": input_tokens,
                    "output": output_tokens,
                    "total": input_tokens + output_tokens,
                },
            },
        )

    def set_max_context_length(self, max_context_length: int) -> None:
        """Resize the rolling context, keeping the most recent batches."""
        self.max_context_length = max(1, int(max_context_length))
        self._context = deque(self._context, maxlen=self.max_context_length)

    def clear_context(self) -> None:
        self._context.clear()
        logger.info("Conversation context cleared")

    def get_stats(self) -> dict:
        return {
            "count": self.suggestion_count,
            "total_cost": self.total_cost,
            "average_cost": (self.total_cost / self.suggestion_count) if self.suggestion_count else 0.0,
            "context_length": len(self._context),
        }

    def reset_stats(self) -> None:
        self.suggestion_count = 0
        self.total_cost = 0.0
