"""
Token usage snapshots.

Normalizes the loosely shaped usage payloads returned by the gateway into a
fixed structure recorded alongside usage charges.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional


def _to_count(value: Any) -> int:
    """Nonnegative integer token count, 0 for anything unusable."""
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(math.floor(number + 0.5))


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one completion.

    Contains exact token counts as reported upstream, without estimation.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0
    total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Reported total, or input + output when the gateway omits it."""
        if self.total:
            return self.total
        return self.input_tokens + self.output_tokens

    @property
    def has_values(self) -> bool:
        return any((
            self.input_tokens,
            self.output_tokens,
            self.cached_input_tokens,
            self.reasoning_tokens,
            self.total_tokens,
        ))

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "TokenUsage":
        """Build a snapshot from a gateway or OpenAI-style usage mapping.

        Understands both camelCase gateway keys (inputTokens, outputTokens,
        inputTokenDetails.cacheReadTokens, ...) and OpenAI keys
        (prompt_tokens, completion_tokens, prompt_tokens_details, ...).
        """
        usage = dict(raw or {})
        input_details = usage.get("inputTokenDetails") or usage.get("prompt_tokens_details") or {}
        output_details = usage.get("outputTokenDetails") or usage.get("completion_tokens_details") or {}

        input_tokens = _to_count(usage.get("inputTokens", usage.get("prompt_tokens")))
        output_tokens = _to_count(usage.get("outputTokens", usage.get("completion_tokens")))
        total = _to_count(usage.get("totalTokens", usage.get("total_tokens")))

        cached = input_details.get("cacheReadTokens", input_details.get("cached_tokens"))
        if cached is None:
            cached = usage.get("cachedInputTokens")
        reasoning = output_details.get("reasoningTokens", output_details.get("reasoning_tokens"))
        if reasoning is None:
            reasoning = usage.get("reasoningTokens")

        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=_to_count(cached),
            reasoning_tokens=_to_count(reasoning),
            total=total or None
        )

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data.pop("total")
        data["total_tokens"] = self.total_tokens
        return data
