"""
Recommendation oracle client - trade plan requests to an LLM.

Sends a market/account snapshot to the configured model and returns its raw
JSON answer. Validation of the answer lives in ai.schemas.parse_recommendation;
transport and provider errors propagate so the cycle can record them and fall
back to HOLD.
"""

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com"
DEFAULT_MODELS = {
    "deepseek": "deepseek-chat",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-latest",
}
SUPPORTED_PROVIDERS = tuple(DEFAULT_MODELS)

SYSTEM_PROMPT = """You are a disciplined perpetual-futures trader managing ONE instrument.
You receive a snapshot with recent candles, indicators, the account (margin,
open position, protective stop) and a short memory of the previous trade.

Choose exactly one action:
- ENTER_LONG / ENTER_SHORT: open a position (only when there is no position)
- EXIT_POSITION: close the open position
- ADJUST_STOP: move the protective stop to "price"
- HOLD: do nothing

Position size and stop placement on entry are computed by the risk engine;
do not propose sizes.

RESPONSE FORMAT (JSON only):
{
  "action": "HOLD",
  "orderType": "market",
  "price": null,
  "reason": "short rationale",
  "notes": "observations to remember next cycle"
}
"orderType" is "market" or "limit". "price" is required for limit entries and
for ADJUST_STOP."""


class RecommendationClient:
    """
    Client for getting a single trade plan from an LLM.

    Responsibilities:
    - Build the prompt from the oracle snapshot
    - Request JSON output from the provider
    - Return the decoded object (no validation here)
    """

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: Optional[str] = None,
        timeout_s: float = 30.0,
        max_tokens: int = 800,
        temperature: float = 0.2,
    ):
        provider = (provider or "").lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")
        if not api_key:
            raise ValueError(f"Missing API key for provider {provider}")

        self.provider = provider
        self.model = model or DEFAULT_MODELS[provider]
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature

        # Lazy-import provider SDKs. SDK retries are off so timeout_s bounds the whole call.
        if provider == "anthropic":
            import anthropic
            self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout_s, max_retries=0)
        else:
            import openai
            base_url = DEEPSEEK_BASE_URL if provider == "deepseek" else None
            self.client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=0)

    def __repr__(self) -> str:
        return f"RecommendationClient(provider={self.provider!r}, model={self.model!r})"

    def recommend(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """
        Ask the model for a trade plan.

        Args:
            snapshot: Oracle snapshot from ai.snapshot_builder

        Returns:
            Decoded JSON object (unvalidated)

        Raises:
            ValueError: Model returned something that is not a JSON object
            Provider SDK errors (timeouts, HTTP failures) propagate unchanged
        """
        user_msg = self._build_user_message(snapshot)

        if self.provider == "anthropic":
            content = self._call_anthropic(user_msg)
        else:
            content = self._call_openai(user_msg)

        data = decode_json_object(content)
        logger.info(f"Oracle ({self.provider}/{self.model}) returned action={data.get('action')!r}")
        return data

    def _build_user_message(self, snapshot: Dict[str, Any]) -> str:
        account = snapshot.get("account", {})
        indicators = snapshot.get("indicators", {})
        return f"""MARKET SNAPSHOT:

Instrument: {snapshot.get('symbol')} (priced from {snapshot.get('pricing_symbol')})
Lifecycle state: {snapshot.get('lifecycle_state')}
Available margin: ${account.get('available_margin', 0):.2f}

INDICATORS:
{json.dumps(indicators, sort_keys=True)}

RECENT CANDLES (oldest first):
{self._format_candles(snapshot.get('candles', []))}

ACCOUNT:
{json.dumps(account, sort_keys=True, default=str)}

MEMORY:
{json.dumps(snapshot.get('memory', {}), sort_keys=True, default=str)}

Return JSON only."""

    @staticmethod
    def _format_candles(candles: List[Dict[str, Any]]) -> str:
        if not candles:
            return "(none)"
        return "\n".join(
            f"  {c['time']}: O={c['open']} H={c['high']} L={c['low']} C={c['close']} V={c['volume']}"
            for c in candles
        )

    def _call_openai(self, user_msg: str) -> str:
        """Call an OpenAI-compatible chat completion endpoint (OpenAI or DeepSeek)."""
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_msg},
            ],
            response_format={"type": "json_object"},
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return response.choices[0].message.content or ""

    def _call_anthropic(self, user_msg: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": user_msg}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return response.content[0].text


def decode_json_object(content: str) -> Dict[str, Any]:
    """Decode a model answer, tolerating markdown code fences."""
    text = (content or "").strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Oracle output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Oracle output is not a JSON object: {type(data).__name__}")
    return data


# ─── Mock Client for Testing ───────────────────────────────────────────────

class MockRecommendationClient:
    """Mock client that returns pre-configured answers (or raises) for testing."""

    def __init__(self, responses: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [{"action": "HOLD", "reason": "mock"}])
        self.error = error
        self.call_count = 0
        self.snapshots: List[Dict[str, Any]] = []

    def recommend(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        self.call_count += 1
        self.snapshots.append(snapshot)
        if self.error is not None:
            raise self.error
        # Last response repeats once the queue is exhausted
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


# ─── Factory ───────────────────────────────────────────────────────────────

def create_recommendation_client(
    provider: str,
    api_key: str,
    model: Optional[str] = None,
    timeout_s: float = 30.0,
    **kwargs
):
    """
    Factory for creating recommendation clients.

    Args:
        provider: "deepseek", "openai", "anthropic" or "mock"
        api_key: API key (ignored for "mock")
        model: Model identifier (provider default when omitted)
        timeout_s: Request timeout ceiling

    Returns:
        RecommendationClient or MockRecommendationClient
    """
    if (provider or "").lower() == "mock":
        return MockRecommendationClient(**kwargs)
    return RecommendationClient(
        provider=provider,
        api_key=api_key,
        model=model,
        timeout_s=timeout_s,
        **kwargs
    )
