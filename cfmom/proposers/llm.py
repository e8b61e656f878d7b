"""LLM-backed proposers.

AgentCaller is the shared Anthropic client; LlmProposer asks a model for
evidence-backed signals and parses its JSON reply into Signals.
"""

from __future__ import annotations

import asyncio
import json
import re
import sys
from datetime import datetime, timezone
from typing import Any

import anthropic
from anthropic._exceptions import OverloadedError

from cfmom.config import Settings
from cfmom.contracts import EvidenceRef, ProposerState, Signal, TokenUsage
from cfmom.proposers.base import ProposerBase

# USD per million tokens
_PRICING: dict[str, dict[str, float]] = {
    "claude-opus-4-1": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-5": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5": {"input": 1.0, "output": 5.0},
}
_DEFAULT_PRICING = _PRICING["claude-sonnet-4-5"]

_FENCE = re.compile(r"```(?:json)?\s*\n(.*?)(?:\n```|$)", re.DOTALL)


def parse_json_reply(text: str, source: str) -> Any:
    """Decode the first JSON value in a model reply.

    Accepts bare JSON, a fenced block, or an object embedded in prose.
    Raises ValueError; replies cut off mid-value are reported as truncated.
    """
    body = text.strip()
    fenced = _FENCE.search(body)
    if fenced:
        body = fenced.group(1).strip()
    if not body:
        raise ValueError(f"Empty reply from {source}")

    if body[0] in "{[":
        start = 0
    else:
        start = body.find("{")
        if start == -1:
            start = body.find("[")
    if start == -1:
        raise ValueError(f"No JSON in reply from {source}: {text[:200]!r}")
    body = body[start:]

    try:
        value, _ = json.JSONDecoder().raw_decode(body)
    except json.JSONDecodeError as e:
        if not body.rstrip().endswith(("}", "]")):
            raise ValueError(
                f"Truncated JSON from {source} (likely hit max_tokens) "
                f"after {len(body)} chars: ...{text[-200:]}"
            ) from e
        raise ValueError(f"Failed to parse JSON from {source}: {e}\nRaw: {text[:500]}") from e
    return value


def _retry_delay(error: anthropic.APIError, attempt: int) -> float:
    if isinstance(error, (OverloadedError, anthropic.RateLimitError)):
        return float(2 ** (attempt + 1))
    return 1.0


def _describe(error: anthropic.APIError) -> str:
    if isinstance(error, OverloadedError):
        return "overloaded"
    if isinstance(error, anthropic.RateLimitError):
        return "rate_limit"
    return str(error)


def _response_text(response) -> str:
    return "".join(block.text for block in response.content if block.type == "text")


class AgentCaller:
    """Anthropic client shared by LLM proposers.

    A semaphore bounds in-flight requests. Transient API errors are retried
    with exponential backoff; if the primary model is still overloaded after
    the last retry and ``fallback_model`` is set, one request goes to the
    fallback. Every successful call is appended to the usage log.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_concurrent: int = 5,
        max_retries: int = 3,
        fallback_model: str | None = None,
    ) -> None:
        self.model = model
        self.fallback_model = fallback_model
        self.max_retries = max_retries
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._slots = asyncio.Semaphore(max_concurrent)
        self._usage: list[TokenUsage] = []

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> AgentCaller:
        return cls(
            api_key=settings.anthropic_api_key,
            model=settings.llm_model,
            max_concurrent=settings.llm_max_concurrent,
            **kwargs,
        )

    async def call(
        self,
        *,
        system: str,
        messages: list[dict],
        agent_name: str,
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ) -> tuple[str, TokenUsage]:
        """Returns (response_text, token_usage). Raises RuntimeError once retries are spent."""
        request = {
            "system": system,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        async with self._slots:
            model, response = await self._send(request, agent_name)
        return _response_text(response), self._record_usage(response, agent_name, model)

    async def call_json(self, *, agent_name: str, **kwargs: Any) -> tuple[Any, TokenUsage]:
        text, usage = await self.call(agent_name=agent_name, **kwargs)
        return parse_json_reply(text, agent_name), usage

    async def _create(self, model: str, **request: Any) -> Any:
        return await self._client.messages.create(model=model, **request)

    async def _send(self, request: dict[str, Any], agent_name: str) -> tuple[str, Any]:
        last_error = "no attempts made"
        overloaded = False

        for attempt in range(self.max_retries):
            try:
                return self.model, await self._create(self.model, **request)
            except anthropic.APIError as e:
                overloaded = overloaded or isinstance(e, OverloadedError)
                last_error = _describe(e)
                if attempt == self.max_retries - 1:
                    break
                delay = _retry_delay(e, attempt)
                print(
                    f"WARNING: {self.model} {last_error} for {agent_name}, "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:g}s",
                    file=sys.stderr,
                )
                await asyncio.sleep(delay)

        if overloaded and self.fallback_model:
            print(
                f"WARNING: {self.model} still overloaded, "
                f"falling back to {self.fallback_model} for {agent_name}",
                file=sys.stderr,
            )
            try:
                return self.fallback_model, await self._create(self.fallback_model, **request)
            except anthropic.APIError as e:
                last_error = f"fallback ({self.fallback_model}) also failed: {e}"

        raise RuntimeError(f"AgentCaller failed after {self.max_retries} retries: {last_error}")

    def _record_usage(self, response, agent_name: str, model: str) -> TokenUsage:
        tokens_in = response.usage.input_tokens
        tokens_out = response.usage.output_tokens
        rates = _PRICING.get(model, _DEFAULT_PRICING)
        entry = TokenUsage(
            agent=agent_name,
            model=model,
            input_tokens=tokens_in,
            output_tokens=tokens_out,
            cost_usd=round((tokens_in * rates["input"] + tokens_out * rates["output"]) / 1e6, 6),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._usage.append(entry)
        return entry

    @property
    def usage_log(self) -> list[TokenUsage]:
        return list(self._usage)

    @property
    def total_tokens(self) -> int:
        return sum(u["input_tokens"] + u["output_tokens"] for u in self._usage)

    @property
    def total_cost(self) -> float:
        return sum(u["cost_usd"] for u in self._usage)


_SYSTEM_PROMPT = """\
You are {name}, one of several independent evaluators whose opinions are fused \
into a single decision. Only claims backed by evidence the caller can verify \
will count; unverifiable claims are discarded.

{instructions}

Respond with JSON only:
{{"signals": [{{"confidence": <0-1>, "facts": {{...}}, \
"evidence": [{{"kind": "...", "store": "...", "id": "...", "content_hash": "<optional sha256>"}}], \
"early_exit": "<optional classification when the case is conclusive>"}}]}}
Return {{"signals": []}} if you have nothing to report."""


class LlmProposer(ProposerBase):
    """Proposer that asks a model for evidence-backed signals."""

    def __init__(
        self,
        name: str,
        caller: AgentCaller,
        *,
        instructions: str,
        default_store: str | None = None,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.caller = caller
        self.instructions = instructions
        self.default_store = default_store
        self.max_tokens = max_tokens

    def build_messages(self, state: ProposerState) -> list[dict]:
        prior = [
            {"source": s.source_id, "confidence": s.confidence, "facts": s.facts}
            for s in state.collected_signals
        ]
        payload = {
            "context": state.context,
            "wave": state.wave,
            "current_score": round(state.current_score, 4),
            "current_band": state.current_band,
            "prior_signals": prior,
        }
        return [{"role": "user", "content": json.dumps(payload, indent=2, default=str)}]

    async def propose(self, state: ProposerState) -> list[Signal]:
        data, _usage = await self.caller.call_json(
            system=_SYSTEM_PROMPT.format(name=self.name, instructions=self.instructions),
            messages=self.build_messages(state),
            agent_name=self.name,
            max_tokens=self.max_tokens,
        )
        return self.parse_signals(data, state)

    def parse_signals(self, data: Any, state: ProposerState | None = None) -> list[Signal]:
        """Convert a model response into Signals. Raises ValueError on bad shape."""
        if isinstance(data, dict) and "signals" in data:
            items = data["signals"]
        elif isinstance(data, dict):
            items = [data]
        else:
            items = data
        if not isinstance(items, list):
            raise ValueError(f"{self.name}: expected a list of signals, got {type(items).__name__}")

        signals = []
        for item in items:
            if not isinstance(item, dict) or "confidence" not in item:
                raise ValueError(f"{self.name}: signal entry missing 'confidence': {item!r}")
            early_exit = item.get("early_exit")
            if early_exit is True:
                early_exit = f"signal:{self.name}"
            signals.append(
                self.create_signal(
                    float(item["confidence"]),
                    item.get("facts"),
                    state=state,
                    evidence=[self._parse_ref(r) for r in item.get("evidence") or []],
                    early_exit=early_exit or None,
                )
            )
        return signals

    def _parse_ref(self, raw: Any) -> EvidenceRef:
        if not isinstance(raw, dict):
            raise ValueError(f"{self.name}: evidence entry must be an object, got {raw!r}")
        store = raw.get("store") or self.default_store
        if not raw.get("kind") or not store or raw.get("id") in (None, ""):
            raise ValueError(f"{self.name}: evidence entry needs kind, store and id: {raw!r}")
        return EvidenceRef(
            kind=str(raw["kind"]),
            store=str(store),
            id=str(raw["id"]),
            locator=raw.get("locator"),
            content_hash=raw.get("content_hash"),
        )
