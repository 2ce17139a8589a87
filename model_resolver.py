"""
Model resolution: map a caller-facing model name to an upstream NIM model.

Resolution order:
1. Exact match in the alias table
2. Live capability probe using the caller's name verbatim
3. Keyword fallback by capability tier
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


# Caller-facing name -> NIM model
MODEL_MAPPING: Mapping[str, str] = {
    "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "gpt-4": "qwen/qwen3-coder-480b-a35b-instruct",
    "gpt-4-turbo": "moonshotai/kimi-k2-instruct-0905",
    "gpt-4o": "deepseek-ai/deepseek-v3.1",
    "claude-3-opus": "openai/gpt-oss-120b",
    "claude-3-sonnet": "openai/gpt-oss-20b",
    "gemini-pro": "qwen/qwen3-next-80b-a3b-thinking",
}

# Keyword tiers, checked in order against the lower-cased name
FALLBACK_TIERS: list[tuple[tuple[str, ...], str]] = [
    (("gpt-4", "claude-opus", "405b"), "meta/llama-3.1-405b-instruct"),
    (("claude", "gemini", "70b"), "meta/llama-3.1-70b-instruct"),
]
DEFAULT_MODEL = "meta/llama-3.1-8b-instruct"


def keyword_fallback(model: str) -> str:
    """Pick a tier model by substring match, or the default tier."""
    model_lower = model.lower()
    for keywords, upstream in FALLBACK_TIERS:
        if any(keyword in model_lower for keyword in keywords):
            return upstream
    return DEFAULT_MODEL


@dataclass
class ProbeResult:
    """Outcome of a capability probe. Never raised, always returned."""

    ok: bool
    status_code: int | None = None
    error: str | None = None


@dataclass
class ResolvedModel:
    """Upstream model plus how it was chosen ("alias", "probe" or "fallback")."""

    upstream: str
    source: str


class ModelResolver:
    """Resolve caller model names, caching probe outcomes per name."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None = None,
        aliases: Mapping[str, str] = MODEL_MAPPING,
        probe_enabled: bool = True,
        probe_timeout: float = 10.0,
        probe_cache_ttl: float = 300.0,
        probe_cache_size: int = 1024,
    ):
        """
        Args:
            api_base: Upstream base URL (".../v1")
            api_key: Bearer credential for the probe request
            aliases: Exact-match alias table
            probe_enabled: Disable to go straight from alias lookup to keyword fallback
            probe_timeout: Seconds before a probe counts as failed
            probe_cache_ttl: Seconds to remember a probe outcome (0 = never cache)
            probe_cache_size: Most model names to remember at once
        """
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.aliases = aliases
        self.probe_enabled = probe_enabled
        self.probe_timeout = probe_timeout
        self.probe_cache_ttl = probe_cache_ttl
        self.probe_cache_size = max(1, probe_cache_size)
        # model -> (checked_at, accepted)
        self._probe_cache: dict[str, tuple[float, bool]] = {}

    def _cached_probe(self, model: str) -> bool | None:
        if self.probe_cache_ttl <= 0:
            return None
        cached = self._probe_cache.get(model)
        if cached is None:
            return None
        checked_at, accepted = cached
        if time.time() - checked_at > self.probe_cache_ttl:
            del self._probe_cache[model]
            return None
        return accepted

    def _remember_probe(self, model: str, accepted: bool) -> None:
        """Cache a verdict, sweeping expired entries and evicting the oldest when full."""
        now = time.time()
        expired = [
            name
            for name, (checked_at, _) in self._probe_cache.items()
            if now - checked_at > self.probe_cache_ttl
        ]
        for name in expired:
            del self._probe_cache[name]

        self._probe_cache.pop(model, None)
        while len(self._probe_cache) >= self.probe_cache_size:
            # Dicts keep insertion order, so the first key is the oldest verdict
            del self._probe_cache[next(iter(self._probe_cache))]
        self._probe_cache[model] = (now, accepted)

    def clear_cache(self) -> None:
        self._probe_cache.clear()

    def _default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def probe(
        self,
        client: httpx.AsyncClient,
        model: str,
        headers: dict[str, str] | None = None,
    ) -> ProbeResult:
        """Send a single-token completion to see if the provider accepts the model."""
        try:
            response = await client.post(
                f"{self.api_base}/chat/completions",
                json={
                    "model": model,
                    "messages": [{"role": "user", "content": "test"}],
                    "max_tokens": 1,
                },
                headers=headers or self._default_headers(),
                timeout=self.probe_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return ProbeResult(ok=False, error=f"{type(e).__name__}: {e}")

        if response.is_success:
            return ProbeResult(ok=True, status_code=response.status_code)
        return ProbeResult(ok=False, status_code=response.status_code)

    async def resolve(
        self,
        client: httpx.AsyncClient,
        model: str | None,
        headers: dict[str, str] | None = None,
    ) -> ResolvedModel:
        """
        Resolve a caller model name. Always returns a model, never raises.

        Args:
            client: HTTP client used for the probe
            model: Caller-facing model name
            headers: Probe headers (defaults to the configured bearer credential)
        """
        model = model if isinstance(model, str) else ""

        upstream = self.aliases.get(model)
        if upstream:
            return ResolvedModel(upstream=upstream, source="alias")

        if model and self.probe_enabled:
            accepted = self._cached_probe(model)
            if accepted is None:
                result = await self.probe(client, model, headers)
                accepted = result.ok
                if not result.ok:
                    logger.debug(
                        f"Probe rejected model '{model}' "
                        f"(status={result.status_code}, error={result.error})"
                    )
                # Transport failures are not cached, only provider verdicts
                if self.probe_cache_ttl > 0 and result.status_code is not None:
                    self._remember_probe(model, accepted)
            if accepted:
                return ResolvedModel(upstream=model, source="probe")

        return ResolvedModel(upstream=keyword_fallback(model), source="fallback")
