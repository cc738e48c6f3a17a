"""
Gateway client for aigate.

Dispatches prompts to model providers, walking a tier's ordered model chain
until one answers. Each attempt is bounded by a timeout and guarded by that
provider's circuit breaker. Providers are pluggable; the MockProvider serves
tests and offline development.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

from aigate.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from aigate.config import get_model_chain, get_model_chains, get_pricing
from aigate.errors import GatewayTimeoutError, UpstreamModelError

logger = logging.getLogger(__name__)

# Cents per million tokens for models missing from the pricing table.
FALLBACK_RATES = {"input": 100.0, "output": 300.0}


@dataclass
class GatewayRequest:
    """A prompt to send through a model tier."""
    prompt: str
    tier: str = "text"
    system_prompt: Optional[str] = None
    max_tokens: int = 1000
    temperature: float = 0.7
    operation: str = ""
    params_hash: str = ""


@dataclass
class Completion:
    """A model response."""
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int = 0
    cost_cents: float = 0.0
    attempts: list[dict] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
            "cost_cents": self.cost_cents,
            "attempts": self.attempts,
        }


def split_model(model: str) -> tuple[str, str]:
    """``"openai/gpt-4o-mini"`` -> ``("openai", "gpt-4o-mini")``."""
    provider, sep, name = model.partition("/")
    if not sep:
        return "", model
    return provider, name


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


def cost_cents(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost of a call in (fractional) cents."""
    rates = get_pricing().get(model, FALLBACK_RATES)
    return (input_tokens * rates["input"] + output_tokens * rates["output"]) / 1_000_000


class ModelProvider(ABC):
    """Abstract base class for model providers."""

    name = "provider"

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def generate(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> Completion:
        """Generate a completion. Raises on any failure."""


class MockProvider(ModelProvider):
    """
    Mock provider for testing.

    Deterministic responses, with scripted failures and delays.

    Args:
        response_text: Fixed text to return. Defaults to an echo of the prompt.
        delay_seconds: Sleep before answering (to exercise timeouts).
        fail_models: Models that always fail.
        failures: Exceptions raised by the next calls, one per call.
        configured: Reported by ``is_configured``.
    """

    name = "mock"

    def __init__(
        self,
        response_text: Optional[str] = None,
        delay_seconds: float = 0.0,
        fail_models: tuple = (),
        failures: Optional[list[Exception]] = None,
        configured: bool = True,
    ):
        self.response_text = response_text
        self.delay_seconds = delay_seconds
        self.fail_models = set(fail_models)
        self.failures = list(failures or [])
        self.configured = configured
        self.calls: list[dict] = []
        self._lock = Lock()

    def is_configured(self) -> bool:
        return self.configured

    def generate(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> Completion:
        with self._lock:
            self.calls.append({"model": model, "prompt": prompt, "system_prompt": system_prompt})
            scripted = self.failures.pop(0) if self.failures else None

        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if scripted is not None:
            raise scripted
        if model in self.fail_models:
            raise RuntimeError(f"Simulated failure for {model}")

        text = self.response_text if self.response_text is not None else f"[{model}] {prompt[:200]}"
        return Completion(
            text=text,
            model=model,
            input_tokens=estimate_tokens((system_prompt or "") + prompt),
            output_tokens=min(max_tokens, estimate_tokens(text)),
        )


class OpenAIProvider(ModelProvider):
    """
    OpenAI API provider.

    Requires OPENAI_API_KEY environment variable.
    """

    name = "openai"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def generate(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> Completion:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        return Completion(
            text=response.choices[0].message.content or "",
            model=model,
            input_tokens=response.usage.prompt_tokens,
            output_tokens=response.usage.completion_tokens,
        )


class AnthropicProvider(ModelProvider):
    """
    Anthropic API provider.

    Requires ANTHROPIC_API_KEY environment variable.
    """

    name = "anthropic"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self._client = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self):
        if self._client is None:
            from anthropic import Anthropic
            self._client = Anthropic(api_key=self.api_key)
        return self._client

    def generate(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> Completion:
        response = self.client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt or "",
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
        return Completion(
            text=response.content[0].text if response.content else "",
            model=model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


class GatewayClient:
    """
    Routes requests across providers with failover.

    Example:
        ```python
        gateway = GatewayClient(default_provider=MockProvider())
        completion = gateway.invoke(GatewayRequest(prompt="Hello", tier="text"))
        completion.text, completion.cost_cents
        ```
    """

    def __init__(
        self,
        providers: Optional[dict[str, ModelProvider]] = None,
        default_provider: Optional[ModelProvider] = None,
        timeout_seconds: float = 30.0,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 8,
    ):
        """
        Initialize the gateway.

        Args:
            providers: Providers keyed by model prefix ("openai", "anthropic").
                Defaults to the OpenAI and Anthropic providers.
            default_provider: Used for models whose prefix has no provider.
            timeout_seconds: Per-attempt timeout.
            breaker_config: Circuit breaker settings shared by all providers.
            clock: Time source for breakers and latency.
            max_workers: Threads available for in-flight attempts.
        """
        if providers is None and default_provider is None:
            providers = {"openai": OpenAIProvider(), "anthropic": AnthropicProvider()}
        self.providers = providers or {}
        self.default_provider = default_provider
        self.timeout_seconds = timeout_seconds
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="aigate-gateway")
        self._stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"requests": 0, "successes": 0, "failures": 0, "timeouts": 0}
        )
        self._failovers = 0

    def _provider_for(self, model: str) -> Optional[ModelProvider]:
        prefix, _ = split_model(model)
        return self.providers.get(prefix, self.default_provider)

    def breaker(self, model: str) -> CircuitBreaker:
        """The circuit breaker guarding a model's provider."""
        prefix, _ = split_model(model)
        key = prefix or model
        with self._lock:
            if key not in self._breakers:
                self._breakers[key] = CircuitBreaker(key, self._breaker_config, clock=self._clock)
            return self._breakers[key]

    def estimate_cost_cents(self, model: str, prompt: str, max_tokens: int = 1000) -> float:
        """Upper-bound cost estimate used for budget preauthorization."""
        return cost_cents(model, estimate_tokens(prompt), max_tokens)

    def estimate_request_cents(self, request: GatewayRequest) -> float:
        chain = get_model_chain(request.tier)
        prompt = (request.system_prompt or "") + request.prompt
        return self.estimate_cost_cents(chain[0], prompt, request.max_tokens)

    def _count(self, model: str, key: str) -> None:
        with self._lock:
            self._stats[model][key] += 1

    def invoke(self, request: GatewayRequest) -> Completion:
        """
        Send a request through the tier's model chain.

        Returns:
            The first successful Completion, with cost and attempts filled in.

        Raises:
            ValueError: If the tier is unknown
            GatewayTimeoutError: If every model failed and the last one timed out
            UpstreamModelError: If every model failed otherwise
        """
        chain = get_model_chain(request.tier)
        started = self._clock()
        attempts: list[dict] = []
        last_timed_out = False

        for model in chain:
            provider = self._provider_for(model)
            if provider is None or not provider.is_configured():
                attempts.append({"model": model, "outcome": "skipped", "error": "provider not configured"})
                continue

            breaker = self.breaker(model)
            if not breaker.allow():
                attempts.append({"model": model, "outcome": "skipped", "error": "circuit open"})
                continue

            self._count(model, "requests")
            attempt_start = self._clock()
            _, model_name = split_model(model)
            future = self._executor.submit(
                provider.generate,
                model_name,
                request.prompt,
                request.system_prompt,
                request.max_tokens,
                request.temperature,
                self.timeout_seconds,
            )
            try:
                completion = future.result(timeout=self.timeout_seconds)
            except FuturesTimeout:
                future.cancel()
                breaker.record_failure()
                self._count(model, "timeouts")
                last_timed_out = True
                attempts.append({
                    "model": model,
                    "outcome": "timeout",
                    "latency_ms": int((self._clock() - attempt_start) * 1000),
                })
                logger.warning("Model %s timed out after %.1fs", model, self.timeout_seconds)
                continue
            except Exception as e:
                breaker.record_failure()
                self._count(model, "failures")
                last_timed_out = False
                attempts.append({
                    "model": model,
                    "outcome": "error",
                    "error": str(e),
                    "latency_ms": int((self._clock() - attempt_start) * 1000),
                })
                logger.warning("Model %s failed: %s", model, e)
                continue

            breaker.record_success()
            self._count(model, "successes")
            latency_ms = int((self._clock() - attempt_start) * 1000)
            attempts.append({"model": model, "outcome": "success", "latency_ms": latency_ms})
            if len(attempts) > 1:
                with self._lock:
                    self._failovers += 1

            completion.model = model
            completion.latency_ms = latency_ms
            completion.cost_cents = cost_cents(model, completion.input_tokens, completion.output_tokens)
            completion.attempts = attempts
            return completion

        latency_ms = int((self._clock() - started) * 1000)
        error_cls = GatewayTimeoutError if last_timed_out else UpstreamModelError
        logger.error(
            "Model chain '%s' exhausted for operation=%s params=%s after %dms: %s",
            request.tier, request.operation, request.params_hash, latency_ms, attempts,
        )
        raise error_cls(
            f"All models failed for tier '{request.tier}'",
            operation=request.operation,
            params_hash=request.params_hash,
            latency_ms=latency_ms,
            attempts=attempts,
        )

    def health_check(self, probe: bool = False) -> dict:
        """
        Report availability of every model in the configured chains.

        Args:
            probe: Send a tiny generation to each model instead of relying on
                configuration and breaker state.

        Returns:
            ``{"status": "healthy"|"degraded"|"unhealthy", "models": {...},
            "available": int, "total": int}``
        """
        models = []
        for chain in get_model_chains().values():
            for model in chain:
                if model not in models:
                    models.append(model)

        report = {}
        for model in models:
            provider = self._provider_for(model)
            configured = provider is not None and provider.is_configured()
            circuit = self.breaker(model).state.value
            entry = {
                "provider": provider.name if provider else None,
                "configured": configured,
                "circuit": circuit,
                "healthy": configured and circuit != "open",
            }
            if probe and configured:
                entry.update(self._probe(provider, model))
            report[model] = entry

        available = sum(1 for e in report.values() if e["healthy"])
        if models and available == len(models):
            status = "healthy"
        elif available:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "models": report, "available": available, "total": len(models)}

    def _probe(self, provider: ModelProvider, model: str) -> dict:
        timeout = min(self.timeout_seconds, 10.0)
        start = self._clock()
        _, model_name = split_model(model)
        future = self._executor.submit(provider.generate, model_name, "ping", None, 5, 0.0, timeout)
        try:
            future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            return {"healthy": False, "error": "timeout"}
        except Exception as e:
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, "latency_ms": int((self._clock() - start) * 1000)}

    def get_stats(self) -> dict:
        with self._lock:
            per_model = {model: dict(counts) for model, counts in self._stats.items()}
            failovers = self._failovers
            breakers = list(self._breakers.values())
        return {
            "models": per_model,
            "failovers": failovers,
            "circuit_breakers": [b.get_stats() for b in breakers],
        }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._failovers = 0
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
