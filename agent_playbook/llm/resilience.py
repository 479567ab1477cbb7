# agent_playbook/llm/resilience.py
"""Retry-with-backoff and provider fallback around LLM calls."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import requests

from agent_playbook.core.config import LLMConfig, PlaybookConfig, RetryConfig, get_config
from agent_playbook.llm.client import LLMClient
from agent_playbook.llm.factory import FALLBACK_MODELS, FALLBACK_ORDER, create_llm_client, get_available_providers
from agent_playbook.llm.schemas import CompletionResponse, Message

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_SIGNATURES = (
    "rate_limit_exceeded",
    "server_error",
    "timeout",
    "overloaded",
    "etimedout",
    "econnreset",
    "429",
    "500",
    "503",
)


class LLMError(Exception):
    """Base class for LLM call failures."""

    pass


class LLMRetryError(LLMError):
    """Raised when a retryable call keeps failing; carries every attempt's error."""

    def __init__(self, operation: str, errors: list[BaseException], reason: str = "retries exhausted"):
        self.operation = operation
        self.errors = errors
        details = "; ".join(f"attempt {i + 1}: {e}" for i, e in enumerate(errors))
        super().__init__(f"{operation} failed after {len(errors)} attempts ({reason}): {details}")


class LLMFallbackError(LLMError):
    """Raised when every provider in the fallback chain failed."""

    def __init__(self, failures: list[tuple[str, BaseException]]):
        self.failures = failures
        summary = "\n  ".join(f"{provider}: {error}" for provider, error in failures)
        super().__init__(f"All LLM providers failed:\n  {summary}")


class NoProviderAvailableError(LLMError):
    pass


def is_retryable_error(err: BaseException) -> bool:
    """Classify an error as transient by matching known signatures.

    The message, ``code``, ``status``/``status_code`` attributes and, for
    HTTP errors, the response status are all inspected.
    """
    if isinstance(err, requests.exceptions.Timeout | requests.exceptions.ConnectionError):
        return True

    candidates = [str(err).lower()]
    for attr in ("code", "status", "status_code"):
        value = getattr(err, attr, None)
        if value is not None:
            candidates.append(str(value).lower())
    response = getattr(err, "response", None)
    if response is not None and getattr(response, "status_code", None) is not None:
        candidates.append(str(response.status_code))

    return any(sig in text for sig in RETRYABLE_SIGNATURES for text in candidates)


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    call_timeout: float = 60.0
    overall_timeout: float = 180.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            call_timeout=config.call_timeout,
            overall_timeout=config.overall_timeout,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2**attempt), self.max_delay)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    operation: str = "LLM call",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``fn`` retrying transient failures with exponential backoff.

    Non-retryable errors propagate unchanged on first occurrence.

    Raises:
        LLMRetryError: When retries are exhausted or the next wait would pass
            the overall time ceiling
    """
    policy = policy or RetryPolicy()
    started = clock()
    errors: list[BaseException] = []

    while True:
        try:
            return fn()
        except Exception as e:
            if not is_retryable_error(e):
                raise
            errors.append(e)
            attempt = len(errors)
            if attempt > policy.max_retries:
                raise LLMRetryError(operation, errors) from e

            delay = policy.delay_for(attempt)
            if clock() - started + delay > policy.overall_timeout:
                raise LLMRetryError(operation, errors, reason="overall timeout reached") from e
            logger.warning(f"{operation} failed (attempt {attempt}): {e}. Retrying in {delay:.1f}s")
            sleep(delay)


class ProviderChain:
    """Ordered (provider, model) candidates tried until one succeeds.

    The configured primary comes first, followed by the alternates in
    FALLBACK_ORDER that have credentials. Each candidate is wrapped in the
    same retry policy.
    """

    def __init__(
        self,
        candidates: list[tuple[str, str]],
        llm_config: LLMConfig,
        policy: RetryPolicy,
        client_factory: Callable[[str, str], LLMClient] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not candidates:
            raise NoProviderAvailableError(
                "No LLM providers available. Set one of: ANTHROPIC_API_KEY, "
                "OPENAI_API_KEY, or GOOGLE_GENERATIVE_AI_API_KEY"
            )
        self.candidates = candidates
        self.llm_config = llm_config
        self.policy = policy
        self.client_factory = client_factory or (
            lambda provider, model: create_llm_client(llm_config, provider=provider, model=model)
        )
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: PlaybookConfig,
        client_factory: Callable[[str, str], LLMClient] | None = None,
        available: list[str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ProviderChain":
        available = get_available_providers() if available is None else available
        primary = config.llm.provider.lower()
        candidates: list[tuple[str, str]] = []
        if primary == "mock" or primary in available or primary not in FALLBACK_ORDER:
            candidates.append((primary, config.llm.model))
        if config.llm.fallback_enabled:
            for provider in FALLBACK_ORDER:
                if provider != primary and provider in available:
                    candidates.append((provider, FALLBACK_MODELS[provider]))
        return cls(candidates, config.llm, RetryPolicy.from_config(config.retry), client_factory, sleep)

    def complete(self, messages: list[Message], operation: str = "LLM call", **kwargs) -> CompletionResponse:
        failures: list[tuple[str, BaseException]] = []
        kwargs.setdefault("timeout", self.policy.call_timeout)
        for provider, model in self.candidates:
            try:
                client = self.client_factory(provider, model)
                return call_with_retry(
                    lambda client=client: client.complete(messages, **kwargs),
                    self.policy,
                    operation=f"{operation} [{provider}]",
                    sleep=self.sleep,
                )
            except Exception as e:
                failures.append((provider, e))
                logger.warning(f"{provider} failed: {e}. Trying next provider...")
        raise LLMFallbackError(failures)


class ResilientLLMClient(LLMClient):
    """LLMClient facade over a ProviderChain, so collaborators stay provider-agnostic."""

    provider = "chain"

    def __init__(self, chain: ProviderChain):
        self.chain = chain
        self.model = ",".join(p for p, _ in chain.candidates)

    def complete(self, messages: list[Message], **kwargs) -> CompletionResponse:
        return self.chain.complete(messages, **kwargs)


def complete_with_fallback(
    messages: list[Message],
    config: PlaybookConfig | None = None,
    operation: str = "LLM call",
    **kwargs,
) -> CompletionResponse:
    """One-shot completion through the configured provider chain."""
    chain = ProviderChain.from_config(config or get_config())
    return chain.complete(messages, operation=operation, **kwargs)
