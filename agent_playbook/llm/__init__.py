from agent_playbook.llm.client import (
    AnthropicClient,
    GoogleClient,
    LLMClient,
    MockLLMClient,
    OpenAIClient,
    OpenRouterClient,
)
from agent_playbook.llm.factory import create_llm_client, get_available_providers
from agent_playbook.llm.resilience import (
    LLMError,
    LLMFallbackError,
    LLMRetryError,
    NoProviderAvailableError,
    ProviderChain,
    ResilientLLMClient,
    RetryPolicy,
    call_with_retry,
    complete_with_fallback,
    is_retryable_error,
)
from agent_playbook.llm.schemas import CompletionResponse, Message

__all__ = [
    "LLMClient",
    "MockLLMClient",
    "AnthropicClient",
    "OpenAIClient",
    "GoogleClient",
    "OpenRouterClient",
    "Message",
    "CompletionResponse",
    "create_llm_client",
    "get_available_providers",
    "LLMError",
    "LLMRetryError",
    "LLMFallbackError",
    "NoProviderAvailableError",
    "ProviderChain",
    "ResilientLLMClient",
    "RetryPolicy",
    "call_with_retry",
    "complete_with_fallback",
    "is_retryable_error",
]
