import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from agent_playbook.llm.schemas import CompletionResponse, Message

logger = logging.getLogger(__name__)


class LLMClient(ABC):
    """
    Abstract base class for LLM clients.

    Provides a common interface for different LLM providers.
    """

    provider: str = "unknown"
    model: str = ""

    @abstractmethod
    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        """
        Generate a completion based on the input messages.

        Args:
            messages: List of conversation messages
            **kwargs: Additional provider-specific parameters

        Returns:
            CompletionResponse with generated text
        """
        pass


class MockLLMClient(LLMClient):
    """
    Mock LLM client for testing and development.

    Replays scripted responses in order. A scripted item that is an exception
    is raised instead of returned. Once the script runs out, falls back to
    canned responses chosen from the last message.
    """

    provider = "mock"

    def __init__(
        self,
        responses: Optional[Sequence[Union[str, BaseException]]] = None,
        model: str = "mock-model",
    ):
        """
        Initialize the mock client.

        Args:
            responses: Scripted responses (or exceptions) to replay in order
            model: Model name reported in responses
        """
        self.responses = list(responses or [])
        self.model = model
        self.calls: List[List[Message]] = []
        logger.info("Initialized MockLLMClient")

    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        """
        Return the next scripted response, or a canned one.

        Args:
            messages: List of conversation messages
            **kwargs: Ignored for mock client

        Returns:
            CompletionResponse with simulated text
        """
        self.calls.append(list(messages))

        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return CompletionResponse(text=item, provider=self.provider, model=self.model)

        if not messages:
            logger.warning("Empty messages list provided to MockLLMClient")
            return CompletionResponse(text="{}", provider=self.provider, model=self.model)

        content_lower = messages[-1].content.lower()
        if "verdict" in content_lower:
            response_text = json.dumps(
                {
                    "verdict": "ACCEPT",
                    "confidence": 0.6,
                    "reason": "Mock verdict",
                    "supporting_evidence": [],
                    "contradicting_evidence": [],
                }
            )
        elif "delta" in content_lower:
            response_text = json.dumps({"deltas": []})
        else:
            response_text = "{}"

        logger.debug(f"MockLLMClient generated response of length {len(response_text)}")

        return CompletionResponse(text=response_text, provider=self.provider, model=self.model)


def _post_json(
    provider: str,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    timeout: float,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    logger.debug(f"Making {provider} API request")
    try:
        response = requests.post(url, headers=headers, json=payload, params=params, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        logger.error(f"{provider} API request failed: {e}")
        raise


def _require_key(api_key: Optional[str], env_var: str, provider: str) -> str:
    key = api_key or os.getenv(env_var)
    if not key:
        raise ValueError(
            f"{provider} API key must be provided via api_key parameter "
            f"or {env_var} environment variable"
        )
    return key


class AnthropicClient(LLMClient):
    """Anthropic Messages API client."""

    provider = "anthropic"
    BASE_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        default_max_tokens: int = 2048,
        default_temperature: float = 0.3,
    ):
        self.api_key = _require_key(api_key, "ANTHROPIC_API_KEY", "Anthropic")
        self.model = model
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        logger.info(f"Initialized AnthropicClient with model: {model}")

    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.default_max_tokens),
            "temperature": kwargs.get("temperature", self.default_temperature),
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system:
            payload["system"] = system

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }
        data = _post_json(self.provider, self.BASE_URL, headers, payload, kwargs.get("timeout", 60))
        try:
            text = "".join(block["text"] for block in data["content"] if block.get("type") == "text")
        except (KeyError, TypeError) as e:
            logger.error(f"Failed to parse Anthropic response: {e}")
            raise ValueError("Malformed Anthropic response") from e
        return CompletionResponse(text=text, provider=self.provider, model=self.model)


class OpenAIClient(LLMClient):
    """OpenAI Chat Completions client."""

    provider = "openai"
    BASE_URL = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        default_max_tokens: Optional[int] = None,
        default_temperature: float = 0.3,
    ):
        self.api_key = _require_key(api_key, "OPENAI_API_KEY", "OpenAI")
        self.model = model
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        logger.info(f"Initialized OpenAIClient with model: {model}")

    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": kwargs.get("temperature", self.default_temperature),
        }
        if self.default_max_tokens or "max_tokens" in kwargs:
            payload["max_tokens"] = kwargs.get("max_tokens", self.default_max_tokens)

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        data = _post_json(self.provider, self.BASE_URL, headers, payload, kwargs.get("timeout", 60))
        if not data.get("choices"):
            raise ValueError("No choices returned in OpenAI response")
        return CompletionResponse(
            text=data["choices"][0]["message"]["content"], provider=self.provider, model=self.model
        )


class GoogleClient(LLMClient):
    """Google Generative Language (Gemini) client."""

    provider = "google"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.0-flash",
        default_max_tokens: int = 2048,
        default_temperature: float = 0.3,
    ):
        self.api_key = _require_key(api_key, "GOOGLE_GENERATIVE_AI_API_KEY", "Google")
        self.model = model
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        logger.info(f"Initialized GoogleClient with model: {model}")

    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "contents": [
                {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {
                "temperature": kwargs.get("temperature", self.default_temperature),
                "maxOutputTokens": kwargs.get("max_tokens", self.default_max_tokens),
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        data = _post_json(
            self.provider,
            self.BASE_URL.format(model=self.model),
            {"Content-Type": "application/json"},
            payload,
            kwargs.get("timeout", 60),
            params={"key": self.api_key},
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"Failed to parse Google response: {e}")
            raise ValueError("Malformed Google response") from e
        return CompletionResponse(
            text="".join(p.get("text", "") for p in parts), provider=self.provider, model=self.model
        )


class OpenRouterClient(LLMClient):
    """
    OpenRouter LLM client for accessing multiple model providers.

    Provides access to various LLM providers through OpenRouter's unified API.
    """

    provider = "openrouter"
    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "anthropic/claude-sonnet-4",
        site_url: Optional[str] = None,
        app_name: Optional[str] = None,
        default_max_tokens: Optional[int] = None,
        default_temperature: float = 0.3,
    ):
        """
        Initialize the OpenRouter client.

        Args:
            api_key: OpenRouter API key (defaults to OPENROUTER_API_KEY env var)
            model: Model to use (e.g., 'anthropic/claude-sonnet-4')
            site_url: Optional site URL for rankings
            app_name: Optional app name for rankings
            default_max_tokens: Default maximum tokens to generate
            default_temperature: Default temperature for generation
        """
        self.api_key = _require_key(api_key, "OPENROUTER_API_KEY", "OpenRouter")
        self.model = model
        self.site_url = site_url
        self.app_name = app_name
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature

        logger.info(f"Initialized OpenRouterClient with model: {model}")

    def complete(self, messages: List[Message], **kwargs) -> CompletionResponse:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_name:
            headers["X-Title"] = self.app_name

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": msg.role, "content": msg.content} for msg in messages],
            "temperature": kwargs.get("temperature", self.default_temperature),
        }
        if self.default_max_tokens or "max_tokens" in kwargs:
            payload["max_tokens"] = kwargs.get("max_tokens", self.default_max_tokens)

        data = _post_json(self.provider, self.BASE_URL, headers, payload, kwargs.get("timeout", 60))
        if "choices" not in data or len(data["choices"]) == 0:
            raise ValueError("No choices returned in OpenRouter response")

        logger.info(
            f"OpenRouter request successful. "
            f"Tokens: {data.get('usage', {}).get('total_tokens', 'unknown')}"
        )
        return CompletionResponse(
            text=data["choices"][0]["message"]["content"], provider=self.provider, model=self.model
        )
