"""LLM client — HTTP connection to a chat/text-completion backend.

The narrator injects an LLM callable matching the protocol:

    async def __call__(self, stage: str, messages: list[ChatMessage], max_tokens: int) -> str: ...

`messages` is a multi-turn prompt of {"role": "system"|"assistant"|"user",
"content": ...} dicts. `stage` identifies the caller (currently always
"narrator") and is only used for logging.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports OpenAI-compatible chat and
                 KoboldCpp backends. Selected by provider_format.
    EchoLLM   — returns the last user turn unchanged. Useful for smoke-testing
                 the session wiring without a running model.

Transport failures surface as LLMError. Their messages carry the words the
narrator's retry policy looks for ("Network error", "timed out", "HTTP 503").
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]  # {"role": ..., "content": ...}


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, messages: list[ChatMessage], max_tokens: int) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]


def flatten_messages(messages: list[ChatMessage]) -> str:
    """Render a chat prompt as plain text for completion-only backends."""
    parts = [f"[{m['role']}]\n{m['content']}" for m in messages]
    parts.append("[assistant]\n")
    return "\n\n".join(parts)


class HttpLLM:
    """Async HTTP client for narration backends.

    Supported formats:
      "openai"     — POST /v1/chat/completions  {"model", "messages", "max_tokens"}
                     Response: {"choices": [{"message": {"content": "..."}}]}
      "koboldcpp"  — POST /api/v1/generate      {"prompt", "max_length"}
                     Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:8080".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, messages: list[ChatMessage], max_tokens: int) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "koboldcpp":
            url = f"{self._base_url}/api/v1/generate"
            return url, {"prompt": flatten_messages(messages), "max_length": max_tokens}

        # openai (default)
        url = f"{self._base_url}/v1/chat/completions"
        body: dict = {"messages": messages, "max_tokens": max_tokens}
        if self._model:
            body["model"] = self._model
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the generated text from the response body."""
        if self._format == "koboldcpp":
            results = data.get("results")
            if not results or "text" not in results[0]:
                raise LLMError("Unexpected response format from KoboldCpp backend")
            return results[0]["text"]

        choices = data.get("choices")
        if not choices or not isinstance(choices[0].get("message"), dict):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        return choices[0]["message"].get("content") or ""

    async def __call__(self, stage: str, messages: list[ChatMessage], max_tokens: int) -> str:
        url, body = self._build_request(messages, max_tokens)
        logger.debug(
            "llm call stage=%s url=%s turns=%d max_tokens=%d",
            stage, url, len(messages), max_tokens,
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Network error: cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TransportError as e:
            raise LLMError(f"Network error talking to LLM backend: {e}") from e

        text = self._parse_response(resp.json())
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM: returns the player turn, for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the content of the last user message. No network calls."""

    async def __call__(self, stage: str, messages: list[ChatMessage], max_tokens: int) -> str:
        logger.debug("EchoLLM stage=%s turns=%d", stage, len(messages))
        for message in reversed(messages):
            if message.get("role") == "user":
                return message.get("content", "")
        return ""


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
