"""OpenAI-compatible chat-completions client.

Submits a single prompt and returns the completion text.  Retries and the
hard per-call timeout are owned by the caller (``SignalExtractor``).
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from signaltrader.config import Config

logger = logging.getLogger("signaltrader")

_SYSTEM_PROMPT = (
    "You are a trading signal parser. You read messages from Telegram "
    "signal channels and answer with strict JSON only."
)


class LLMError(RuntimeError):
    """Raised when the model endpoint returns an unusable response."""


@dataclass(frozen=True)
class Completion:
    """Text returned by the model plus bookkeeping fields."""

    content: str
    model: str = ""
    total_tokens: Optional[int] = None


class LLMClient:
    """Async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(self, config: Config) -> None:
        self._url = config.llm_api_url
        self._model = config.llm_model
        self._default_timeout = config.llm_timeout_seconds
        self._headers = {
            "Authorization": f"Bearer {config.llm_api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 500,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
    ) -> Completion:
        """Submit *prompt* and return the first choice's message content.

        Raises:
            httpx.HTTPError: On transport failures or non-2xx responses.
            LLMError: If the response body has no usable content.
        """
        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                self._url,
                headers=self._headers,
                json=body,
                timeout=timeout or self._default_timeout,
            )
        resp.raise_for_status()

        data = resp.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"Malformed completion response: {exc}") from exc
        if not content:
            raise LLMError("Empty completion from model")

        usage = data.get("usage") or {}
        return Completion(
            content=content,
            model=data.get("model", self._model),
            total_tokens=usage.get("total_tokens"),
        )
