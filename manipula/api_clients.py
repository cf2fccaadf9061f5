"""
API Clients — Unified interface for OpenAI, Anthropic, Google
=============================================================
Each provider has its own SDK idiom. This module normalizes them into a
single async invoke(model_id, payload) call returning text plus usage.

Every SDK failure leaves this module as a ProviderError (or
AgentTimeoutError); nothing is retried here. Retry and fallback are the
engine's decision.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .exceptions import AgentTimeoutError, ProviderError
from .models import Usage, estimate_cost, get_provider

logger = logging.getLogger("manipula.api")

# HTTP statuses that will not change on retry: bad request, auth, not found.
_PERMANENT_STATUSES = {400, 401, 403, 404}


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized response from any provider."""
    text: str
    usage: Usage
    latency_ms: float = 0.0


def _status_of(error: Exception) -> Optional[int]:
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def to_provider_error(model: str, error: Exception) -> ProviderError:
    status = _status_of(error)
    retriable = status not in _PERMANENT_STATUSES
    message = f"{model}: {type(error).__name__}: {error}"
    if status is not None:
        message = f"{model}: HTTP {status}: {error}"
    return ProviderError(message, retriable=retriable)


class UnifiedClient:
    """
    Async provider client with lazy SDK initialisation.

    A provider is available when its API key is present in the
    environment (or a .env file). invoke() on an unavailable provider
    raises a non-retriable ProviderError so the engine moves on to the
    next fallback model.
    """

    def __init__(self, max_concurrency: int = 3, timeout: Optional[float] = None):
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.timeout = timeout
        self._clients: dict[str, object] = {}
        self._init_clients()

    def _init_clients(self):
        load_dotenv(override=False)

        if os.environ.get("OPENAI_API_KEY"):
            from openai import AsyncOpenAI
            self._clients["openai"] = AsyncOpenAI()
            logger.info("OpenAI client initialized")

        if os.environ.get("ANTHROPIC_API_KEY"):
            from anthropic import AsyncAnthropic
            self._clients["anthropic"] = AsyncAnthropic()
            logger.info("Anthropic client initialized")

        api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
        if api_key:
            from google import genai
            self._clients["google"] = genai.Client(api_key=api_key)
            logger.info("Google GenAI client initialized")

    def is_available(self, model: str) -> bool:
        return get_provider(model) in self._clients

    async def invoke(self, model: str, payload: dict) -> ProviderResponse:
        """
        payload keys: prompt (required), system, max_tokens, temperature.
        """
        provider = get_provider(model)
        if provider not in self._clients:
            raise ProviderError(
                f"{model}: provider '{provider}' not configured (missing API key)",
                retriable=False,
            )

        prompt = payload["prompt"]
        system = payload.get("system", "")
        max_tokens = int(payload.get("max_tokens", 4096))
        temperature = float(payload.get("temperature", 0.3))

        async with self.semaphore:
            t0 = time.monotonic()
            try:
                coro = self._dispatch(provider, model, prompt, system, max_tokens, temperature)
                if self.timeout:
                    text, in_tok, out_tok = await asyncio.wait_for(coro, timeout=self.timeout)
                else:
                    text, in_tok, out_tok = await coro
            except asyncio.TimeoutError:
                logger.warning(f"Timeout calling {model}")
                raise AgentTimeoutError(f"{model} timed out after {self.timeout}s")
            except ProviderError:
                raise
            except Exception as e:
                err = to_provider_error(model, e)
                logger.warning(f"Error calling {model}: {err}")
                raise err from e

        latency_ms = (time.monotonic() - t0) * 1000
        usage = Usage(
            input_tokens=in_tok,
            output_tokens=out_tok,
            cost_usd=estimate_cost(model, in_tok, out_tok),
            model=model,
        )
        logger.debug(
            f"{model}: {in_tok} in / {out_tok} out tokens, "
            f"${usage.cost_usd:.4f}, {latency_ms:.0f}ms"
        )
        return ProviderResponse(text=text, usage=usage, latency_ms=latency_ms)

    async def _dispatch(self, provider: str, model: str, prompt: str, system: str,
                        max_tokens: int, temperature: float) -> tuple[str, int, int]:
        if provider == "openai":
            return await self._call_openai(model, prompt, system, max_tokens, temperature)
        elif provider == "anthropic":
            return await self._call_anthropic(model, prompt, system, max_tokens, temperature)
        elif provider == "google":
            return await self._call_google(model, prompt, system, max_tokens, temperature)
        raise ProviderError(f"Unknown provider for {model}", retriable=False)

    async def _call_openai(self, model: str, prompt: str, system: str,
                           max_tokens: int, temperature: float) -> tuple[str, int, int]:
        client = self._clients["openai"]
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        choice = response.choices[0]
        usage = response.usage
        return (
            choice.message.content or "",
            usage.prompt_tokens if usage else 0,
            usage.completion_tokens if usage else 0,
        )

    async def _call_anthropic(self, model: str, prompt: str, system: str,
                              max_tokens: int, temperature: float) -> tuple[str, int, int]:
        client = self._clients["anthropic"]
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        response = await client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        return text, response.usage.input_tokens, response.usage.output_tokens

    async def _call_google(self, model: str, prompt: str, system: str,
                           max_tokens: int, temperature: float) -> tuple[str, int, int]:
        client = self._clients["google"]
        from google.genai import types

        config = types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
            system_instruction=system or None,
        )
        response = await client.aio.models.generate_content(
            model=model, contents=prompt, config=config,
        )
        meta = getattr(response, "usage_metadata", None)
        input_tokens = (getattr(meta, "prompt_token_count", 0) or 0) if meta else 0
        output_tokens = (getattr(meta, "candidates_token_count", 0) or 0) if meta else 0
        return response.text or "", input_tokens, output_tokens
