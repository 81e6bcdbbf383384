#  Chorus - LLM Client
#
#  Text completion against the configured providers: Anthropic through
#  its SDK, OpenAI-compatible chat completions and Ollama through httpx.
#  Credentials come from the secrets cache on every call, so a rotated
#  key takes effect at the next cache refresh.
#
#  Depends on: config.py, services/secrets.py, exceptions.py
#  Used by:    services/orchestrations.py, services/runner.py, container.py

import logging
from dataclasses import dataclass

import anthropic
import httpx

from chorus.config import (
    ANTHROPIC_MODEL,
    LLM_TIMEOUT,
    OLLAMA_HOST,
    OLLAMA_MODEL,
    OPENAI_BASE_URL,
    OPENAI_MODEL,
)
from chorus.exceptions import SecretsUnavailableError
from chorus.models.enums import LLMProvider

logger = logging.getLogger("chorus.llm")

# Failures worth a queue redelivery rather than a terminal session failure
TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    SecretsUnavailableError,
)

DEFAULT_MODELS = {
    LLMProvider.ANTHROPIC: ANTHROPIC_MODEL,
    LLMProvider.OPENAI: OPENAI_MODEL,
    LLMProvider.OLLAMA: OLLAMA_MODEL,
}


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    # 429 and 5xx from the httpx-backed providers
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


@dataclass
class LLMResult:
    text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class LLMClient:
    """Provider-selectable text completion."""

    def __init__(self, *, secrets, http_client: httpx.AsyncClient, timeout: float = LLM_TIMEOUT):
        self._secrets = secrets
        self._http = http_client
        self._timeout = timeout
        self._anthropic: anthropic.AsyncAnthropic | None = None
        self._anthropic_key: str | None = None

    async def complete(
        self,
        prompt: str,
        *,
        provider: LLMProvider | str = LLMProvider.ANTHROPIC,
        model: str | None = None,
        max_tokens: int = 2000,
        system: str | None = None,
    ) -> LLMResult:
        provider = LLMProvider(provider)
        model = model or DEFAULT_MODELS[provider]
        secrets = await self._secrets.get()

        if provider == LLMProvider.ANTHROPIC:
            result = await self._anthropic_complete(secrets, prompt, model, max_tokens, system)
        elif provider == LLMProvider.OPENAI:
            result = await self._openai_complete(secrets, prompt, model, max_tokens, system)
        else:
            result = await self._ollama_complete(secrets, prompt, model, system)

        logger.info(
            "LLM call %s/%s: %d prompt + %d completion tokens",
            provider.value, model, result.prompt_tokens, result.completion_tokens,
        )
        return result

    def _anthropic_client(self, api_key: str) -> anthropic.AsyncAnthropic:
        if self._anthropic is None or api_key != self._anthropic_key:
            self._anthropic = anthropic.AsyncAnthropic(api_key=api_key, timeout=self._timeout)
            self._anthropic_key = api_key
        return self._anthropic

    async def _anthropic_complete(self, secrets, prompt, model, max_tokens, system) -> LLMResult:
        api_key = secrets.get("anthropic_api_key")
        if not api_key:
            raise SecretsUnavailableError("anthropic_api_key is not available")
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        response = await self._anthropic_client(api_key).messages.create(**kwargs)
        text = "".join(block.text for block in response.content if block.type == "text")
        return LLMResult(
            text=text,
            model=model,
            provider=LLMProvider.ANTHROPIC.value,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )

    async def _openai_complete(self, secrets, prompt, model, max_tokens, system) -> LLMResult:
        api_key = secrets.get("openai_api_key")
        if not api_key:
            raise SecretsUnavailableError("openai_api_key is not available")
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        resp = await self._http.post(
            f"{OPENAI_BASE_URL.rstrip('/')}/v1/chat/completions",
            json={"model": model, "max_tokens": max_tokens, "messages": messages},
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        text = ""
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return LLMResult(
            text=text,
            model=data.get("model", model),
            provider=LLMProvider.OPENAI.value,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )

    async def _ollama_complete(self, secrets, prompt, model, system) -> LLMResult:
        host = secrets.get("ollama_host") or OLLAMA_HOST
        body = {"model": model, "prompt": prompt, "stream": False}
        if system:
            body["system"] = system
        resp = await self._http.post(
            f"{host.rstrip('/')}/api/generate", json=body, timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        return LLMResult(
            text=data.get("response", ""),
            model=model,
            provider=LLMProvider.OLLAMA.value,
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
        )
