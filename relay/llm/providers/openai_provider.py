from typing import Optional

from loguru import logger

from core.config import OpenAIConfig, RetryConfig
from core.errors import GenerationError, StartupVerificationError
from core.retry import with_retry
from llm.base import BaseLLM


def _api_error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc)


class OpenAIProvider(BaseLLM):
    """OpenAI chat completions provider."""

    def __init__(self, config: OpenAIConfig, retry: Optional[RetryConfig] = None, client=None, sleep=None):
        self.api_key = config.api_key
        self.model = config.model
        self.verify_model = config.verify_model
        self.max_tokens = config.max_tokens
        self.temperature = config.temperature
        self.retry = retry or RetryConfig()
        self._client = client
        self._sleep = sleep

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    async def complete(self, messages: list[dict]) -> str:
        self._ensure_client()
        logger.info("[LLM] Generating reply with {} ({} messages)", self.model, len(messages))

        async def _call():
            return await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )

        try:
            completion = await with_retry(
                _call,
                max_attempts=self.retry.max_attempts,
                base_delay=self.retry.base_delay,
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error("OpenAI completion failed: {}", e)
            raise GenerationError(f"No pude generar una respuesta de la IA: {_api_error_message(e)}") from e

        text = None
        if completion.choices:
            text = completion.choices[0].message.content
        if not text or not text.strip():
            logger.warning("OpenAI returned an empty completion.")
            raise GenerationError("No pude generar una respuesta de la IA: respuesta vacía.")

        logger.info("[LLM] Reply generated ({} chars)", len(text))
        return text.strip()

    async def verify(self) -> None:
        self._ensure_client()
        logger.info("Verifying OpenAI...")
        try:
            response = await self._client.chat.completions.create(
                model=self.verify_model,
                messages=[{"role": "user", "content": "Test connection"}],
                max_tokens=5,
            )
        except Exception as e:
            raise StartupVerificationError(f"OpenAI check failed: {_api_error_message(e)}") from e
        if not response.choices:
            raise StartupVerificationError("OpenAI answered without choices.")
        logger.info("OpenAI connection verified.")

    async def close(self):
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
