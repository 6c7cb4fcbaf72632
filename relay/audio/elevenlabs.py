import json
from pathlib import Path
from typing import Optional

import httpx
from loguru import logger

from audio.settings import VoiceOverrides, VoiceSettings
from core.config import ElevenLabsConfig, RetryConfig
from core.errors import ArtifactError, StartupVerificationError, SynthesisError
from core.retry import with_retry

STS_BAD_REQUEST_HINT = (
    " (Posible causa: modelo STS o voz no compatible, formato de audio inválido"
    " o problema con el archivo de audio)"
)


def describe_http_error(exc: Exception) -> str:
    """Pull the most useful message out of an ElevenLabs error response."""
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return response.text or response.reason_phrase or str(exc)
        detail = data.get("detail") if isinstance(data, dict) else None
        if isinstance(detail, dict) and detail.get("message"):
            return detail["message"]
        if isinstance(detail, str):
            return detail
        return response.reason_phrase or str(exc)
    return str(exc)


class ElevenLabsClient:
    """Text-to-speech and speech-to-speech through the ElevenLabs HTTP API.

    Both calls return the raw audio bytes; writing them to disk is left to
    the caller so that it owns the resulting file.
    """

    def __init__(
        self,
        config: ElevenLabsConfig,
        retry: Optional[RetryConfig] = None,
        defaults: Optional[VoiceSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self.config = config
        self.voice_id = config.voice_id
        self.retry = retry or RetryConfig()
        self.defaults = defaults or VoiceSettings()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"xi-api-key": self.config.api_key},
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def _post_audio(self, url: str, **kwargs) -> bytes:
        client = self._ensure_client()

        async def _call() -> bytes:
            response = await client.post(
                url,
                params={"output_format": self.config.output_format},
                headers={"Accept": "audio/mpeg"},
                **kwargs,
            )
            response.raise_for_status()
            if not response.content:
                raise SynthesisError(f"Empty audio response (status {response.status_code})")
            return response.content

        return await with_retry(
            _call,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay,
            sleep=self._sleep,
        )

    async def text_to_speech(self, text: str, overrides: Optional[VoiceOverrides] = None) -> bytes:
        settings = self.defaults.with_overrides(overrides)
        logger.info("[TTS] Generating voice {} for {} chars", self.voice_id, len(text))
        logger.debug("[TTS] Voice settings: {}", settings.model_dump())

        payload = {
            "text": text,
            "model_id": self.config.model,
            "voice_settings": settings.model_dump(),
        }
        try:
            audio = await self._post_audio(f"/v1/text-to-speech/{self.voice_id}", json=payload)
        except Exception as e:
            logger.error("[TTS] ElevenLabs text-to-speech failed: {}", e)
            raise SynthesisError(f"Error al generar audio (TTS): {describe_http_error(e)}") from e

        logger.info("[TTS] Received {} bytes of audio", len(audio))
        return audio

    async def speech_to_speech(self, source: Path) -> bytes:
        logger.info("[STS] Transforming {} with voice {}", source.name, self.voice_id)
        try:
            if not source.is_file():
                raise ArtifactError(f"Archivo de audio de entrada no encontrado: {source.name}")
            audio_in = source.read_bytes()
        except OSError as e:
            raise ArtifactError(f"No se pudo leer el audio de entrada: {e}") from e

        files = {"audio": (f"input_{source.name}", audio_in, "audio/mpeg")}
        data = {
            "model_id": self.config.sts_model,
            "voice_settings": json.dumps(self.defaults.for_speech_to_speech()),
        }
        try:
            audio = await self._post_audio(
                f"/v1/speech-to-speech/{self.voice_id}", files=files, data=data
            )
        except Exception as e:
            logger.error("[STS] ElevenLabs speech-to-speech failed: {}", e)
            message = describe_http_error(e)
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 400:
                message += STS_BAD_REQUEST_HINT
            raise SynthesisError(f"Error al transformar audio (STS): {message}") from e

        logger.info("[STS] Received {} bytes of transformed audio", len(audio))
        return audio

    async def verify(self) -> None:
        """Check the API key and that the configured voice exists."""
        client = self._ensure_client()
        logger.info("Verifying ElevenLabs...")

        try:
            response = await client.get("/v1/user")
            response.raise_for_status()
            user = response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                raise StartupVerificationError("ElevenLabs API key is invalid (401).") from e
            raise StartupVerificationError(f"ElevenLabs check failed: {describe_http_error(e)}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise StartupVerificationError(f"ElevenLabs check failed: {e}") from e

        subscription = user.get("subscription") if isinstance(user, dict) else None
        if not subscription:
            raise StartupVerificationError("ElevenLabs answered with an unexpected user payload.")
        logger.info("ElevenLabs connection verified. Tier: {}", subscription.get("tier", "unknown"))

        try:
            response = await client.get(f"/v1/voices/{self.voice_id}", headers={"Accept": "application/json"})
            response.raise_for_status()
            voice = response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise StartupVerificationError(f"Voice {self.voice_id} was not found in the ElevenLabs account.") from e
            raise StartupVerificationError(f"Could not verify voice {self.voice_id}: {describe_http_error(e)}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise StartupVerificationError(f"Could not verify voice {self.voice_id}: {e}") from e

        if voice.get("voice_id") != self.voice_id:
            logger.warning("Voice {} does not match the API response.", self.voice_id)
        else:
            logger.info("Voice {} found: {}", self.voice_id, voice.get("name"))

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
