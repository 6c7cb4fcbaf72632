import os
import tempfile
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field

from core.errors import ConfigError

REQUIRED_ENV = ("BOT_TOKEN", "ELEVEN_API_KEY", "AUTHORIZED_USERS")

DEFAULT_VOICE_ID = "D7SBnF4n4o91eIeXkdar"


class TelegramConfig(BaseModel):
    token: str
    request_timeout: float = 60.0  # seconds


class OpenAIConfig(BaseModel):
    api_key: str = ""
    model: str = "gpt-4-turbo-preview"
    verify_model: str = "gpt-3.5-turbo"
    max_tokens: int = 500
    temperature: float = 0.8

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


class ElevenLabsConfig(BaseModel):
    api_key: str
    base_url: str = "https://api.elevenlabs.io"
    voice_id: str = DEFAULT_VOICE_ID
    model: str = "eleven_multilingual_v2"
    sts_model: str = "eleven_multilingual_sts_v2"
    output_format: str = "mp3_44100_128"
    timeout: float = 60.0


class RetryConfig(BaseModel):
    max_attempts: int = 3
    base_delay: float = 5.0  # seconds, doubled on each attempt


class AppConfig(BaseModel):
    telegram: TelegramConfig
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    elevenlabs: ElevenLabsConfig
    retry: RetryConfig = Field(default_factory=RetryConfig)
    authorized_users: frozenset[int] = frozenset()
    admin_users: frozenset[int] = frozenset()
    history_pairs: int = 10
    tmp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "voice-relay")
    status_port: Optional[int] = None

    @property
    def generation_enabled(self) -> bool:
        return self.openai.enabled


def parse_user_ids(raw: Optional[str], name: str = "users") -> frozenset[int]:
    """Parse a comma-separated id list, skipping entries that are not integers."""
    if not raw:
        return frozenset()
    ids = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            ids.add(int(item))
        except ValueError:
            logger.warning("Ignoring invalid {} entry: {!r}", name, item)
    return frozenset(ids)


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build the application config from environment variables.

    Raises ConfigError when a required variable is missing or a numeric
    variable cannot be parsed.
    """
    if env is None:
        env = os.environ

    missing = [key for key in REQUIRED_ENV if not env.get(key, "").strip()]
    if missing:
        raise ConfigError("Missing required environment variables: " + ", ".join(missing))

    if not env.get("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set. Text generation is disabled.")
    if not env.get("ELEVEN_VOICE_ID"):
        logger.warning("ELEVEN_VOICE_ID not set. Using default voice {}.", DEFAULT_VOICE_ID)

    openai = OpenAIConfig(api_key=env.get("OPENAI_API_KEY", "").strip())
    if env.get("OPENAI_MODEL"):
        openai.model = env["OPENAI_MODEL"].strip()

    elevenlabs = ElevenLabsConfig(
        api_key=env["ELEVEN_API_KEY"].strip(),
        voice_id=env.get("ELEVEN_VOICE_ID", "").strip() or DEFAULT_VOICE_ID,
    )

    status_port = None
    raw_port = env.get("STATUS_PORT", "").strip()
    if raw_port:
        try:
            status_port = int(raw_port)
        except ValueError as exc:
            raise ConfigError(f"STATUS_PORT must be an integer, got {raw_port!r}") from exc

    config = AppConfig(
        telegram=TelegramConfig(token=env["BOT_TOKEN"].strip()),
        openai=openai,
        elevenlabs=elevenlabs,
        authorized_users=parse_user_ids(env.get("AUTHORIZED_USERS"), "AUTHORIZED_USERS"),
        admin_users=parse_user_ids(env.get("ADMIN_USERS"), "ADMIN_USERS"),
        status_port=status_port,
    )
    if env.get("RELAY_TMP_DIR"):
        config.tmp_dir = Path(env["RELAY_TMP_DIR"])

    logger.info(
        "Configuration loaded: {} authorized, {} admin, generation {}",
        len(config.authorized_users),
        len(config.admin_users),
        "enabled" if config.generation_enabled else "disabled",
    )
    return config
