import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from loguru import logger
from telegram.ext import Application

from audio.artifacts import ArtifactStore
from audio.elevenlabs import ElevenLabsClient
from core.config import AppConfig, load_config
from core.errors import ArtifactError, ConfigError, StartupVerificationError
from core.state import SessionContext
from llm.prompts import build_system_prompt
from llm.providers.openai_provider import OpenAIProvider
from messaging.orchestrator import RequestOrchestrator
from messaging.telegram_bot import build_application

LOG_FORMAT = "{time:HH:mm:ss} | {level:<7} | {message}"


class InterceptHandler(logging.Handler):
    """Route standard-library log records (telegram, httpx) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, rotation="10 MB", retention="7 days", level="DEBUG")

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.INFO, force=True)
    # httpx logs every request at INFO, including the bot token in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)


class RelayBot:
    """Owns the long-lived components and the Telegram application lifecycle."""

    def __init__(self, config: AppConfig, artifacts: ArtifactStore):
        self.config = config
        self.context = SessionContext.create(
            authorized=config.authorized_users,
            admins=config.admin_users,
            system_prompt=build_system_prompt,
            history_pairs=config.history_pairs,
        )
        self.voice = ElevenLabsClient(config.elevenlabs, retry=config.retry)
        self.llm = OpenAIProvider(config.openai, retry=config.retry) if config.generation_enabled else None
        self.orchestrator = RequestOrchestrator(self.context, self.voice, artifacts, llm=self.llm)
        self._status_server = None

    def build(self) -> Application:
        return build_application(
            self.config.telegram,
            self.orchestrator,
            post_init=self.start,
            post_shutdown=self.shutdown,
        )

    async def start(self, application: Application):
        """Verify both backends before polling begins, then start the status API."""
        logger.info("Verifying backends...")
        if self.llm is not None:
            await self.llm.verify()
        else:
            logger.warning("Text generation disabled: skipping OpenAI verification.")
        await self.voice.verify()
        logger.info("Backends verified.")

        if self.config.status_port:
            from api.server import StatusServer, create_app

            app = create_app(self.context, self.config.generation_enabled)
            self._status_server = StatusServer(app, self.config.status_port)
            await self._status_server.start()

        logger.info("=== Voice relay bot ready ({} authorized users) ===",
                    self.context.access.authorized_count)

    async def shutdown(self, application: Application):
        """Graceful shutdown."""
        logger.info("Shutting down...")
        if self._status_server is not None:
            await self._status_server.stop()
        if self.llm is not None:
            await self.llm.close()
        await self.voice.close()
        logger.info("Shutdown complete.")


def run() -> int:
    """Start the bot and block until it stops. Returns the process exit code."""
    load_dotenv()
    setup_logging(os.environ.get("LOG_LEVEL", "INFO").upper(), os.environ.get("LOG_FILE"))

    logger.info("=== Voice relay bot starting ===")
    try:
        config = load_config()
    except ConfigError as e:
        logger.error("Configuration error: {}", e)
        return 1

    artifacts = ArtifactStore(config.tmp_dir)
    try:
        artifacts.prepare()
    except ArtifactError as e:
        logger.error("Temporary directory unavailable: {}", e)
        return 1

    try:
        bot = RelayBot(config, artifacts)
        bot.build().run_polling()
    except StartupVerificationError as e:
        logger.error("Startup verification failed: {}", e)
        return 1
    except Exception:
        logger.exception("Fatal error, stopping the bot.")
        return 1

    logger.info("Bot stopped.")
    return 0


def main():
    """Entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
