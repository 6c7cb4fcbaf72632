from pathlib import Path
from typing import Awaitable, Callable, Optional

from loguru import logger
from telegram import Bot, Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from core.config import TelegramConfig
from messaging.channel import ChannelError, DownloadedFile, IncomingMessage, MessageKind
from messaging.commands import extract_command
from messaging.orchestrator import RequestOrchestrator

LifecycleHook = Callable[[Application], Awaitable[None]]

# New messages only: edits would re-run paid backend calls
MESSAGE_FILTER = filters.UpdateType.MESSAGE & (filters.TEXT | filters.VOICE | filters.AUDIO)


class TelegramChannel:
    """ChatChannel bound to one Telegram chat."""

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def send_text(self, text: str, parse_mode: Optional[str] = None) -> int:
        try:
            message = await self.bot.send_message(self.chat_id, text, parse_mode=parse_mode)
        except TelegramError as e:
            raise ChannelError(f"send_message failed: {e}") from e
        return message.message_id

    async def edit_text(self, message_id: int, text: str) -> None:
        try:
            await self.bot.edit_message_text(text, chat_id=self.chat_id, message_id=message_id)
        except TelegramError as e:
            raise ChannelError(f"edit_message_text failed: {e}") from e

    async def delete(self, message_id: int) -> None:
        try:
            await self.bot.delete_message(self.chat_id, message_id)
        except TelegramError as e:
            raise ChannelError(f"delete_message failed: {e}") from e

    async def send_action(self, action: str) -> None:
        try:
            await self.bot.send_chat_action(self.chat_id, action)
        except TelegramError as e:
            raise ChannelError(f"send_chat_action failed: {e}") from e

    async def send_audio(self, path: Path) -> None:
        try:
            with path.open("rb") as audio:
                await self.bot.send_audio(self.chat_id, audio=audio)
        except TelegramError as e:
            raise ChannelError(f"No se pudo enviar el audio: {e}") from e
        except OSError as e:
            raise ChannelError(f"No se pudo leer el audio generado: {e}") from e

    async def download(self, file_id: str) -> DownloadedFile:
        try:
            tg_file = await self.bot.get_file(file_id)
            data = await tg_file.download_as_bytearray()
        except TelegramError as e:
            raise ChannelError(f"La descarga del audio desde Telegram falló: {e}") from e
        return DownloadedFile(data=bytes(data), file_path=tg_file.file_path or "")


def to_incoming(update: Update) -> Optional[IncomingMessage]:
    """Translate a Telegram update into an IncomingMessage, or None if unsupported."""
    message = update.effective_message
    if message is None:
        return None
    user_id = update.effective_user.id if update.effective_user else None

    if message.voice:
        return IncomingMessage(user_id, message.message_id, MessageKind.VOICE,
                               file_id=message.voice.file_id)
    if message.audio:
        return IncomingMessage(user_id, message.message_id, MessageKind.AUDIO,
                               file_id=message.audio.file_id)
    if message.text:
        command = extract_command(message.text)
        if command is not None:
            name, args = command
            return IncomingMessage(user_id, message.message_id, MessageKind.COMMAND,
                                   text=message.text, command=name, args=args)
        return IncomingMessage(user_id, message.message_id, MessageKind.TEXT, text=message.text)
    return None


def build_application(
    config: TelegramConfig,
    orchestrator: RequestOrchestrator,
    post_init: Optional[LifecycleHook] = None,
    post_shutdown: Optional[LifecycleHook] = None,
) -> Application:
    """Create the python-telegram-bot application wired to the orchestrator."""

    async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        incoming = to_incoming(update)
        if incoming is None or update.effective_chat is None:
            return
        channel = TelegramChannel(context.bot, update.effective_chat.id)
        await orchestrator.handle(incoming, channel)

    async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        user_id = None
        channel = None
        if isinstance(update, Update):
            if update.effective_user:
                user_id = update.effective_user.id
            if update.effective_chat:
                channel = TelegramChannel(context.bot, update.effective_chat.id)
        await orchestrator.handle_fault(user_id, channel, context.error)

    builder = (
        Application.builder()
        .token(config.token)
        .concurrent_updates(True)
        .read_timeout(config.request_timeout)
        .write_timeout(config.request_timeout)
    )
    if post_init is not None:
        builder = builder.post_init(post_init)
    if post_shutdown is not None:
        builder = builder.post_shutdown(post_shutdown)
    application = builder.build()

    application.add_handler(MessageHandler(MESSAGE_FILTER, on_message))
    application.add_error_handler(on_error)
    logger.info("Telegram handlers registered.")
    return application
