from typing import Awaitable, Optional

from loguru import logger

from audio.artifacts import ArtifactStore
from audio.elevenlabs import ElevenLabsClient
from core.errors import BackendError
from core.operations import OperationKind
from core.state import SessionContext
from llm.base import BaseLLM
from messaging import replies
from messaging.channel import ChannelError, ChatChannel, IncomingMessage, MessageKind
from messaging.commands import ParseFailure, parse_speech_command

HTML = "HTML"

DEFAULT_SUFFIX = {
    MessageKind.VOICE: ".ogg",
    MessageKind.AUDIO: ".mp3",
}


class RequestOrchestrator:
    """Routes inbound messages to the chat, text-to-speech and voice-transform pipelines.

    Each pipeline takes the user's operation lock before its first await and
    releases it in a ``finally`` block. Temporary audio files live in an
    artifact scope that is closed on every exit path.
    """

    def __init__(
        self,
        context: SessionContext,
        voice: ElevenLabsClient,
        artifacts: ArtifactStore,
        llm: Optional[BaseLLM] = None,
    ):
        self.context = context
        self.voice = voice
        self.artifacts = artifacts
        self.llm = llm
        self._commands = {
            "start": self.handle_help,
            "help": self.handle_help,
            "t": self.handle_chat_command,
            "t2v": self.handle_text_to_speech,
            "v2v": self.handle_voice_command,
            "reset": self.handle_reset,
        }

    @property
    def generation_enabled(self) -> bool:
        return self.llm is not None

    # -- Entry point ------------------------------------------------------

    async def handle(self, message: IncomingMessage, channel: ChatChannel) -> None:
        """Authorize the sender, refresh their session and dispatch by message kind."""
        user_id = message.user_id
        if not user_id:
            return

        if not self.context.access.is_authorized(user_id):
            logger.warning("Unauthorized user {} tried to use the bot.", user_id)
            await self._send(channel, replies.UNAUTHORIZED.format(user_id=user_id))
            return

        self.context.touch_session(user_id)

        if message.kind is MessageKind.COMMAND:
            await self._dispatch_command(message, channel)
        elif message.is_audio:
            await self.handle_audio(message, channel)
        else:
            await self.handle_text(message, channel)

    async def _dispatch_command(self, message: IncomingMessage, channel: ChatChannel) -> None:
        handler = self._commands.get(message.command or "")
        if handler is None:
            logger.debug("Ignoring unknown command /{} from {}", message.command, message.user_id)
            return

        # Any command other than /v2v ends a pending voice transform
        if message.command != "v2v" and self.context.voice_intents.consume(message.user_id) is not None:
            logger.info("Pending voice transform for {} cancelled by /{}", message.user_id, message.command)
            await self._send(channel, replies.VOICE_CANCELLED_BY_COMMAND)

        logger.info("/{} requested by user {}", message.command, message.user_id)
        await handler(message, channel)

    async def handle_fault(self, user_id: Optional[int], channel: Optional[ChatChannel], error: BaseException) -> None:
        """Last-resort handler for errors that escaped a pipeline.

        Clears the user's lock and voice intent so one failure cannot
        block them for the rest of the process lifetime.
        """
        logger.opt(exception=error).error("Unhandled error for user {}", user_id or "unknown")
        if user_id:
            self.context.force_clear(user_id)
            logger.warning("Pending operation and voice intent cleared for {} after error.", user_id)
        if channel is not None:
            await self._send(channel, replies.UNEXPECTED_ERROR)

    # -- Commands -----------------------------------------------------------

    async def handle_help(self, message: IncomingMessage, channel: ChatChannel) -> None:
        help_text = replies.build_help(self.voice.defaults)
        try:
            await channel.send_text(help_text, parse_mode=HTML)
            return
        except ChannelError as e:
            logger.error("Sending HTML help to {} failed: {}", message.user_id, e)

        try:
            await channel.send_text(replies.to_plain(help_text))
        except ChannelError as e:
            logger.error("Sending plain help to {} failed: {}", message.user_id, e)
            await self._send(channel, replies.HELP_FALLBACK)

    async def handle_chat_command(self, message: IncomingMessage, channel: ChatChannel) -> None:
        if not self.generation_enabled:
            await self._send(channel, replies.CHAT_COMMAND_DISABLED)
            return
        if not message.args.strip():
            await self._send(channel, replies.CHAT_USAGE, parse_mode=HTML)
            return
        await self.run_chat(message.user_id, message.args.strip(), channel)

    async def handle_reset(self, message: IncomingMessage, channel: ChatChannel) -> None:
        if not self.generation_enabled:
            await self._send(channel, replies.RESET_DISABLED)
            return
        self.context.conversations.reset(message.user_id)
        await self._send(channel, replies.RESET_DONE)

    async def handle_voice_command(self, message: IncomingMessage, channel: ChatChannel) -> None:
        user_id = message.user_id
        if self.context.operations.has(user_id):
            logger.warning("/v2v rejected for {}: operation in progress.", user_id)
            await self._send(channel, replies.BUSY)
            return
        if self.context.voice_intents.get_intent(user_id) is not None:
            await self._send(channel, replies.VOICE_ALREADY_ARMED)
            return

        self.context.voice_intents.set_intent(user_id, message.message_id)
        try:
            await channel.send_text(replies.VOICE_ARMED)
        except ChannelError as e:
            logger.error("Could not confirm /v2v to {}: {}", user_id, e)
            self.context.voice_intents.clear_intent(user_id)
            await self._send(channel, replies.VOICE_ARM_ERROR)

    # -- Plain messages ---------------------------------------------------

    async def handle_text(self, message: IncomingMessage, channel: ChatChannel) -> None:
        text = message.text.strip()
        if not text or text.startswith("/"):
            return

        user_id = message.user_id
        if self.context.voice_intents.consume(user_id) is not None:
            logger.info("Pending voice transform for {} cancelled by a text message.", user_id)
            await self._send(channel, replies.VOICE_CANCELLED_BY_TEXT)
            return

        if not self.generation_enabled:
            await self._send(channel, replies.CHAT_DISABLED)
            return
        await self.run_chat(user_id, text, channel)

    async def handle_audio(self, message: IncomingMessage, channel: ChatChannel) -> None:
        label = replies.LABELS[message.kind.value]
        logger.info("Received {} from {}", message.kind.value, message.user_id)

        # Consumed before anything else so a second audio cannot reuse it
        if self.context.voice_intents.consume(message.user_id) is None:
            await self._send(channel, replies.VOICE_UNSOLICITED.format(label=label))
            return
        await self.run_voice_transform(message, channel)

    # -- Pipelines ----------------------------------------------------------

    async def run_chat(self, user_id: int, text: str, channel: ChatChannel) -> None:
        """Send the conversation to the generation backend and deliver the reply."""
        if self.llm is None:
            await self._send(channel, replies.CHAT_DISABLED)
            return
        if not self.context.operations.try_acquire(user_id, OperationKind.GENERATING_TEXT):
            await self._send(channel, replies.BUSY)
            return

        progress = None
        try:
            progress = await self._feedback(channel.send_text(replies.THINKING))
            if progress is not None:
                await self._feedback(channel.send_action("typing"))

            conversations = self.context.conversations
            conversations.append(user_id, "user", text)
            reply = await self.llm.complete(list(conversations.get(user_id)))
            conversations.append(user_id, "assistant", reply)

            await self._deliver_text(channel, progress, reply)
        except BackendError as e:
            logger.error("Chat pipeline failed for {}: {}", user_id, e)
            await self._report(channel, progress, replies.CHAT_ERROR.format(error=e))
        finally:
            self.context.operations.release(user_id)

    async def handle_text_to_speech(self, message: IncomingMessage, channel: ChatChannel) -> None:
        user_id = message.user_id
        parsed = parse_speech_command(message.args)
        if isinstance(parsed, ParseFailure):
            logger.warning("/t2v parse error for {}: {}", user_id, parsed.message)
            await self._send(
                channel,
                replies.SPEECH_PARSE_ERROR.format(error=replies.escape(parsed.message)),
                parse_mode=HTML,
            )
            return
        if not parsed.body:
            await self._send(channel, replies.SPEECH_EMPTY, parse_mode=HTML)
            return

        if not self.context.operations.try_acquire(user_id, OperationKind.TEXT_TO_VOICE):
            await self._send(channel, replies.BUSY)
            return

        logger.info("/t2v for {}: {} chars, overrides {}", user_id, len(parsed.body),
                    parsed.overrides.model_dump(exclude_none=True))
        progress = None
        try:
            with self.artifacts.scope() as scope:
                progress = await self._feedback(channel.send_text(replies.SPEECH_PREPARING))
                await self._progress(channel, progress, replies.SPEECH_GENERATING, "record_voice")

                audio = await self.voice.text_to_speech(parsed.body, parsed.overrides)
                output = scope.write("tts_output", audio)

                await self._progress(channel, progress, replies.SPEECH_SENDING, "upload_voice")
                await channel.send_audio(self.artifacts.ensure_readable(output))
                logger.info("/t2v audio delivered to {}", user_id)
                await self._clear_progress(channel, progress)
        except (BackendError, ChannelError) as e:
            logger.error("Text-to-speech pipeline failed for {}: {}", user_id, e)
            await self._report(channel, progress, replies.SPEECH_ERROR.format(error=e))
        finally:
            self.context.operations.release(user_id)

    async def run_voice_transform(self, message: IncomingMessage, channel: ChatChannel) -> None:
        """Download the user's audio, re-voice it and send it back."""
        user_id = message.user_id
        if not self.context.operations.try_acquire(user_id, OperationKind.TRANSFORMING_VOICE):
            logger.warning("Audio from {} arrived while another operation is running.", user_id)
            await self._send(channel, replies.BUSY_BEFORE_AUDIO)
            return

        label = replies.LABELS[message.kind.value]
        logger.info("Starting voice transform for {} with {}", user_id, message.kind.value)
        progress = None
        try:
            with self.artifacts.scope() as scope:
                progress = await self._feedback(channel.send_text(replies.VOICE_RECEIVED.format(label=label)))
                if progress is not None:
                    await self._feedback(channel.send_action("typing"))

                download = await channel.download(message.file_id)
                source = scope.write("v2v_input", download.data, download.suffix or DEFAULT_SUFFIX[message.kind])

                await self._progress(channel, progress, replies.VOICE_TRANSFORMING, "record_voice")
                audio = await self.voice.speech_to_speech(source)
                output = scope.write("sts_output", audio)

                await self._progress(channel, progress, replies.VOICE_SENDING, "upload_voice")
                await channel.send_audio(self.artifacts.ensure_readable(output))
                logger.info("Transformed voice delivered to {}", user_id)
                await self._clear_progress(channel, progress)
        except (BackendError, ChannelError) as e:
            logger.error("Voice transform failed for {}: {}", user_id, e)
            await self._report(channel, progress, replies.VOICE_ERROR.format(error=e))
        finally:
            self.context.operations.release(user_id)
            logger.info("Voice transform finished for {}", user_id)

    # -- Delivery helpers ---------------------------------------------------

    @staticmethod
    async def _send(channel: ChatChannel, text: str, parse_mode: Optional[str] = None) -> None:
        try:
            await channel.send_text(text, parse_mode=parse_mode)
        except ChannelError as e:
            logger.error("Could not send message: {}", e)

    @staticmethod
    async def _feedback(call: Awaitable):
        """Await a progress/feedback call. Failures are ignored."""
        try:
            return await call
        except ChannelError as e:
            logger.debug("Feedback message failed: {}", e)
            return None

    async def _progress(self, channel: ChatChannel, progress: Optional[int], text: str, action: str) -> None:
        if progress is None:
            return
        await self._feedback(channel.edit_text(progress, text))
        await self._feedback(channel.send_action(action))

    async def _clear_progress(self, channel: ChatChannel, progress: Optional[int]) -> None:
        if progress is not None:
            await self._feedback(channel.delete(progress))

    async def _deliver_text(self, channel: ChatChannel, progress: Optional[int], text: str) -> None:
        """Replace the progress message with ``text``, or send it as a new message."""
        if progress is not None:
            try:
                await channel.edit_text(progress, text)
                return
            except ChannelError as e:
                logger.warning("Editing progress message failed, sending a new one: {}", e)
        await self._send(channel, text)
        await self._clear_progress(channel, progress)

    async def _report(self, channel: ChatChannel, progress: Optional[int], text: str) -> None:
        if progress is not None:
            try:
                await channel.edit_text(progress, text)
                return
            except ChannelError as e:
                logger.debug("Editing progress message with the error failed: {}", e)
        await self._send(channel, text)
