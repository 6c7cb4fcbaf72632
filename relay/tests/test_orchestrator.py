"""Tests for request routing and the three pipelines, with in-memory fakes."""
import asyncio
import shutil
from pathlib import Path
from typing import Optional

import pytest
from audio.artifacts import ArtifactStore
from audio.settings import VoiceSettings
from core.errors import GenerationError, SynthesisError
from core.operations import OperationKind
from core.state import SessionContext
from llm.base import BaseLLM
from messaging import replies
from messaging.channel import ChannelError, DownloadedFile, IncomingMessage, MessageKind
from messaging.orchestrator import RequestOrchestrator

USER = 111
STRANGER = 999


class FakeChannel:
    def __init__(
        self,
        fail_html: bool = False,
        fail_send_audio: bool = False,
        fail_texts: tuple[str, ...] = (),
        fail_edit: bool = False,
        fail_action: bool = False,
    ):
        self.sent: list[tuple[str, Optional[str]]] = []
        self.edits: list[tuple[int, str]] = []
        self.deleted: list[int] = []
        self.actions: list[str] = []
        self.audio: list[bytes] = []
        self.fail_html = fail_html
        self.fail_send_audio = fail_send_audio
        self.fail_texts = fail_texts
        self.fail_edit = fail_edit
        self.fail_action = fail_action
        self._next_id = 100

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.sent] + [text for _, text in self.edits]

    async def send_text(self, text, parse_mode=None):
        if parse_mode == "HTML" and self.fail_html:
            raise ChannelError("can't parse entities")
        if text in self.fail_texts:
            raise ChannelError("message rejected")
        self._next_id += 1
        self.sent.append((text, parse_mode))
        return self._next_id

    async def edit_text(self, message_id, text):
        if self.fail_edit:
            raise ChannelError("message can't be edited")
        self.edits.append((message_id, text))

    async def delete(self, message_id):
        self.deleted.append(message_id)

    async def send_action(self, action):
        if self.fail_action:
            raise ChannelError("chat action failed")
        self.actions.append(action)

    async def send_audio(self, path: Path):
        if self.fail_send_audio:
            raise ChannelError("upload failed")
        self.audio.append(path.read_bytes())

    async def download(self, file_id):
        return DownloadedFile(data=b"input-" + file_id.encode(), file_path=f"voice/{file_id}.oga")


class FakeLLM(BaseLLM):
    def __init__(self, reply="Respuesta de Javier", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: list[list[dict]] = []
        self.started = asyncio.Event()
        self.gate: Optional[asyncio.Event] = None

    async def complete(self, messages):
        self.calls.append(messages)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply

    async def verify(self):
        pass


class FakeVoice:
    def __init__(self, error: Optional[Exception] = None):
        self.defaults = VoiceSettings()
        self.error = error
        self.tts_calls = []
        self.sts_calls = []

    async def text_to_speech(self, text, overrides=None):
        self.tts_calls.append((text, overrides))
        if self.error is not None:
            raise self.error
        return b"tts-audio"

    async def speech_to_speech(self, source: Path):
        self.sts_calls.append(source.read_bytes())
        if self.error is not None:
            raise self.error
        return b"sts-audio"


def command(name, args="", user_id=USER, message_id=1):
    return IncomingMessage(user_id, message_id, MessageKind.COMMAND, text=f"/{name} {args}".strip(),
                           command=name, args=args)


def text(body, user_id=USER):
    return IncomingMessage(user_id, 2, MessageKind.TEXT, text=body)


def voice(file_id="abc", user_id=USER, kind=MessageKind.VOICE):
    return IncomingMessage(user_id, 3, kind, file_id=file_id)


@pytest.fixture
def context():
    return SessionContext.create({USER}, set(), lambda: "SYSTEM")


@pytest.fixture
def artifacts(tmp_path):
    store = ArtifactStore(tmp_path / "artifacts")
    store.prepare()
    return store


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def fake_voice():
    return FakeVoice()


@pytest.fixture
def orchestrator(context, fake_voice, artifacts, llm):
    return RequestOrchestrator(context, fake_voice, artifacts, llm=llm)


def leftover_files(artifacts: ArtifactStore) -> list[Path]:
    return list(artifacts.base_dir.iterdir())


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_rejected(self, orchestrator, context, llm, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(text("hola", user_id=STRANGER), channel)
        await orchestrator.handle(command("t2v", "Hola", user_id=STRANGER), channel)

        assert channel.texts == [replies.UNAUTHORIZED.format(user_id=STRANGER)] * 2
        assert STRANGER not in context.sessions
        assert not context.conversations.has(STRANGER)
        assert llm.calls == []
        assert fake_voice.tts_calls == []

    @pytest.mark.asyncio
    async def test_missing_user_ignored(self, orchestrator):
        channel = FakeChannel()
        await orchestrator.handle(text("hola", user_id=None), channel)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_session_created(self, orchestrator, context):
        await orchestrator.handle(command("help"), FakeChannel())
        assert USER in context.sessions


class TestChat:
    @pytest.mark.asyncio
    async def test_implicit_chat(self, orchestrator, context, llm):
        channel = FakeChannel()
        await orchestrator.handle(text("¿Qué tal el rodaje?"), channel)

        assert llm.calls[0][0] == {"role": "system", "content": "SYSTEM"}
        assert llm.calls[0][-1] == {"role": "user", "content": "¿Qué tal el rodaje?"}
        history = context.conversations.get(USER)
        assert history[-1] == {"role": "assistant", "content": "Respuesta de Javier"}
        assert channel.sent[0][0] == replies.THINKING
        assert channel.edits[-1][1] == "Respuesta de Javier"
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_chat_command(self, orchestrator, llm):
        channel = FakeChannel()
        await orchestrator.handle(command("t", "Hola Javier"), channel)
        assert llm.calls[0][-1]["content"] == "Hola Javier"

    @pytest.mark.asyncio
    async def test_chat_command_without_text(self, orchestrator, llm):
        channel = FakeChannel()
        await orchestrator.handle(command("t"), channel)
        assert channel.sent == [(replies.CHAT_USAGE, "HTML")]
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_backend_failure_reported(self, orchestrator, context, llm):
        llm.error = GenerationError("sin cuota")
        channel = FakeChannel()
        await orchestrator.handle(text("hola"), channel)

        assert channel.edits[-1][1] == replies.CHAT_ERROR.format(error="sin cuota")
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_unexpected_failure_releases_lock(self, orchestrator, context, llm):
        llm.error = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            await orchestrator.handle(text("hola"), FakeChannel())
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_second_request_while_busy(self, orchestrator, context, llm):
        llm.gate = asyncio.Event()
        first = FakeChannel()
        task = asyncio.create_task(orchestrator.handle(text("primera"), first))
        await llm.started.wait()
        assert context.operations.get(USER) is OperationKind.GENERATING_TEXT

        second = FakeChannel()
        await orchestrator.handle(text("segunda"), second)
        assert second.texts == [replies.BUSY]

        llm.gate.set()
        await task
        assert len(llm.calls) == 1
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_disabled(self, context, fake_voice, artifacts):
        orchestrator = RequestOrchestrator(context, fake_voice, artifacts, llm=None)
        channel = FakeChannel()
        await orchestrator.handle(text("hola"), channel)
        await orchestrator.handle(command("t", "hola"), channel)
        await orchestrator.handle(command("reset"), channel)
        assert channel.texts == [replies.CHAT_DISABLED, replies.CHAT_COMMAND_DISABLED, replies.RESET_DISABLED]


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_without_history(self, orchestrator, context):
        channel = FakeChannel()
        await orchestrator.handle(command("reset"), channel)
        assert channel.texts == [replies.RESET_DONE]
        assert not context.conversations.has(USER)

    @pytest.mark.asyncio
    async def test_reset_clears_history(self, orchestrator, context):
        await orchestrator.handle(text("hola"), FakeChannel())
        assert context.conversations.has(USER)
        await orchestrator.handle(command("reset"), FakeChannel())
        assert not context.conversations.has(USER)


class TestTextToSpeech:
    @pytest.mark.asyncio
    async def test_success(self, orchestrator, context, fake_voice, artifacts):
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", '-s 0.4 -v 1.1 "Hola"'), channel)

        body, overrides = fake_voice.tts_calls[0]
        assert body == "Hola"
        assert overrides.stability == 0.4
        assert overrides.speed == 1.1
        assert channel.audio == [b"tts-audio"]
        assert channel.deleted
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_parse_error_makes_no_backend_call(self, orchestrator, context, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", '-s abc "Hola"'), channel)
        assert fake_voice.tts_calls == []
        assert "abc" in channel.sent[0][0]
        assert channel.sent[0][1] == "HTML"
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_trailing_flag(self, orchestrator, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", '"Hola" -s'), channel)
        assert fake_voice.tts_calls == []

    @pytest.mark.asyncio
    async def test_empty_body(self, orchestrator, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", "-s 0.5"), channel)
        assert channel.sent == [(replies.SPEECH_EMPTY, "HTML")]
        assert fake_voice.tts_calls == []

    @pytest.mark.asyncio
    async def test_backend_error(self, orchestrator, context, fake_voice, artifacts):
        fake_voice.error = SynthesisError("quota")
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", "Hola"), channel)
        assert channel.edits[-1][1] == replies.SPEECH_ERROR.format(error="quota")
        assert channel.audio == []
        assert not context.operations.has(USER)
        assert leftover_files(artifacts) == []

    @pytest.mark.asyncio
    async def test_delivery_error_cleans_up(self, orchestrator, context, artifacts):
        channel = FakeChannel(fail_send_audio=True)
        await orchestrator.handle(command("t2v", "Hola"), channel)
        assert "upload failed" in channel.edits[-1][1]
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)


class TestVoiceTransform:
    @pytest.mark.asyncio
    async def test_full_flow(self, orchestrator, context, fake_voice, artifacts):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        assert channel.texts == [replies.VOICE_ARMED]
        assert context.voice_intents.get_intent(USER) == 1

        await orchestrator.handle(voice("abc"), channel)
        assert fake_voice.sts_calls == [b"input-abc"]
        assert channel.audio == [b"sts-audio"]
        assert context.voice_intents.get_intent(USER) is None
        assert not context.operations.has(USER)
        assert leftover_files(artifacts) == []

    @pytest.mark.asyncio
    async def test_intent_is_one_shot(self, orchestrator, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(voice("first"), channel)
        await orchestrator.handle(voice("second", kind=MessageKind.AUDIO), channel)

        assert len(fake_voice.sts_calls) == 1
        assert channel.sent[-1][0] == replies.VOICE_UNSOLICITED.format(label=replies.LABELS["audio"])

    @pytest.mark.asyncio
    async def test_unsolicited_audio(self, orchestrator, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(voice(), channel)
        assert channel.texts == [replies.VOICE_UNSOLICITED.format(label=replies.LABELS["voice"])]
        assert fake_voice.sts_calls == []

    @pytest.mark.asyncio
    async def test_already_armed(self, orchestrator, context):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(command("v2v"), channel)
        assert channel.texts[-1] == replies.VOICE_ALREADY_ARMED
        assert context.voice_intents.pending_count() == 1

    @pytest.mark.asyncio
    async def test_text_cancels_intent(self, orchestrator, context, llm):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(text("hola"), channel)
        assert channel.texts[-1] == replies.VOICE_CANCELLED_BY_TEXT
        assert context.voice_intents.get_intent(USER) is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_other_command_cancels_intent(self, orchestrator, context):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(command("reset"), channel)
        assert channel.texts[1:] == [replies.VOICE_CANCELLED_BY_COMMAND, replies.RESET_DONE]
        assert context.voice_intents.get_intent(USER) is None

    @pytest.mark.asyncio
    async def test_busy_rejects_arming(self, orchestrator, context):
        context.operations.set(USER, OperationKind.TEXT_TO_VOICE)
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        assert channel.texts == [replies.BUSY]
        assert context.voice_intents.get_intent(USER) is None

    @pytest.mark.asyncio
    async def test_busy_consumes_intent(self, orchestrator, context, fake_voice):
        context.voice_intents.set_intent(USER, 1)
        context.operations.set(USER, OperationKind.GENERATING_TEXT)
        channel = FakeChannel()
        await orchestrator.handle(voice(), channel)
        assert channel.texts == [replies.BUSY_BEFORE_AUDIO]
        assert context.voice_intents.get_intent(USER) is None
        assert fake_voice.sts_calls == []

    @pytest.mark.asyncio
    async def test_backend_error_cleans_up(self, orchestrator, context, fake_voice, artifacts):
        fake_voice.error = SynthesisError("bad audio")
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(voice(), channel)
        assert channel.edits[-1][1] == replies.VOICE_ERROR.format(error="bad audio")
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_unexpected_error_cleans_up(self, orchestrator, context, fake_voice, artifacts):
        fake_voice.error = RuntimeError("bug")
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        with pytest.raises(RuntimeError):
            await orchestrator.handle(voice(), channel)
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)


class TestHelpAndFaults:
    @pytest.mark.asyncio
    async def test_help_html(self, orchestrator):
        channel = FakeChannel()
        await orchestrator.handle(command("start"), channel)
        assert channel.sent[0][1] == "HTML"
        assert "/t2v" in channel.sent[0][0]

    @pytest.mark.asyncio
    async def test_help_falls_back_to_plain(self, orchestrator):
        channel = FakeChannel(fail_html=True)
        await orchestrator.handle(command("help"), channel)
        plain, mode = channel.sent[0]
        assert mode is None
        assert "<b>" not in plain

    @pytest.mark.asyncio
    async def test_unknown_command_ignored(self, orchestrator):
        channel = FakeChannel()
        await orchestrator.handle(command("foo"), channel)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_handle_fault_clears_state(self, orchestrator, context):
        context.operations.set(USER, OperationKind.TRANSFORMING_VOICE)
        context.voice_intents.set_intent(USER, 9)
        channel = FakeChannel()
        await orchestrator.handle_fault(USER, channel, RuntimeError("boom"))

        assert not context.operations.has(USER)
        assert context.voice_intents.get_intent(USER) is None
        assert channel.texts == [replies.UNEXPECTED_ERROR]

    @pytest.mark.asyncio
    async def test_handle_fault_without_user(self, orchestrator):
        await orchestrator.handle_fault(None, None, RuntimeError("boom"))


class TestFeedbackFailures:
    @pytest.mark.asyncio
    async def test_chat_without_thinking_message(self, orchestrator, context):
        channel = FakeChannel(fail_texts=(replies.THINKING,))
        await orchestrator.handle(text("hola"), channel)

        assert channel.sent == [("Respuesta de Javier", None)]
        assert channel.actions == []
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_chat_edit_fails_sends_new_message(self, orchestrator, context):
        channel = FakeChannel(fail_edit=True, fail_action=True)
        await orchestrator.handle(text("hola"), channel)

        assert [text for text, _ in channel.sent] == [replies.THINKING, "Respuesta de Javier"]
        assert channel.deleted == [101]
        assert context.conversations.get(USER)[-1]["content"] == "Respuesta de Javier"
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_chat_error_edit_fails_sends_new_message(self, orchestrator, context, llm):
        llm.error = GenerationError("sin cuota")
        channel = FakeChannel(fail_edit=True)
        await orchestrator.handle(text("hola"), channel)

        assert channel.sent[-1][0] == replies.CHAT_ERROR.format(error="sin cuota")
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_text_to_speech_without_progress_message(self, orchestrator, context, artifacts):
        channel = FakeChannel(fail_texts=(replies.SPEECH_PREPARING,), fail_action=True)
        await orchestrator.handle(command("t2v", "Hola"), channel)

        assert channel.audio == [b"tts-audio"]
        assert channel.edits == []
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_text_to_speech_edit_and_action_fail(self, orchestrator, context, artifacts):
        channel = FakeChannel(fail_edit=True, fail_action=True)
        await orchestrator.handle(command("t2v", "Hola"), channel)

        assert channel.audio == [b"tts-audio"]
        assert channel.deleted == [101]
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_voice_transform_with_all_feedback_failing(self, orchestrator, context, artifacts):
        label = replies.LABELS["voice"]
        channel = FakeChannel(
            fail_texts=(replies.VOICE_RECEIVED.format(label=label),),
            fail_edit=True,
            fail_action=True,
        )
        await orchestrator.handle(command("v2v"), channel)
        await orchestrator.handle(voice(), channel)

        assert channel.audio == [b"sts-audio"]
        assert context.voice_intents.get_intent(USER) is None
        assert leftover_files(artifacts) == []
        assert not context.operations.has(USER)


class TestTempDirectoryFailures:
    @pytest.mark.asyncio
    async def test_text_to_speech_reports_missing_dir(self, orchestrator, context, artifacts, fake_voice):
        shutil.rmtree(artifacts.base_dir)
        channel = FakeChannel()
        await orchestrator.handle(command("t2v", "Hola"), channel)

        assert len(fake_voice.tts_calls) == 1
        assert channel.audio == []
        assert channel.edits[-1][1].startswith(replies.SPEECH_ERROR.format(error=""))
        assert replies.UNEXPECTED_ERROR not in channel.texts
        assert not context.operations.has(USER)

    @pytest.mark.asyncio
    async def test_voice_transform_reports_missing_dir(self, orchestrator, context, artifacts, fake_voice):
        channel = FakeChannel()
        await orchestrator.handle(command("v2v"), channel)
        shutil.rmtree(artifacts.base_dir)
        await orchestrator.handle(voice(), channel)

        assert fake_voice.sts_calls == []
        assert channel.edits[-1][1].startswith(replies.VOICE_ERROR.format(error=""))
        assert not context.operations.has(USER)
