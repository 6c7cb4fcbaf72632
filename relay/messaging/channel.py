from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from core.errors import RelayError


class ChannelError(RelayError):
    """The messaging platform rejected a send, edit, delete or download."""


class MessageKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    VOICE = "voice"
    AUDIO = "audio"


@dataclass
class IncomingMessage:
    """A platform-neutral view of one inbound update."""

    user_id: Optional[int]
    message_id: int
    kind: MessageKind
    text: str = ""
    command: Optional[str] = None
    args: str = ""
    file_id: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return self.kind in (MessageKind.VOICE, MessageKind.AUDIO)


@dataclass
class DownloadedFile:
    data: bytes
    file_path: str = ""

    @property
    def suffix(self) -> str:
        return Path(self.file_path).suffix


class ChatChannel(Protocol):
    """Replies to the chat an incoming message came from.

    Implementations raise ChannelError when the platform call fails.
    """

    async def send_text(self, text: str, parse_mode: Optional[str] = None) -> int:
        """Send a message and return its id."""
        ...

    async def edit_text(self, message_id: int, text: str) -> None:
        ...

    async def delete(self, message_id: int) -> None:
        ...

    async def send_action(self, action: str) -> None:
        """Show a chat action such as "typing" or "record_voice"."""
        ...

    async def send_audio(self, path: Path) -> None:
        ...

    async def download(self, file_id: str) -> DownloadedFile:
        ...
