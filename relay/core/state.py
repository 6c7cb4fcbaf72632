import time
from dataclasses import dataclass, field
from typing import Callable

from core.access import AccessRegistry
from core.conversation import ConversationStore
from core.operations import OperationTracker, VoiceIntentTracker


@dataclass
class Session:
    user_id: int
    created_at: float = field(default_factory=time.time)
    last_action: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_action = time.time()


@dataclass
class SessionContext:
    """In-memory state shared by every handler. Lost on restart."""

    access: AccessRegistry
    conversations: ConversationStore
    operations: OperationTracker = field(default_factory=OperationTracker)
    voice_intents: VoiceIntentTracker = field(default_factory=VoiceIntentTracker)
    sessions: dict[int, Session] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        authorized: set[int] | frozenset[int],
        admins: set[int] | frozenset[int],
        system_prompt: Callable[[], str],
        history_pairs: int = 10,
    ) -> "SessionContext":
        return cls(
            access=AccessRegistry(authorized, admins),
            conversations=ConversationStore(system_prompt, max_pairs=history_pairs),
        )

    def touch_session(self, user_id: int) -> Session:
        """Create or refresh the session for an authorized user."""
        session = self.sessions.get(user_id)
        if session is None:
            session = Session(user_id=user_id)
            self.sessions[user_id] = session
        else:
            session.touch()
        return session

    def force_clear(self, user_id: int) -> None:
        """Drop the operation lock and voice intent after an unexpected fault."""
        self.operations.release(user_id)
        self.voice_intents.clear_intent(user_id)

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at
