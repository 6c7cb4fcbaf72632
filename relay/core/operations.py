from enum import Enum
from typing import Optional

from loguru import logger


class OperationKind(str, Enum):
    GENERATING_TEXT = "generating-text"
    TEXT_TO_VOICE = "converting-text-to-voice"
    TRANSFORMING_VOICE = "transforming-voice"


class OperationTracker:
    """One long-running operation per user at a time.

    The check and the set in ``try_acquire`` happen without any await in
    between, which is what makes the lock safe on a single event loop.
    """

    def __init__(self):
        self._pending: dict[int, OperationKind] = {}

    def has(self, user_id: int) -> bool:
        return user_id in self._pending

    def get(self, user_id: int) -> Optional[OperationKind]:
        return self._pending.get(user_id)

    def set(self, user_id: int, kind: OperationKind) -> None:
        self._pending[user_id] = kind

    def try_acquire(self, user_id: int, kind: OperationKind) -> bool:
        if user_id in self._pending:
            logger.warning(
                "User {} already has a pending operation ({})",
                user_id, self._pending[user_id].value,
            )
            return False
        self._pending[user_id] = kind
        return True

    def release(self, user_id: int) -> None:
        self._pending.pop(user_id, None)

    def active_count(self) -> int:
        return len(self._pending)


class VoiceIntentTracker:
    """Users who asked for their next audio message to be transformed."""

    def __init__(self):
        self._intents: dict[int, int] = {}

    def set_intent(self, user_id: int, ref: int) -> None:
        logger.info("Voice transform armed for user {} (message {})", user_id, ref)
        self._intents[user_id] = ref

    def get_intent(self, user_id: int) -> Optional[int]:
        return self._intents.get(user_id)

    def clear_intent(self, user_id: int) -> None:
        self._intents.pop(user_id, None)

    def consume(self, user_id: int) -> Optional[int]:
        """Return and clear the pending intent in one step."""
        return self._intents.pop(user_id, None)

    def pending_count(self) -> int:
        return len(self._intents)
