from typing import Callable

from loguru import logger

ROLES = ("system", "user", "assistant")


class ConversationStore:
    """Per-user chat history for the generation backend.

    Every history starts with the system prompt and holds at most
    ``1 + 2 * max_pairs`` messages. When the cap is exceeded the oldest
    messages after the system prompt are dropped.
    """

    def __init__(self, system_prompt: Callable[[], str], max_pairs: int = 10):
        self._system_prompt = system_prompt
        self.max_pairs = max_pairs
        self._histories: dict[int, list[dict]] = {}

    @property
    def max_messages(self) -> int:
        return 1 + 2 * self.max_pairs

    def get(self, user_id: int) -> list[dict]:
        """Return the user's history, creating it with the system prompt if needed."""
        history = self._histories.get(user_id)
        if history is None:
            history = [{"role": "system", "content": self._system_prompt()}]
            self._histories[user_id] = history
        return history

    def append(self, user_id: int, role: str, content: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown conversation role: {role!r}")
        history = self.get(user_id)
        history.append({"role": role, "content": content})

        overflow = len(history) - self.max_messages
        if overflow > 0:
            del history[1:1 + overflow]
            logger.debug("[HISTORY] Dropped {} old message(s) for user {}", overflow, user_id)

    def reset(self, user_id: int) -> None:
        if self._histories.pop(user_id, None) is not None:
            logger.debug("[HISTORY] Conversation cleared for user {}", user_id)

    def has(self, user_id: int) -> bool:
        return user_id in self._histories

    def __len__(self) -> int:
        return len(self._histories)
