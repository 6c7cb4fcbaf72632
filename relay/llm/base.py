from abc import ABC, abstractmethod


class BaseLLM(ABC):
    """Abstract base class for text-generation backends."""

    @abstractmethod
    async def complete(self, messages: list[dict]) -> str:
        """Generate the assistant reply for a conversation.

        Args:
            messages: List of message dicts with "role" and "content" keys,
                      starting with the system prompt.

        Returns:
            The reply text, stripped.

        Raises:
            GenerationError: if the backend fails after all retries or
                             returns no content.
        """
        ...

    @abstractmethod
    async def verify(self) -> None:
        """Send a trivial request to confirm credentials and connectivity.

        Raises:
            StartupVerificationError: if the backend does not answer.
        """
        ...

    async def close(self):
        """Release network resources."""
        pass
