from typing import Iterable, Optional

from loguru import logger


class AccessRegistry:
    """Authorized and admin user ids, fixed at startup."""

    def __init__(self, authorized: Iterable[int], admins: Iterable[int] = ()):
        self._authorized = frozenset(authorized)
        self._admins = frozenset(admins)

        if not self._authorized:
            logger.warning("No authorized users configured. Nobody will be able to use the bot.")
        else:
            logger.info("Authorized users: {}", ", ".join(str(u) for u in sorted(self._authorized)))
        if self._admins:
            logger.info("Admin users: {}", ", ".join(str(u) for u in sorted(self._admins)))

    def is_authorized(self, user_id: Optional[int]) -> bool:
        return bool(user_id) and user_id in self._authorized

    def is_admin(self, user_id: Optional[int]) -> bool:
        return bool(user_id) and user_id in self._admins

    @property
    def authorized_count(self) -> int:
        return len(self._authorized)
