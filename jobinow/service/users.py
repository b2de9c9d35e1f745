from __future__ import annotations

from typing import Optional

from jobinow.config import Settings
from jobinow.logging import get_logger
from jobinow.service.auth import UserDirectory
from jobinow.service.errors import NotFoundError
from jobinow.storage.common import clamp_page
from jobinow.storage.models import Page, Role, User, UserStatus

logger = get_logger(__name__)


class UserService:
    """Read-only directory listings over the user store."""

    def __init__(self, store: UserDirectory, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _page_args(self, page: int, size: Optional[int]) -> tuple[int, int]:
        return clamp_page(
            page,
            size if size is not None else self.settings.default_page_size,
            self.settings.max_page_size,
        )

    def list_users(self, page: int = 0, size: Optional[int] = None) -> Page[User]:
        page, size = self._page_args(page, size)
        return self.store.list_users(page, size)

    def list_by_role(
        self, role: Role, page: int = 0, size: Optional[int] = None
    ) -> Page[User]:
        page, size = self._page_args(page, size)
        return self.store.list_users_by_role(Role(role), page, size)

    def list_connected_users(
        self, page: int = 0, size: Optional[int] = None
    ) -> Page[User]:
        page, size = self._page_args(page, size)
        return self.store.list_users_by_status(UserStatus.ONLINE, page, size)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            logger.info("user_lookup_missed", user_id=user_id)
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user
