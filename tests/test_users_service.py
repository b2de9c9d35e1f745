"""Tests for directory listings and lookups."""

import pytest

from jobinow.config import Settings
from jobinow.service.errors import NotFoundError
from jobinow.service.users import UserService
from jobinow.storage.memory import MemoryStore
from jobinow.storage.models import Role, UserStatus


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        default_page_size=2,
        max_page_size=3,
    )


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    for role in Role:
        store.create_user(f"{role.value.lower()}@example.com", role=role)
    store.create_user("second.agent@example.com", role=Role.AGENT)
    return store


@pytest.fixture
def users(store, settings):
    return UserService(store, settings)


class TestListings:
    def test_default_page_size_applies(self, users):
        page = users.list_users()
        assert page.page == 0
        assert page.size == 2
        assert len(page.items) == 2
        assert page.total == 6

    def test_size_is_capped(self, users):
        page = users.list_users(size=50)
        assert page.size == 3
        assert len(page.items) == 3

    def test_negative_page_is_clamped(self, users):
        assert users.list_users(page=-4).page == 0

    @pytest.mark.parametrize("role", list(Role))
    def test_list_by_role(self, users, role):
        page = users.list_by_role(role, size=3)
        assert page.items
        assert all(u.role == role for u in page.items)

    def test_agents_listing_has_both_agents(self, users):
        assert users.list_by_role(Role.AGENT).total == 2

    def test_connected_users_only_online(self, users, store):
        admin = store.get_user_by_email("admin@example.com")
        store.set_user_status(admin.id, UserStatus.ONLINE)

        page = users.list_connected_users()
        assert [u.id for u in page.items] == [admin.id]


class TestLookups:
    def test_get_user(self, users, store):
        admin = store.get_user_by_email("admin@example.com")
        assert users.get_user(admin.id).email == "admin@example.com"

    def test_get_missing_user_raises_not_found(self, users):
        with pytest.raises(NotFoundError) as exc_info:
            users.get_user("missing")
        assert exc_info.value.status_code == 404

