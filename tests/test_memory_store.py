import pytest

from airwave.storage.errors import ConstraintViolation
from airwave.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def test_create_and_lookup_user(store):
    user = store.create_user(" Mixed@Example.COM ", role="editor", name="Ed")

    assert user.email == "mixed@example.com"
    assert store.get_user(user.id).name == "Ed"
    assert store.get_user_by_email("MIXED@example.com").id == user.id
    assert store.get_user("missing") is None


def test_duplicate_email_is_rejected(store):
    store.create_user("a@example.com")

    with pytest.raises(ConstraintViolation):
        store.create_user("A@example.com")


def test_returned_users_are_copies(store):
    user = store.create_user("a@example.com", custom_permissions=["asset:view"])

    user.custom_permissions.append("system:settings")
    user.role = "admin"

    stored = store.get_user(user.id)
    assert stored.custom_permissions == ["asset:view"]
    assert stored.role == "viewer"


def test_role_and_permission_updates(store):
    user = store.create_user("a@example.com")

    assert store.update_user_role(user.id, "manager").role == "manager"
    assert store.set_custom_permissions(user.id, ["a:b", "a:b", "c:d"]).custom_permissions == [
        "a:b",
        "c:d",
    ]
    assert store.update_user_role("missing", "admin") is None


def test_password_records(store):
    user = store.create_user("a@example.com")
    assert store.get_password_record(user.id) is None

    store.save_password(user.id, "hash-1", "argon2id")
    store.save_password(user.id, "hash-2", "argon2id")

    assert store.get_password_record(user.id) == ("hash-2", "argon2id")
    assert store.credentials[user.id].last_updated_at is not None
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_roles(store):
    assert store.get_role("editor") is None

    store.upsert_role("editor", ["asset:view", "asset:view"], "Edits assets")
    store.upsert_role("auditor", ["system:logs"])

    assert store.get_role("editor").permissions == ["asset:view"]
    assert [r.name for r in store.list_roles()] == ["auditor", "editor"]


def test_delete_user_drops_credentials(store):
    user = store.create_user("a@example.com")
    store.save_password(user.id, "hash", "argon2id")

    assert store.delete_user(user.id)
    assert store.get_password_record(user.id) is None
    assert not store.delete_user(user.id)
