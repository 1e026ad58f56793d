import pytest

from errors import RecipientUnknown, ValidationError
from identity import hash_password, verify_password


def test_password_hash_roundtrip():
    stored = hash_password("secret")
    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("secret", stored)
    assert not verify_password("Secret", stored)
    assert not verify_password("secret", "garbage")


def test_create_and_find(identities):
    created = identities.create("alice", "pw123456", "Alice")
    found = identities.find_by_username("alice")

    assert found == created
    assert found.last_seen is None
    assert identities.find_by_username("nobody") is None


def test_duplicate_username_rejected(identities):
    identities.create("alice", "pw123456", "Alice")
    with pytest.raises(ValidationError) as excinfo:
        identities.create("alice", "other", "Other")
    assert excinfo.value.reason == "username_taken"


def test_friends_add_list_remove(users):
    users.add_friend("alice", "bob")
    users.add_friend("alice", "bob")
    users.add_friend("alice", "carol")

    assert [f["username"] for f in users.list_friends("alice")] == ["bob", "carol"]
    assert users.list_friends("bob") == []

    users.remove_friend("alice", "bob")
    users.remove_friend("alice", "bob")
    assert [f["username"] for f in users.list_friends("alice")] == ["carol"]


def test_add_friend_errors(users):
    with pytest.raises(RecipientUnknown):
        users.add_friend("alice", "ghost")
    with pytest.raises(ValidationError):
        users.add_friend("alice", "alice")


def test_display_name_and_last_seen(users, clock):
    users.update_display_name("bob", "Robert")
    users.touch_last_seen("bob", clock())
    users.add_friend("alice", "bob")

    [friend] = users.list_friends("alice")
    assert friend["display_name"] == "Robert"
    assert friend["last_seen"] == "2026-03-01T12:00:00Z"

    with pytest.raises(RecipientUnknown):
        users.update_display_name("ghost", "Nobody")


def test_search_by_prefix(users):
    assert [u["username"] for u in users.search("CA")] == ["carol"]
    assert users.search("  ") == []
    assert users.search("%") == []


def test_push_subscription_upsert(users):
    assert users.get_push_subscription("bob") is None
    users.set_push_subscription("bob", {"endpoint": "https://push.example/1"})
    users.set_push_subscription("bob", {"endpoint": "https://push.example/2"})
    assert users.get_push_subscription("bob") == {"endpoint": "https://push.example/2"}
