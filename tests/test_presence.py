from presence import PresenceRegistry

from conftest import FakeConnection


def test_register_and_lookup():
    registry = PresenceRegistry()
    conn = FakeConnection("a")
    assert registry.register("alice", conn, "Alice") is None
    assert registry.lookup("alice") is conn
    assert registry.display_name("alice") == "Alice"
    assert registry.lookup("bob") is None


def test_second_login_evicts_first():
    registry = PresenceRegistry()
    first, second = FakeConnection("1"), FakeConnection("2")
    registry.register("alice", first, "Alice")

    evicted = registry.register("alice", second, "Alice")

    assert evicted is first
    assert registry.lookup("alice") is second
    assert len(registry) == 1


def test_unregister_is_noop_when_absent():
    registry = PresenceRegistry()
    assert registry.unregister("ghost") is False


def test_stale_connection_cannot_unregister_newer_login():
    registry = PresenceRegistry()
    old, new = FakeConnection("old"), FakeConnection("new")
    registry.register("alice", old, "Alice")
    registry.register("alice", new, "Alice")

    assert registry.unregister("alice", old) is False
    assert registry.lookup("alice") is new
    assert registry.unregister("alice", new) is True
    assert registry.lookup("alice") is None


def test_list_all_contains_each_user_once():
    registry = PresenceRegistry()
    registry.register("alice", FakeConnection(), "Alice")
    registry.register("bob", FakeConnection(), "Bob")
    registry.register("alice", FakeConnection(), "Alice A.")

    listed = registry.list_all()

    assert sorted(u["username"] for u in listed) == ["alice", "bob"]
    assert {"username": "alice", "display_name": "Alice A."} in listed


def test_update_display_name_only_touches_online_users():
    registry = PresenceRegistry()
    conn = FakeConnection()
    registry.register("alice", conn, "Alice")
    registry.update_display_name("alice", "Ally")
    registry.update_display_name("bob", "Bobby")

    assert registry.display_name("alice") == "Ally"
    assert registry.lookup("alice") is conn
    assert registry.is_online("bob") is False
