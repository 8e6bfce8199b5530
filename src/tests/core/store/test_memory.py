"""Tests for the cross-thread store."""

import threading

import pytest

from stepgraph.core.errors import InvalidNamespaceError
from stepgraph.core.store import InMemoryStore, Item, validate_namespace


@pytest.fixture
def store() -> InMemoryStore:
    """Fixture providing an empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def populated(store: InMemoryStore) -> InMemoryStore:
    """Fixture providing a store with a few user items."""
    store.put(("users", "alice"), "prefs", {"theme": "dark", "lang": "en"})
    store.put(("users", "bob"), "prefs", {"theme": "light", "lang": "en"})
    store.put(("users", "alice", "notes"), "n1", {"text": "hello"})
    store.put(("teams", "core"), "info", {"size": 3})
    return store


class TestNamespaces:
    """Test suite for namespace validation."""

    def test_valid(self):
        assert validate_namespace(["users", "alice"]) == ("users", "alice")

    @pytest.mark.parametrize("namespace", [(), "users", ("",), ("users", "a.b"), ("users", 1)])
    def test_invalid(self, store: InMemoryStore, namespace):
        with pytest.raises(InvalidNamespaceError):
            store.put(namespace, "key", {"v": 1})

    def test_invalid_key(self, store: InMemoryStore):
        with pytest.raises(InvalidNamespaceError):
            store.put(("users",), "", {"v": 1})


class TestPutGet:
    """Test suite for basic item access."""

    def test_put_and_get(self, store: InMemoryStore):
        store.put(("users", "alice"), "prefs", {"theme": "dark"})
        item = store.get(("users", "alice"), "prefs")
        assert isinstance(item, Item)
        assert item.namespace == ("users", "alice")
        assert item.key == "prefs"
        assert item.value == {"theme": "dark"}

    @pytest.mark.parametrize("value", [[1, 2], "note", 42, {"nested": {"tags": ["a"]}}])
    def test_arbitrary_payloads(self, store: InMemoryStore, value):
        store.put(("payloads",), "k", value)
        assert store.get(("payloads",), "k").value == value

    def test_namespace_isolation(self, populated: InMemoryStore):
        assert populated.get(("users", "alice"), "prefs").value["theme"] == "dark"
        assert populated.get(("users", "bob"), "prefs").value["theme"] == "light"
        assert populated.get(("users", "carol"), "prefs") is None
        assert populated.get(("users",), "prefs") is None

    def test_get_is_idempotent(self, populated: InMemoryStore):
        first = populated.get(("users", "alice"), "prefs")
        second = populated.get(("users", "alice"), "prefs")
        assert first == second
        assert first.updated_at == second.updated_at

    def test_overwrite_keeps_created_at(self, store: InMemoryStore):
        store.put(("users", "alice"), "prefs", {"theme": "dark"})
        original = store.get(("users", "alice"), "prefs")
        store.put(("users", "alice"), "prefs", {"theme": "light"})
        updated = store.get(("users", "alice"), "prefs")
        assert updated.value == {"theme": "light"}
        assert updated.created_at == original.created_at
        assert updated.updated_at >= original.updated_at

    def test_values_are_copied(self, store: InMemoryStore):
        value = {"tags": ["a"]}
        store.put(("users",), "k", value)
        value["tags"].append("b")
        store.get(("users",), "k").value["tags"].append("c")
        assert store.get(("users",), "k").value == {"tags": ["a"]}

    def test_delete(self, populated: InMemoryStore):
        assert populated.delete(("users", "alice"), "prefs") is True
        assert populated.get(("users", "alice"), "prefs") is None
        assert populated.delete(("users", "alice"), "prefs") is False

    def test_concurrent_puts(self, store: InMemoryStore):
        def writer(index: int):
            for n in range(50):
                store.put(("load", str(index)), str(n), {"n": n})

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(store.search(("load",), limit=1000)) == 200


class TestSearch:
    """Test suite for prefix search."""

    def test_prefix(self, populated: InMemoryStore):
        keys = [(item.namespace, item.key) for item in populated.search(("users",))]
        assert keys == [
            (("users", "alice"), "prefs"),
            (("users", "bob"), "prefs"),
            (("users", "alice", "notes"), "n1"),
        ]

    def test_prefix_matches_whole_labels(self, populated: InMemoryStore):
        assert populated.search(("user",)) == []

    def test_filter(self, populated: InMemoryStore):
        results = populated.search(("users",), filter={"theme": "light"})
        assert [item.namespace for item in results] == [("users", "bob")]

    def test_limit_and_offset(self, populated: InMemoryStore):
        page = populated.search(("users",), limit=1, offset=1)
        assert [item.namespace for item in page] == [("users", "bob")]

    def test_returns_every_match_by_default(self, store: InMemoryStore):
        for n in range(15):
            store.put(("memories", "u1"), f"m{n}", {"n": n})
        results = store.search(("memories", "u1"))
        assert [item.value["n"] for item in results] == list(range(15))
        assert len(store.search(("memories", "u1"), offset=10)) == 5

    def test_filter_skips_non_mapping_values(self, store: InMemoryStore):
        store.put(("misc",), "list", [1, 2])
        store.put(("misc",), "dict", {"kind": "dict"})
        assert [item.key for item in store.search(("misc",))] == ["list", "dict"]
        assert [item.key for item in store.search(("misc",), filter={"kind": "dict"})] == ["dict"]

    def test_list_namespaces(self, populated: InMemoryStore):
        assert populated.list_namespaces() == [
            ("users", "alice"),
            ("users", "bob"),
            ("users", "alice", "notes"),
            ("teams", "core"),
        ]
        assert populated.list_namespaces(prefix=("users",), max_depth=1) == [("users",)]
        assert populated.list_namespaces(prefix=("teams",)) == [("teams", "core")]
