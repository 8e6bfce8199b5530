"""Tests for checkpointing: the in-memory saver and the persistence API."""

from typing import Annotated, List, TypedDict

import pytest

from stepgraph.core.checkpoint import Checkpoint, InMemorySaver, PendingWrite
from stepgraph.core.errors import CheckpointError, InvalidUpdateError, ThreadNotFoundError
from stepgraph.core.graph import END, START, Send, StateGraph, concat


class State(TypedDict):
    visited: Annotated[List[str], concat]
    note: str


def visit(name: str):
    def handler(state):
        return {"visited": [name]}
    return handler


@pytest.fixture
def saver() -> InMemorySaver:
    """Fixture providing an in-memory checkpointer."""
    return InMemorySaver()


@pytest.fixture
def app(saver: InMemorySaver):
    """START -> a -> b -> END, checkpointed."""
    graph = StateGraph(State)
    graph.add_sequence([("a", visit("a")), ("b", visit("b"))])
    graph.add_edge("b", END)
    return graph.compile(checkpointer=saver)


@pytest.fixture
def config():
    return {"configurable": {"thread_id": "thread-1"}}


class TestInMemorySaver:
    """Test suite for InMemorySaver."""

    def test_save_and_load(self, saver: InMemorySaver):
        checkpoint = Checkpoint(
            thread_id="t",
            step=0,
            state={"visited": ["a"]},
            next_nodes=["b"],
            pending_sends=[Send("b", {"x": 1})],
            pending_writes=[PendingWrite(task_id="1", node="a", channel="visited", value=["a"])],
        )
        saver.save("t", checkpoint)
        loaded = saver.load("t", checkpoint.checkpoint_id)
        assert loaded == checkpoint
        assert loaded is not checkpoint
        assert saver.load("t") == checkpoint

    def test_saved_state_is_isolated(self, saver: InMemorySaver):
        state = {"visited": ["a"]}
        checkpoint = Checkpoint(thread_id="t", state=state)
        saver.save("t", checkpoint)
        state["visited"].append("mutated")
        saver.load("t").state["visited"].append("also mutated")
        assert saver.load("t").state == {"visited": ["a"]}

    def test_latest_and_history_order(self, saver: InMemorySaver):
        first = Checkpoint(thread_id="t", step=-1)
        second = Checkpoint(thread_id="t", step=0, parent_checkpoint_id=first.checkpoint_id)
        saver.save("t", first)
        saver.save("t", second)
        assert saver.load("t").checkpoint_id == second.checkpoint_id
        history = saver.list_history("t")
        assert [meta.checkpoint_id for meta in history] == [second.checkpoint_id, first.checkpoint_id]
        assert history[0].parent_checkpoint_id == first.checkpoint_id

    def test_missing(self, saver: InMemorySaver):
        assert saver.load("nobody") is None
        assert saver.load("nobody", "nothing") is None
        assert saver.list_history("nobody") == []

    def test_thread_mismatch(self, saver: InMemorySaver):
        with pytest.raises(CheckpointError):
            saver.save("t", Checkpoint(thread_id="other"))

    def test_duplicate_id(self, saver: InMemorySaver):
        checkpoint = Checkpoint(thread_id="t")
        saver.save("t", checkpoint)
        with pytest.raises(CheckpointError, match="already exists"):
            saver.save("t", checkpoint)

    def test_threads(self, saver: InMemorySaver):
        saver.save("t1", Checkpoint(thread_id="t1"))
        saver.save("t2", Checkpoint(thread_id="t2"))
        assert saver.list_threads() == ["t1", "t2"]
        assert saver.delete_thread("t1") is True
        assert saver.delete_thread("t1") is False
        assert saver.list_threads() == ["t2"]


class TestCheckpointedRuns:
    """Test suite for checkpoints written by runs."""

    def test_one_checkpoint_per_superstep(self, app, saver, config):
        app.invoke({"note": "hello"}, config)
        history = saver.list_history("thread-1")
        assert [meta.step for meta in history] == [1, 0, -1]
        assert [meta.source for meta in history] == ["loop", "loop", "input"]
        for newer, older in zip(history, history[1:]):
            assert newer.parent_checkpoint_id == older.checkpoint_id

    def test_pending_writes_record_producing_writes(self, app, saver, config):
        app.invoke({}, config)
        latest = saver.load("thread-1")
        assert [(w.node, w.channel, w.value) for w in latest.pending_writes] == [("b", "visited", ["b"])]
        assert latest.metadata["writes"] == {"b": {"visited": ["b"]}}

    def test_round_trip_through_snapshot(self, app, config):
        result = app.invoke({"note": "hello"}, config)
        snapshot = app.get_state(config)
        assert snapshot.values == result
        assert snapshot.step == 1
        assert snapshot.next == ()
        assert snapshot.config["configurable"]["thread_id"] == "thread-1"
        assert snapshot.parent_config is not None

    def test_second_input_continues_thread(self, app, config):
        app.invoke({}, config)
        result = app.invoke({"note": "again"}, config)
        assert result["visited"] == ["a", "b", "a", "b"]
        assert result["note"] == "again"

    def test_fork_from_earlier_checkpoint(self, app, saver, config):
        app.invoke({}, config)
        history = list(app.get_state_history(config))
        assert [snapshot.step for snapshot in history] == [1, 0, -1]
        before_b = history[1]
        assert before_b.next == ("b",)

        forked = app.invoke(None, before_b.config)
        assert forked["visited"] == ["a", "b"]

        latest = app.get_state(config)
        assert latest.parent_config["configurable"]["checkpoint_id"] == before_b.config["configurable"]["checkpoint_id"]
        assert len(saver.list_history("thread-1")) == 4
        # the original branch is still addressable
        original = app.get_state(history[0].config)
        assert original.values["visited"] == ["a", "b"]

    def test_resume_missing_thread(self, app):
        with pytest.raises(ThreadNotFoundError):
            app.invoke(None, {"configurable": {"thread_id": "missing"}})

    def test_missing_checkpoint(self, app, config):
        app.invoke({}, config)
        with pytest.raises(ThreadNotFoundError):
            app.invoke({}, {"configurable": {"thread_id": "thread-1", "checkpoint_id": "nope"}})
        with pytest.raises(ThreadNotFoundError):
            app.get_state({"configurable": {"thread_id": "thread-1", "checkpoint_id": "nope"}})

    def test_get_state_missing_thread(self, app):
        with pytest.raises(ThreadNotFoundError):
            app.get_state({"configurable": {"thread_id": "missing"}})

    def test_checkpointer_requires_thread_id(self, app):
        with pytest.raises(CheckpointError):
            app.invoke({})

    def test_failed_save_aborts_round(self, config):
        class FlakySaver(InMemorySaver):
            def __init__(self):
                super().__init__()
                self.saves = 0

            def save(self, thread_id, checkpoint):
                self.saves += 1
                if self.saves == 3:
                    raise OSError("disk full")
                super().save(thread_id, checkpoint)

        saver = FlakySaver()
        graph = StateGraph(State)
        graph.add_sequence([("a", visit("a")), ("b", visit("b"))])
        app = graph.compile(checkpointer=saver)

        with pytest.raises(CheckpointError, match="disk full"):
            app.invoke({}, config)
        snapshot = app.get_state(config)
        assert snapshot.values["visited"] == ["a"]
        assert snapshot.next == ("b",)


class TestUpdateState:
    """Test suite for external state edits."""

    def test_update_as_node_routes_from_it(self, app, config):
        app.invoke({}, config)
        history = list(app.get_state_history(config))
        after_input = history[-1]

        new_config = app.update_state(after_input.config, {"visited": ["manual"]}, as_node="a")
        snapshot = app.get_state(new_config)
        assert snapshot.values["visited"] == ["manual"]
        assert snapshot.next == ("b",)
        assert snapshot.metadata["source"] == "update"
        assert snapshot.parent_config["configurable"]["checkpoint_id"] == after_input.config["configurable"]["checkpoint_id"]

        result = app.invoke(None, new_config)
        assert result["visited"] == ["manual", "b"]

    def test_update_without_node_keeps_next(self, app, config):
        app.invoke({}, config)
        history = list(app.get_state_history(config))
        before_b = history[1]
        new_config = app.update_state(before_b.config, {"note": "edited"})
        snapshot = app.get_state(new_config)
        assert snapshot.next == ("b",)
        assert snapshot.values["note"] == "edited"

    def test_update_unknown_node(self, app, config):
        app.invoke({}, config)
        with pytest.raises(InvalidUpdateError):
            app.update_state(config, {"note": "x"}, as_node="ghost")

    def test_update_without_checkpointer(self):
        graph = StateGraph(State)
        graph.add_sequence([("a", visit("a"))])
        with pytest.raises(CheckpointError):
            graph.compile().update_state({"configurable": {"thread_id": "t"}}, {"note": "x"})
