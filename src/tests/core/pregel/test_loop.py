"""Tests for superstep execution.

This module tests:
- Deferred nodes and join edges
- Round atomicity on failure
- Command routing and Send fan-out
- Recursion limits, timeouts and concurrency bounds
- Interrupts and resumption
"""

import asyncio
import threading
import time

import pytest

from stepgraph.core.errors import (
    EmptyInputError,
    InvalidUpdateError,
    NodeTimeoutError,
    RecursionLimitError,
    RoutingError,
    RunTimeoutError,
    StateReductionError,
)
from stepgraph.core.graph import END, START, Command, Send, StateGraph
from stepgraph.core.pregel.loop import RunStatus, StepCounter, SuperstepLoop
from stepgraph.core.config import RunConfig

from .conftest import visit


def build_diamond(builder: StateGraph, defer: bool = True) -> StateGraph:
    for name in ["A", "B", "C", "B_2"]:
        builder.add_node(name, visit(name))
    builder.add_node("D", visit("D"), defer=defer)
    builder.add_edge(START, "A")
    builder.add_edge("A", "B")
    builder.add_edge("A", "C")
    builder.add_edge("B", "B_2")
    builder.add_edge("C", "D")
    builder.add_edge("B_2", "D")
    builder.add_edge("D", END)
    return builder


class TestStepCounter:
    """Test suite for the shared superstep budget."""

    def test_tick_until_limit(self):
        counter = StepCounter(2)
        assert counter.tick() == 1
        assert counter.tick() == 2
        with pytest.raises(RecursionLimitError):
            counter.tick()


class TestDeferredExecution:
    """Test suite for deferred nodes and joins."""

    def test_diamond_with_deferred_node(self, builder: StateGraph):
        app = build_diamond(builder).compile()
        result = app.invoke({"visited": []})
        assert result["visited"] == ["A", "B", "C", "B_2", "D"]

    def test_diamond_without_defer_runs_join_twice(self, builder: StateGraph):
        app = build_diamond(builder, defer=False).compile()
        result = app.invoke({"visited": []})
        assert result["visited"] == ["A", "B", "C", "B_2", "D", "D"]

    def test_diamond_with_open_router(self, builder: StateGraph):
        for name in ["A", "B", "C", "B_2"]:
            builder.add_node(name, visit(name))
        builder.add_node("D", visit("D"), defer=True)
        builder.add_edge(START, "A")
        builder.add_edge("A", "B")
        builder.add_edge("A", "C")
        builder.add_edge("B", "B_2")
        builder.add_edge("C", "D")
        builder.add_conditional_edges("B_2", lambda state: "D")
        app = builder.compile()
        assert app.invoke({"visited": []})["visited"] == ["A", "B", "C", "B_2", "D"]

    def test_diamond_with_command_goto(self, builder: StateGraph):
        def b_2(state):
            return Command(update={"visited": ["B_2"]}, goto="D")

        for name in ["A", "B", "C"]:
            builder.add_node(name, visit(name))
        builder.add_node("B_2", b_2)
        builder.add_node("D", visit("D"), defer=True)
        builder.add_edge(START, "A")
        builder.add_edge("A", "B")
        builder.add_edge("A", "C")
        builder.add_edge("B", "B_2")
        builder.add_edge("C", "D")
        app = builder.compile()
        assert app.invoke({"visited": []})["visited"] == ["A", "B", "C", "B_2", "D"]

    def test_deferred_node_on_untaken_branch(self, builder: StateGraph):
        builder.add_node("A", visit("A"))
        builder.add_node("B", visit("B"))
        builder.add_node("C", visit("C"))
        builder.add_node("D", visit("D"), defer=True)
        builder.add_edge(START, "A")
        builder.add_conditional_edges("A", lambda state: "B", ["B", "C"])
        builder.add_edge("B", "D")
        builder.add_edge("C", "D")
        app = builder.compile()
        assert app.invoke({})["visited"] == ["A", "B", "D"]

    def test_join_edge(self, builder: StateGraph):
        for name in ["a", "b", "c", "c2", "d"]:
            builder.add_node(name, visit(name))
        builder.add_edge(START, "a")
        builder.add_edge("a", "b")
        builder.add_edge("a", "c")
        builder.add_edge("c", "c2")
        builder.add_edge(["b", "c2"], "d")
        app = builder.compile()
        assert app.invoke({})["visited"] == ["a", "b", "c", "c2", "d"]


class TestRoundAtomicity:
    """Test suite for all-or-nothing supersteps."""

    def test_sibling_failure_commits_nothing(self, builder: StateGraph, saver, thread):
        cancelled = []

        async def slow(state):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return {"visited": ["slow"]}

        def failing(state):
            raise ValueError("boom")

        builder.add_node("start", visit("start"))
        builder.add_node("slow", slow)
        builder.add_node("failing", failing)
        builder.add_edge(START, "start")
        builder.add_edge("start", "slow")
        builder.add_edge("start", "failing")
        app = builder.compile(checkpointer=saver)

        with pytest.raises(ValueError, match="boom"):
            app.invoke({}, thread)

        assert cancelled == [True]
        snapshot = app.get_state(thread)
        assert snapshot.values["visited"] == ["start"]
        assert set(snapshot.next) == {"slow", "failing"}

    def test_finished_sibling_is_discarded_on_later_failure(self, builder: StateGraph, saver, thread):
        finished = []

        async def fast(state):
            finished.append("fast")
            return {"visited": ["fast"], "status": "fast done"}

        async def slow_failing(state):
            await asyncio.sleep(0.05)
            raise ValueError("late boom")

        builder.add_node("start", visit("start"))
        builder.add_node("fast", fast)
        builder.add_node("slow_failing", slow_failing)
        builder.add_edge(START, "start")
        builder.add_edge("start", "fast")
        builder.add_edge("start", "slow_failing")
        app = builder.compile(checkpointer=saver)

        with pytest.raises(ValueError, match="late boom"):
            app.invoke({"status": "initial"}, thread)

        assert finished == ["fast"]
        snapshot = app.get_state(thread)
        assert snapshot.values["visited"] == ["start"]
        assert snapshot.values["status"] == "initial"
        assert set(snapshot.next) == {"fast", "slow_failing"}
        assert len(list(app.get_state_history(thread))) == 2

    def test_reducer_failure_commits_nothing(self, builder: StateGraph, saver, thread):
        builder.add_node("a", visit("a", count=1))
        builder.add_node("b", visit("b", count="oops"))
        builder.add_edge(START, "a")
        builder.add_edge("a", "b")
        app = builder.compile(checkpointer=saver)

        with pytest.raises(StateReductionError):
            app.invoke({}, thread)
        assert app.get_state(thread).values["count"] == 1

    def test_unknown_channel_write(self, builder: StateGraph):
        builder.add_node("a", lambda state: {"unknown": 1})
        builder.add_edge(START, "a")
        with pytest.raises(InvalidUpdateError):
            builder.compile().invoke({})

    def test_handlers_see_previous_commit(self, builder: StateGraph):
        seen = []

        def reader(state):
            seen.append(list(state["visited"]))
            return {"visited": ["reader"]}

        builder.add_node("a", visit("a"))
        builder.add_node("writer", visit("writer"))
        builder.add_node("reader", reader)
        builder.add_edge(START, "a")
        builder.add_edge("a", "writer")
        builder.add_edge("a", "reader")
        builder.compile().invoke({})
        assert seen == [["a"]]

    def test_state_is_read_only(self, builder: StateGraph):
        def mutate(state):
            state["status"] = "mutated"

        builder.add_node("a", mutate)
        builder.add_edge(START, "a")
        with pytest.raises(TypeError):
            builder.compile().invoke({"status": "original"})

    def test_nested_values_are_isolated(self, builder: StateGraph):
        mutated = threading.Event()

        def mutator(state):
            state["items"].append("leak")
            mutated.set()
            return {"visited": ["mutator"]}

        def reader(state):
            mutated.wait(1)
            return {"results": [list(state["items"])]}

        builder.add_node("start", visit("start"))
        builder.add_node("mutator", mutator)
        builder.add_node("reader", reader)
        builder.add_edge(START, "start")
        builder.add_edge("start", "mutator")
        builder.add_edge("start", "reader")
        result = builder.compile().invoke({"items": []})

        assert mutated.is_set()
        assert result["results"] == [[]]
        assert result["items"] == []


class TestCommandRouting:
    """Test suite for Command and Send."""

    def test_goto_overrides_static_edges(self, builder: StateGraph):
        builder.add_node("a", lambda state: Command(update={"visited": ["a"]}, goto="c"), destinations=["c"])
        builder.add_node("b", visit("b"))
        builder.add_node("c", visit("c"))
        builder.add_edge(START, "a")
        builder.add_edge("a", "b")
        builder.add_edge("c", END)
        assert builder.compile().invoke({})["visited"] == ["a", "c"]

    def test_goto_end(self, builder: StateGraph):
        builder.add_node("a", lambda state: Command(update={"status": "stopped"}, goto=END))
        builder.add_node("b", visit("b"))
        builder.add_edge(START, "a")
        builder.add_edge("a", "b")
        result = builder.compile().invoke({})
        assert result["status"] == "stopped"
        assert result["visited"] == []

    def test_list_of_commands(self, builder: StateGraph):
        builder.add_node(
            "a",
            lambda state: [Command(update={"count": 1}), Command(update={"count": 2}, goto="b")],
            destinations=["b"],
        )
        builder.add_node("b", visit("b"))
        builder.add_edge(START, "a")
        result = builder.compile().invoke({})
        assert result["count"] == 3
        assert result["visited"] == ["b"]

    def test_unknown_router_destination(self, builder: StateGraph, saver, thread):
        builder.add_node("a", visit("a"))
        builder.add_node("b", visit("b"))
        builder.add_edge(START, "a")
        builder.add_conditional_edges("a", lambda state: "elsewhere", {"ok": "b"})
        app = builder.compile(checkpointer=saver)

        with pytest.raises(RoutingError):
            app.invoke({}, thread)
        snapshot = app.get_state(thread)
        assert snapshot.step == -1
        assert snapshot.next == ("a",)
        assert snapshot.values["visited"] == []

    def test_router_mapping(self, builder: StateGraph):
        builder.add_node("a", visit("a", status="left"))
        builder.add_node("left", visit("left"))
        builder.add_node("right", visit("right"))
        builder.add_edge(START, "a")
        builder.add_conditional_edges("a", lambda state: state["status"] == "left", {True: "left", False: "right"})
        assert builder.compile().invoke({})["visited"] == ["a", "left"]

    def test_send_fan_out(self, builder: StateGraph):
        def split(state):
            return {"visited": ["split"]}

        def work(arg):
            return {"results": [arg["item"] * 2]}

        builder.add_node("split", split)
        builder.add_node("work", work)
        builder.add_edge(START, "split")
        builder.add_conditional_edges(
            "split", lambda state: [Send("work", {"item": item}) for item in state["items"]], ["work"]
        )
        builder.add_edge("work", END)
        result = builder.compile().invoke({"items": [1, 2, 3]})
        assert result["results"] == [2, 4, 6]
        assert result["visited"] == ["split"]

    def test_send_through_command(self, builder: StateGraph):
        builder.add_node(
            "split",
            lambda state: Command(goto=[Send("work", n) for n in (1, 2)]),
            destinations=["work"],
        )
        builder.add_node("work", lambda n: {"count": n})
        builder.add_edge(START, "split")
        assert builder.compile().invoke({})["count"] == 3

    def test_parent_command_outside_subgraph(self, builder: StateGraph):
        builder.add_node("a", lambda state: Command(goto="a", graph=Command.PARENT))
        builder.add_edge(START, "a")
        with pytest.raises(InvalidUpdateError, match="PARENT"):
            builder.compile().invoke({})


class TestLimits:
    """Test suite for recursion limits, timeouts and concurrency."""

    @pytest.fixture
    def loop_graph(self, builder: StateGraph):
        builder.add_node("a", lambda state: {"count": 1})
        builder.add_edge(START, "a")
        builder.add_conditional_edges("a", lambda state: "a" if state["count"] < 5 else END, ["a", END])
        return builder

    def test_recursion_limit_and_resume(self, loop_graph: StateGraph, saver):
        app = loop_graph.compile(checkpointer=saver)
        config = {"configurable": {"thread_id": "loop"}, "recursion_limit": 3}

        with pytest.raises(RecursionLimitError) as exc_info:
            app.invoke({"count": 0}, config)
        assert exc_info.value.limit == 3
        assert app.get_state(config).values["count"] == 3

        result = app.invoke(None, {"configurable": {"thread_id": "loop"}, "recursion_limit": 10})
        assert result["count"] == 5

    def test_node_timeout(self, builder: StateGraph):
        async def sleepy(state):
            await asyncio.sleep(5)

        builder.add_node("sleepy", sleepy, timeout=0.05)
        builder.add_edge(START, "sleepy")
        with pytest.raises(NodeTimeoutError) as exc_info:
            builder.compile().invoke({})
        assert exc_info.value.node == "sleepy"

    def test_run_timeout(self, builder: StateGraph):
        async def sleepy(state):
            await asyncio.sleep(5)

        builder.add_node("sleepy", sleepy)
        builder.add_edge(START, "sleepy")
        with pytest.raises(RunTimeoutError):
            builder.compile().invoke({}, {"timeout": 0.05})

    def test_max_concurrency(self, builder: StateGraph):
        active = []
        peak = []
        lock = threading.Lock()

        def worker(arg):
            with lock:
                active.append(arg)
                peak.append(len(active))
            time.sleep(0.02)
            with lock:
                active.remove(arg)
            return {"count": 1}

        builder.add_node("split", lambda state: Command(goto=[Send("worker", i) for i in range(6)]), destinations=["worker"])
        builder.add_node("worker", worker)
        builder.add_edge(START, "split")
        result = builder.compile().invoke({}, {"max_concurrency": 2})
        assert result["count"] == 6
        assert max(peak) <= 2

    def test_empty_input_without_checkpointer(self, builder: StateGraph):
        builder.add_node("a", visit("a"))
        builder.add_edge(START, "a")
        with pytest.raises(EmptyInputError):
            builder.compile().invoke(None)


class TestInterrupts:
    """Test suite for suspension and resumption."""

    @pytest.fixture
    def linear(self, builder: StateGraph):
        builder.add_sequence([visit("a"), visit("b"), visit("c")])
        return builder

    def test_interrupt_before(self, linear: StateGraph, saver, thread):
        app = linear.compile(checkpointer=saver, interrupt_before=["b"])
        assert app.invoke({}, thread)["visited"] == ["a"]
        assert app.get_state(thread).next == ("b",)

        assert app.invoke(None, thread)["visited"] == ["a", "b", "c"]
        assert app.get_state(thread).next == ()

    def test_interrupt_after(self, linear: StateGraph, saver, thread):
        app = linear.compile(checkpointer=saver, interrupt_after=["a"])
        assert app.invoke({}, thread)["visited"] == ["a"]
        assert app.get_state(thread).next == ("b",)
        assert app.invoke(None, thread)["visited"] == ["a", "b", "c"]

    def test_run_level_interrupt(self, linear: StateGraph, saver):
        app = linear.compile(checkpointer=saver)
        config = {"configurable": {"thread_id": "t"}, "interrupt_after": ["*"]}
        assert app.invoke({}, config)["visited"] == ["a"]
        assert app.invoke(None, config)["visited"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_loop_status(self, linear: StateGraph, saver):
        app = linear.compile(checkpointer=saver, interrupt_before=["c"])
        loop = SuperstepLoop(
            app.plan,
            RunConfig(thread_id="status"),
            checkpointer=saver,
            interrupt_before=app.interrupt_before,
        )
        assert loop.status == RunStatus.IDLE
        loop.bootstrap({})
        events = [event async for event in loop.run()]
        assert loop.status == RunStatus.SUSPENDED
        assert [event.tasks for event in events] == [["a"], ["b"]]

        resumed = SuperstepLoop(app.plan, RunConfig(thread_id="status"), checkpointer=saver)
        resumed.bootstrap(None)
        [event async for event in resumed.run()]
        assert resumed.status == RunStatus.COMPLETED
        assert resumed.state["visited"] == ["a", "b", "c"]
