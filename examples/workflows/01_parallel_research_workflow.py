"""
Parallel Research Workflow Example

Demonstrates a fan-out / fan-in workflow where:
1. A planner splits a question into sub-topics.
2. One researcher task per sub-topic runs in the same superstep (Send).
3. A quick fact-check branch runs alongside the researchers.
4. A deferred writer waits for both branches before composing the report.

Key Concepts:
- Send packets for map-style fan-out
- Reducer channels that merge parallel writes
- Deferred nodes as a barrier over uneven branches
- Streaming per-superstep updates
"""

import asyncio
import operator
from typing import Annotated, Dict, List, TypedDict

from stepgraph import END, START, Send, StateGraph, concat, merge_dicts
from stepgraph.core.logging import (
    configure_logging,
    LogLevel,
    LogComponent,
    get_logger,
)

logger = get_logger(LogComponent.GRAPH)


class ResearchState(TypedDict):
    question: str
    topics: List[str]
    notes: Annotated[Dict[str, str], merge_dicts]
    checks: Annotated[List[str], concat]
    sources: Annotated[int, operator.add]
    report: str


# ---------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------
def plan(state: ResearchState) -> dict:
    """Split the question into sub-topics."""
    topics = [part.strip() for part in state["question"].split(" and ")]
    logger.info(f"Planned {len(topics)} topics: {topics}")
    return {"topics": topics}


async def research(task: dict) -> dict:
    """Research a single topic; receives the Send argument, not the state."""
    await asyncio.sleep(0.1)
    topic = task["topic"]
    return {"notes": {topic: f"{topic} has {len(topic)} letters"}, "sources": 1}


def fact_check(state: ResearchState) -> dict:
    return {"checks": [f"question '{state['question']}' is answerable"]}


def double_check(state: ResearchState) -> dict:
    return {"checks": ["no contradictions found"]}


def write(state: ResearchState) -> dict:
    """Compose the final report once every branch has delivered."""
    lines = [f"- {topic}: {note}" for topic, note in state["notes"].items()]
    lines.extend(f"  (check) {check}" for check in state["checks"])
    return {"report": "\n".join(lines)}


def fan_out(state: ResearchState) -> List[Send]:
    return [Send("research", {"topic": topic}) for topic in state["topics"]]


# ---------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------
def build_graph():
    graph = StateGraph(ResearchState)
    graph.add_node("plan", plan)
    graph.add_node("research", research)
    graph.add_node("fact_check", fact_check)
    graph.add_node("double_check", double_check)
    graph.add_node("write", write, defer=True)

    graph.add_edge(START, "plan")
    graph.add_conditional_edges("plan", fan_out, ["research"])
    graph.add_edge("plan", "fact_check")
    graph.add_edge("fact_check", "double_check")
    graph.add_edge("research", "write")
    graph.add_edge("double_check", "write")
    graph.add_edge("write", END)
    return graph.compile(name="research")


async def main():
    """Run the research workflow and stream updates."""
    try:
        app = build_graph()
        inputs = {"question": "graphs and supersteps and checkpoints"}

        async for update in app.astream(inputs, stream_mode="updates"):
            logger.info(f"Superstep finished: {sorted(update)}")

        result = await app.ainvoke(inputs)
        logger.info(f"Sources used: {result['sources']}")
        print(result["report"])

    except Exception as e:
        logger.error(f"Workflow failed: {str(e)}")
        raise


if __name__ == "__main__":
    configure_logging(default_level=LogLevel.INFO)
    asyncio.run(main())
