"""
Review Workflow with Checkpoints

Demonstrates a draft / review loop that pauses for a human:
1. The drafter writes a draft.
2. The run suspends before the reviewer (interrupt_before).
3. A human edits the state with update_state(), then the run resumes.
4. An earlier checkpoint is used to fork an alternative history.

Key Concepts:
- InMemorySaver and thread ids
- Interrupts and resume with input=None
- get_state / get_state_history / update_state
- Command routing from inside a node
"""

from typing import Annotated, List, TypedDict

from stepgraph import END, START, Command, InMemorySaver, StateGraph, concat
from stepgraph.core.logging import (
    configure_logging,
    LogLevel,
    LogComponent,
    get_logger,
)

logger = get_logger(LogComponent.GRAPH)


class ReviewState(TypedDict):
    topic: str
    draft: str
    feedback: Annotated[List[str], concat]
    revisions: int
    approved: bool


def draft(state: ReviewState) -> dict:
    revisions = (state.get("revisions") or 0) + 1
    text = f"Draft {revisions} about {state['topic']}"
    if state["feedback"]:
        text += f" (addresses: {state['feedback'][-1]})"
    return {"draft": text, "revisions": revisions}


def review(state: ReviewState) -> Command:
    """Approve once feedback has been addressed, else send back to the drafter."""
    if state["feedback"] and "addresses" in state["draft"]:
        return Command(update={"approved": True}, goto=END)
    return Command(update={"feedback": ["needs an example"]}, goto="draft")


def build_graph(saver: InMemorySaver):
    graph = StateGraph(ReviewState)
    graph.add_node("draft", draft)
    graph.add_node("review", review, destinations=["draft"])
    graph.add_edge(START, "draft")
    graph.add_edge("draft", "review")
    return graph.compile(checkpointer=saver, interrupt_before=["review"], name="review")


def main():
    saver = InMemorySaver()
    app = build_graph(saver)
    config = {"configurable": {"thread_id": "article-42"}}

    app.invoke({"topic": "supersteps"}, config)
    snapshot = app.get_state(config)
    logger.info(f"Paused before {snapshot.next} with draft: {snapshot.values['draft']!r}")

    # Human feedback, recorded as if the reviewer had written it
    app.update_state(config, {"feedback": ["mention deferred nodes"]})

    while app.get_state(config).next:
        app.invoke(None, config)

    final = app.get_state(config)
    logger.info(f"Approved after {final.values['revisions']} revisions: {final.values['draft']!r}")

    history = list(app.get_state_history(config))
    for item in history:
        logger.info(f"step {item.step:>2} [{item.metadata.get('source')}] next={item.next}")

    first_draft = next(item for item in reversed(history) if item.next == ("review",))
    fork_config = app.update_state(first_draft.config, {"topic": "checkpoints"}, as_node="draft")
    logger.info(f"Forked thread at {fork_config['configurable']['checkpoint_id']}")


if __name__ == "__main__":
    configure_logging(default_level=LogLevel.INFO)
    main()
