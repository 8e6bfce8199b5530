"""
Memory Across Threads

Demonstrates the cross-thread store and subgraph composition:
1. A profile subgraph loads and updates per-user memories in the store.
2. The parent graph greets the user with what it remembers.
3. Separate threads for the same user share memories; other users do not.

Key Concepts:
- InMemoryStore namespaces (("memories", user_id))
- RunContext.configurable and RunContext.store
- Compiled graphs as nodes (subgraphs)
"""

from typing import Annotated, List, TypedDict

from stepgraph import END, START, InMemorySaver, InMemoryStore, StateGraph, concat
from stepgraph.core.logging import (
    configure_logging,
    LogLevel,
    LogComponent,
    get_logger,
)

logger = get_logger(LogComponent.STORE)


class ChatState(TypedDict):
    message: str
    facts: Annotated[List[str], concat]
    reply: str


# ---------------------------------------------------------------------
# Profile subgraph
# ---------------------------------------------------------------------
def recall(state, context) -> dict:
    namespace = ("memories", context.get("user_id"))
    return {"facts": [item.value["fact"] for item in context.store.search(namespace)]}


def remember(state, context) -> dict:
    namespace = ("memories", context.get("user_id"))
    if state["message"].startswith("I like "):
        fact = state["message"][len("I like "):]
        context.store.put(namespace, fact, {"fact": f"likes {fact}"})
        return {"facts": [f"likes {fact}"]}
    return {}


def build_profile_graph():
    profile = StateGraph(ChatState)
    profile.add_sequence([("recall", recall), ("remember", remember)])
    return profile.compile(name="profile")


# ---------------------------------------------------------------------
# Parent graph
# ---------------------------------------------------------------------
def respond(state: ChatState) -> dict:
    known = ", ".join(sorted(set(state["facts"]))) or "nothing yet"
    return {"reply": f"You said {state['message']!r}. I know you: {known}."}


def build_graph(store: InMemoryStore):
    graph = StateGraph(ChatState)
    graph.add_node("profile", build_profile_graph())
    graph.add_node("respond", respond)
    graph.add_edge(START, "profile")
    graph.add_edge("profile", "respond")
    graph.add_edge("respond", END)
    return graph.compile(checkpointer=InMemorySaver(), store=store, name="chat")


def main():
    store = InMemoryStore()
    app = build_graph(store)

    conversations = [
        ("monday", "ada", "I like graphs"),
        ("tuesday", "ada", "What do you know?"),
        ("tuesday-bob", "bob", "What do you know?"),
    ]
    for thread_id, user_id, message in conversations:
        config = {"configurable": {"thread_id": thread_id, "user_id": user_id}}
        result = app.invoke({"message": message}, config)
        logger.info(f"[{thread_id}/{user_id}] {result['reply']}")

    logger.info(f"Namespaces in store: {store.list_namespaces()}")


if __name__ == "__main__":
    configure_logging(default_level=LogLevel.INFO, component_levels={LogComponent.STORE: LogLevel.INFO})
    main()
