from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from email_precis.pipeline.nodes import (
    check_processed_node,
    classify_email_node,
    fetch_message_node,
    persist_result_node,
    should_fetch_or_skip,
)
from email_precis.pipeline.state import PipelineState

FETCH_NODE = "fetch_message"
CLASSIFY_NODE = "classify_email"


def build_graph() -> CompiledStateGraph:
    """
    Uses nodes to create the per-email execution graph.
    """
    workflow = StateGraph(PipelineState)

    # Graph nodes
    workflow.add_node("check_processed", check_processed_node)
    workflow.add_node(FETCH_NODE, fetch_message_node)
    workflow.add_node(CLASSIFY_NODE, classify_email_node)
    workflow.add_node("persist_result", persist_result_node)

    # Graph edges
    workflow.set_entry_point("check_processed")
    workflow.add_conditional_edges(
        "check_processed",
        should_fetch_or_skip,
        {
            "fetch": FETCH_NODE,
            "skip": END,  # Record exists, nothing to do
        },
    )
    workflow.add_edge(FETCH_NODE, CLASSIFY_NODE)
    workflow.add_edge(CLASSIFY_NODE, "persist_result")
    workflow.add_edge("persist_result", END)

    return workflow.compile()


pipeline_executor = build_graph()
