"""
MCP (Model Context Protocol) server for memroute.

Exposes the MemoryManager as a set of tools so that an agent can persist
and retrieve memories, ask which model tier a prompt should go to, report
outcomes and record what each call cost.

Run as a stdio server:
    python -m memroute.mcp_server

Or via the installed entry-point:
    memroute-mcp

Configuration comes from ``MEMROUTE_*`` environment variables; see
:mod:`memroute.config`.  Logs go to stderr because stdout carries the
protocol.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import load_config_from_env
from .manager import MemoryManager
from .models import RoutingContext, Usage

logger = logging.getLogger(__name__)

# Lazy-initialised singleton so the store is opened once per process.
_manager: MemoryManager | None = None


def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager(load_config_from_env())
        _manager.start()
    return _manager


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memroute",
    instructions=(
        "Local semantic memory and cost-aware model routing. "
        "Use `add_memory` to save facts that should survive across sessions and "
        "`search_memory` to recall them. "
        "Use `route_request` before delegating a prompt to learn which model tier "
        "to use, `record_feedback` afterwards to say whether that tier did well, "
        "and `record_cost` to log what the call cost. "
        "`get_cost_stats` summarises spend and latency."
    ),
)


@mcp.tool()
def add_memory(content: str, tags: Optional[list[str]] = None) -> str:
    """
    Store a note for later retrieval.

    Args:
        content: The text to remember (a fact, preference, decision, ...).
        tags:    Optional labels used to filter searches.

    Returns:
        A confirmation message with the new memory's ID.
    """
    memory_id = _get_manager().add_memory(content, tags=tags or [])
    return f"Stored memory {memory_id}."


@mcp.tool()
def search_memory(query: str, top_k: int = 5, tag: Optional[str] = None) -> str:
    """
    Retrieve the memories most similar to a natural-language query.

    Args:
        query: Question or topic to search for.
        top_k: Maximum number of memories to return (default 5).
        tag:   Only return memories carrying this tag.

    Returns:
        JSON array of matches with id, content, score and tags.
    """
    results = _get_manager().search(query, top_k=top_k, tag=tag)
    if not results:
        return "No memories found."
    simplified = [
        {
            "id": r.id,
            "content": r.content,
            "score": round(r.score, 4),
            "tags": r.metadata.get("tags", []),
        }
        for r in results
    ]
    return json.dumps(simplified, indent=2)


@mcp.tool()
def route_request(prompt: str, capabilities: Optional[list[str]] = None) -> str:
    """
    Decide which model tier should handle a prompt.

    Args:
        prompt:       The prompt about to be delegated.
        capabilities: Capability flags of the caller, e.g.
                      ``AGENT_BOOSTER_AVAILABLE`` for a cheap local transform.

    Returns:
        JSON object with tier, model, reason and complexity_score.
    """
    context = RoutingContext(capabilities=set(capabilities or []))
    decision = _get_manager().route_request(prompt, context)
    return json.dumps(decision.to_dict(), indent=2)


@mcp.tool()
def record_feedback(pattern: str, tier: int, success: bool) -> str:
    """
    Report whether a tier handled a prompt well, so similar prompts are
    routed the same way (or differently) next time.

    Args:
        pattern: The prompt (or a representative pattern of it).
        tier:    Tier that handled it (1, 2 or 3).
        success: Whether the result was good.

    Returns:
        A summary of the updated policy entry.
    """
    entry = _get_manager().update_policy(pattern, tier, success)
    return (
        f"Policy {entry.key}: tier {entry.tier}, "
        f"success rate {entry.success_rate:.2f} over {entry.usage_count} use(s)."
    )


@mcp.tool()
def record_cost(
    model: str,
    latency_ms: float,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost: float = 0.0,
    success: Optional[bool] = None,
) -> str:
    """
    Append one model call to the cost ledger.

    Returns:
        A confirmation message with the record key.
    """
    usage = Usage(input_tokens=input_tokens, output_tokens=output_tokens, cost=cost)
    record = _get_manager().record_cost(model, usage, latency_ms, success=success)
    return f"Recorded {record.key}."


@mcp.tool()
def get_cost_stats(model: Optional[str] = None, timeframe: Optional[str] = None) -> str:
    """
    Aggregate cost statistics.

    Args:
        model:     Only calls to this model.
        timeframe: Trailing window such as ``30m``, ``24h`` or ``7d``.

    Returns:
        JSON object with total_calls, total_cost, avg/p95 latency and
        success_rate.
    """
    stats = _get_manager().get_cost_stats(model=model, timeframe=timeframe)
    return json.dumps(stats.to_dict(), indent=2)


@mcp.tool()
def index_turn(
    session_id: str,
    turn_id: int,
    user_message: str,
    assistant_message: str,
    model: str = "",
) -> str:
    """Store one conversation turn so it can be searched later."""
    key = _get_manager().index_turn(session_id, turn_id, user_message, assistant_message, model)
    return f"Indexed {key}."


@mcp.tool()
def search_turns(query: str, session_id: Optional[str] = None, top_k: int = 5) -> str:
    """Retrieve past conversation turns similar to a query, optionally within one session."""
    results = _get_manager().search_turns(query, session_id=session_id, top_k=top_k)
    if not results:
        return "No turns found."
    return json.dumps(
        [{"key": r.key, "content": r.content, "score": round(r.score, 4)} for r in results],
        indent=2,
    )


@mcp.tool()
def memory_status() -> str:
    """Segment counts and index progress per namespace, as JSON."""
    return json.dumps(_get_manager().status(), indent=2)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        mcp.run(transport="stdio")
    finally:
        if _manager is not None:
            _manager.close()


if __name__ == "__main__":
    main()
