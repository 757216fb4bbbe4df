"""
Command-line interface for memroute.

Sub-commands
------------
add      – Store a note in memory.
search   – Retrieve the most relevant memories (or session turns) for a query.
route    – Show which model tier a prompt would be routed to.
feedback – Report how a tier performed on a prompt pattern.
cost     – Record the cost of one model call.
stats    – Print aggregate cost statistics.
status   – Print segment counts and index progress.
migrate  – Import a MEMORY.md-style notes file once.

Configuration is read from ``MEMROUTE_*`` environment variables (see
:mod:`memroute.config`); ``--data-dir`` overrides the data directory.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

from .config import load_config_from_env
from .errors import MemrouteError
from .manager import MemoryManager
from .models import RoutingContext, Usage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memroute",
        description="Local semantic memory and cost-aware model routing for LLM agents.",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="PATH",
        help="Data directory (default: $MEMROUTE_DATA_DIR or ~/.cache/memroute).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity on stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # add
    p_add = sub.add_parser("add", help="Store a note in memory.")
    p_add.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_add.add_argument("--tag", action="append", default=[], dest="tags", help="Tag (repeatable).")
    p_add.add_argument("--source", default="user", help="Where the note came from (default: user).")

    # search
    p_search = sub.add_parser("search", help="Retrieve relevant memories.")
    p_search.add_argument("query", help="Natural-language query.")
    p_search.add_argument(
        "-n",
        type=int,
        default=5,
        metavar="N",
        help="Number of results to return (default: 5).",
    )
    p_search.add_argument("--tag", default=None, help="Only memories carrying this tag.")
    p_search.add_argument(
        "--session",
        default=None,
        metavar="ID",
        help="Search conversation turns of this session instead of memories.",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # route
    p_route = sub.add_parser("route", help="Decide which tier a prompt goes to.")
    p_route.add_argument("prompt", help="Prompt to route.")
    p_route.add_argument(
        "--capability",
        action="append",
        default=[],
        dest="capabilities",
        help="Capability flag, e.g. AGENT_BOOSTER_AVAILABLE (repeatable).",
    )
    p_route.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # feedback
    p_feedback = sub.add_parser("feedback", help="Report the outcome of a routing decision.")
    p_feedback.add_argument("pattern", help="Prompt pattern the outcome applies to.")
    p_feedback.add_argument("--tier", type=int, required=True, choices=[1, 2, 3])
    outcome = p_feedback.add_mutually_exclusive_group(required=True)
    outcome.add_argument("--success", action="store_const", const=True, dest="outcome")
    outcome.add_argument("--failure", action="store_const", const=False, dest="outcome")
    outcome.add_argument("--outcome", type=float, dest="outcome", metavar="SCORE", help="Outcome in [0, 1].")

    # cost
    p_cost = sub.add_parser("cost", help="Record the cost of one model call.")
    p_cost.add_argument("model", help="Model that served the call.")
    p_cost.add_argument("--input-tokens", type=int, default=0)
    p_cost.add_argument("--output-tokens", type=int, default=0)
    p_cost.add_argument("--cost", type=float, default=0.0, help="Monetary cost of the call.")
    p_cost.add_argument("--latency-ms", type=float, required=True)
    succeeded = p_cost.add_mutually_exclusive_group()
    succeeded.add_argument("--success", action="store_const", const=True, dest="success")
    succeeded.add_argument("--failure", action="store_const", const=False, dest="success")

    # stats
    p_stats = sub.add_parser("stats", help="Aggregate cost statistics.")
    p_stats.add_argument("--model", default=None, help="Only calls to this model.")
    p_stats.add_argument("--timeframe", default=None, help="Trailing window, e.g. 30m, 24h, 7d.")
    p_stats.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # status
    p_status = sub.add_parser("status", help="Segment counts and index progress.")
    p_status.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # migrate
    p_migrate = sub.add_parser("migrate", help="Import a notes file into memory once.")
    p_migrate.add_argument("source", help="Path of the MEMORY.md-style notes file.")
    p_migrate.add_argument("--name", default="memory-md", help="Migration name (default: memory-md).")

    return parser


def _make_manager(args: argparse.Namespace) -> MemoryManager:
    config = load_config_from_env()
    if args.data_dir:
        config = dataclasses.replace(config, data_dir=args.data_dir)
    return MemoryManager(config)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        manager = _make_manager(args)
        try:
            return _dispatch(manager, args)
        finally:
            manager.close()
    except (MemrouteError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _dispatch(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.command == "add":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        memory_id = manager.add_memory(text, tags=args.tags, source=args.source)
        print(f"Stored memory {memory_id}")

    elif args.command == "search":
        if args.session:
            results = manager.search_turns(args.query, session_id=args.session, top_k=args.n)
        else:
            results = manager.search(args.query, top_k=args.n, tag=args.tag)
        if not results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps([r.to_dict() for r in results], indent=2))
        else:
            for i, r in enumerate(results, 1):
                tags = r.metadata.get("tags") or []
                print(f"[{i}] (score={r.score:.3f}{', tags=' + ','.join(tags) if tags else ''})")
                print(f"    {r.content[:200]}")
                print(f"    id={r.id}")
                print()

    elif args.command == "route":
        decision = manager.route_request(args.prompt, RoutingContext(capabilities=set(args.capabilities)))
        if args.as_json:
            print(json.dumps(decision.to_dict(), indent=2))
        else:
            print(f"tier={decision.tier} model={decision.model} complexity={decision.complexity_score:.2f}")
            print(f"    {decision.reason}")

    elif args.command == "feedback":
        entry = manager.update_policy(args.pattern, args.tier, args.outcome)
        print(
            f"Policy {entry.key}: tier={entry.tier} success_rate={entry.success_rate:.2f} "
            f"uses={entry.usage_count}"
        )

    elif args.command == "cost":
        usage = Usage(input_tokens=args.input_tokens, output_tokens=args.output_tokens, cost=args.cost)
        record = manager.record_cost(args.model, usage, args.latency_ms, success=args.success)
        print(f"Recorded {record.key}")

    elif args.command == "stats":
        stats = manager.get_cost_stats(model=args.model, timeframe=args.timeframe)
        if args.as_json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            success = "n/a" if stats.success_rate is None else f"{stats.success_rate:.1%}"
            print(f"calls={stats.total_calls} cost=${stats.total_cost:.4f} success={success}")
            print(f"latency avg={stats.avg_latency_ms:.0f}ms p95={stats.p95_latency_ms:.0f}ms")
            print(f"tokens in={stats.input_tokens} out={stats.output_tokens}")

    elif args.command == "status":
        status = manager.status()
        if args.as_json:
            print(json.dumps(status, indent=2))
        else:
            for name, count in status["segments"].items():
                print(f"{name}: {count} segment(s)")
            for name, stats in status["indexes"].items():
                state = "complete" if stats["complete"] else f"{stats['pending']} pending"
                print(f"index {name}: {stats['nodes']} node(s), {state}")
            budget = status["budget"]
            if budget:
                print(f"budget: ${budget['spent']:.4f} of ${budget['limit']:.4f} over {budget['window']}")

    elif args.command == "migrate":
        imported = manager.migrate(args.source, name=args.name)
        print(f"Imported {imported} section(s).")

    return 0


if __name__ == "__main__":
    sys.exit(main())
