"""Entry point: python -m memlayer <command>

- "serve":  Daemon mode (outbox worker + graduation/retention scheduler)
- "mcp":    MCP stdio server exposing the memory tools
- "search": Progressive search, JSON on stdout
- "cite":   Open a citation (mem:XXXXXX), JSON on stdout
- "stats":  Event/vector/session/level counts, JSON on stdout
- "drain":  Embed everything pending in the outbox, then exit
- "sweep":  Recompute levels; with --retention also prune stale events,
            with --insights also extract insight events
- "history": Recent sessions, or one session's events with --session
- "memories": Events at a retention level, or the most accessed ones
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

from memlayer.config import MemlayerConfig, load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _print_json(value) -> None:
    print(json.dumps(value, ensure_ascii=False, indent=2, default=str))


def _run_serve(config: MemlayerConfig, args: argparse.Namespace) -> None:
    """Daemon mode — outbox worker + scheduler."""
    from memlayer.daemon import MemlayerDaemon

    daemon = MemlayerDaemon(config)
    asyncio.run(daemon.run())


def _run_mcp(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.mcp_server import serve_stdio

    try:
        asyncio.run(serve_stdio(config))
    except KeyboardInterrupt:
        pass


def _run_search(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service
    from memlayer.memory.retriever import SearchOptions

    options = SearchOptions(
        top_k=args.top_k,
        min_score=args.min_score,
        session_id=args.session,
        event_type=args.type,
        max_total_tokens=args.budget,
        mode="keyword" if args.keyword else "vector",
    )
    service = build_service(config)
    try:
        result = asyncio.run(service.search(args.query, options))
    finally:
        service.close()
    _print_json(result.to_dict())


def _run_cite(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        cited = service.get_cited_event(args.citation_id)
    finally:
        service.close()
    if cited is None:
        _print_json({"error": f"citation {args.citation_id} not found"})
        sys.exit(1)
    _print_json(cited.to_dict())


def _run_stats(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        stats = asyncio.run(service.get_stats())
    finally:
        service.close()
    _print_json(stats.to_dict())


def _run_drain(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        if args.retry_failed:
            reset = service.outbox.reset_failed()
            logging.getLogger(__name__).info("Reset %d failed outbox entries", reset)
        result = asyncio.run(service.process_pending_embeddings(args.batch))
        pending = service.outbox.pending_count()
    finally:
        service.close()
    _print_json({**asdict(result), "pending": pending})
    if result.failed:
        sys.exit(1)


def _run_sweep(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        report = asyncio.run(
            service.sweep(
                retention=args.retention,
                max_age_days=args.max_age_days,
                dry_run=args.dry_run,
                insights=args.insights,
            )
        )
    finally:
        service.close()
    _print_json(report.to_dict())


def _run_history(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        if args.session:
            events = service.get_session_history(args.session, limit=args.limit)
            _print_json([asdict(e) for e in events])
        elif args.recent:
            _print_json([asdict(e) for e in service.get_recent(limit=args.limit, event_type=args.type)])
        else:
            _print_json(service.get_session_history(limit=args.limit))
    finally:
        service.close()


def _run_memories(config: MemlayerConfig, args: argparse.Namespace) -> None:
    from memlayer.core import build_service

    service = build_service(config)
    try:
        if args.most_accessed:
            events = service.get_most_accessed(limit=args.limit)
        else:
            events = service.get_events_by_level(args.level, limit=args.limit)
        _print_json([asdict(e) for e in events])
    finally:
        service.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memlayer", description="Long-term memory for coding assistants")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Daemon mode: outbox worker + scheduler").set_defaults(func=_run_serve)
    sub.add_parser("mcp", help="MCP stdio server with memory tools").set_defaults(func=_run_mcp)

    search = sub.add_parser("search", help="Progressive search")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=None)
    search.add_argument("--min-score", type=float, default=None)
    search.add_argument("--session", default=None)
    search.add_argument("--type", default=None)
    search.add_argument("--budget", type=int, default=None, help="Max total tokens")
    search.add_argument("--keyword", action="store_true", help="Keyword (FTS) search only")
    search.set_defaults(func=_run_search)

    cite = sub.add_parser("cite", help="Open a citation")
    cite.add_argument("citation_id")
    cite.set_defaults(func=_run_cite)

    sub.add_parser("stats", help="Memory statistics").set_defaults(func=_run_stats)

    drain = sub.add_parser("drain", help="Embed all pending events")
    drain.add_argument("--batch", type=int, default=None)
    drain.add_argument("--retry-failed", action="store_true", help="Reset entries that ran out of attempts")
    drain.set_defaults(func=_run_drain)

    sweep = sub.add_parser("sweep", help="Recompute levels (and optionally prune)")
    sweep.add_argument("--retention", action="store_true")
    sweep.add_argument("--max-age-days", type=int, default=None)
    sweep.add_argument("--dry-run", action="store_true")
    sweep.add_argument("--insights", action="store_true", help="Also extract insight events")
    sweep.set_defaults(func=_run_sweep)

    history = sub.add_parser("history", help="Recent sessions or one session's events")
    history.add_argument("--session", default=None)
    history.add_argument("--recent", action="store_true", help="Recent events across sessions")
    history.add_argument("--type", default=None)
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(func=_run_history)

    memories = sub.add_parser("memories", help="Events by retention level")
    memories.add_argument("--level", default="L1", help="L0-L4")
    memories.add_argument("--most-accessed", action="store_true")
    memories.add_argument("--limit", type=int, default=50)
    memories.set_defaults(func=_run_memories)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    config = load_config()
    _setup_logging(config.log_level)

    from memlayer.errors import MemlayerError

    try:
        args.func(config, args)
    except MemlayerError as e:
        logging.getLogger(__name__).error("%s failed: %s", args.command, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
