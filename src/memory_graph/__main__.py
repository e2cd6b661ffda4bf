"""Entry point for `python -m memory_graph`."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List

from dotenv import load_dotenv


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-graph", description="Personal memory graph engine")
    parser.add_argument("--user", required=True, help="Owner id the command acts for")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Store a new memory")
    add.add_argument("content", help="Text of the memory")
    add.add_argument("--source-url", default=None, help="Where the text came from")
    add.add_argument("--type", dest="content_type", default=None, help="Override the detected content type")

    get = sub.add_parser("get", help="Fetch one memory by id")
    get.add_argument("memory_id")

    search = sub.add_parser("search", help="Semantic search over active memories")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=10)
    search.add_argument("--context", action="store_true", help="Include relationships and connected memories")

    sub.add_parser("recent", help="Newest memories first").add_argument("--limit", type=int, default=20)
    sub.add_parser("graph", help="Active memories and the edges between them")
    sub.add_parser("stats", help="Counts and average importance")

    archive = sub.add_parser("archive", help="Archive one memory")
    archive.add_argument("memory_id")
    archive.add_argument("--reason", default="manual")

    sub.add_parser("archive-expired", help="Archive memories past the retention window")
    return parser


async def _run(args: argparse.Namespace) -> Any:
    from memory_graph.runtime import open_engine

    async with open_engine() as engine:
        if args.command == "add":
            memory = await engine.create_memory(
                args.user, args.content, source_url=args.source_url, content_type=args.content_type,
            )
            return memory.to_dict()
        if args.command == "get":
            found = await engine.get_memory_by_id(args.user, args.memory_id)
            return found.to_dict() if found is not None else None
        if args.command == "search":
            if args.context:
                return (await engine.get_memories_with_context(args.user, args.query, args.limit)).to_dict()
            return [hit.to_dict() for hit in await engine.search_memories(args.user, args.query, args.limit)]
        if args.command == "recent":
            return [m.to_dict() for m in await engine.get_recent_memories(args.user, args.limit)]
        if args.command == "graph":
            return (await engine.get_memory_graph(args.user)).to_dict()
        if args.command == "stats":
            return (await engine.get_stats(args.user)).to_dict()
        if args.command == "archive":
            return {"archived": await engine.archive_memory(args.user, args.memory_id, args.reason)}
        if args.command == "archive-expired":
            return {"archived": await engine.archive_expired(args.user)}
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    from memory_graph.config import get_settings
    from memory_graph.errors import InvalidInput, MemoryGraphError

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    log = logging.getLogger("memory_graph")

    try:
        settings = get_settings()
        logging.getLogger().setLevel(getattr(logging, settings.LOG_LEVEL, logging.INFO))
        result = asyncio.run(_run(args))
    except InvalidInput as exc:
        log.error("Invalid input: %s", exc)
        return 2
    except MemoryGraphError as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1
    except ValueError as exc:
        log.error("Configuration error: %s", exc)
        return 2

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
