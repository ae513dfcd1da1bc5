"""
machine-memory CLI — JSON-in/JSON-out memory commands for agents

Commands:
    machine-memory migrate                          — create/upgrade the store schema
    machine-memory add "content" [--tags T] ...     — store a memory (+ conflict check)
    machine-memory get <id>                         — one memory
    machine-memory list [filters]                   — memories, newest first
    machine-memory query "text" [filters]           — ranked full-text search
    machine-memory update <ids> "content" [...]     — replace content / fields
    machine-memory deprecate <ids> [--superseded-by N]
    machine-memory delete <ids>
    machine-memory suggest --files a.py,b.py        — memories near a file set
    machine-memory verify <id> "fact"               — consistent / conflict
    machine-memory diff <id> "new content"          — term diff, read-only
    machine-memory doctor                           — hygiene sweep
    machine-memory gc --dry-run                     — expired memories
    machine-memory stats | export | import FILE
    machine-memory serve                            — start MCP server

Environment variables:
    MACHINE_MEMORY_DB      Path to SQLite database (default: .agents/memory.db)
    MACHINE_MEMORY_CONFIG  Path to a JSON config file

Precedence (invariant):
    CLI --flag  >  MACHINE_MEMORY_* env var  >  config file  >  compiled default

Exit codes:
    0  Success
    1  Engine error (validation, not found, contention, stale schema, ...)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from machine_memory.config import MemoryConfig, load_config
from machine_memory.errors import EngineError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

READ = "read"
WRITE = "write"


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


def _resolve_config(args: Optional[argparse.Namespace] = None) -> MemoryConfig:
    """Resolve config: CLI --config > MACHINE_MEMORY_CONFIG > defaults."""
    path = getattr(args, "config", None) if args else None
    path = path or os.environ.get("MACHINE_MEMORY_CONFIG") or None
    return load_config(path)


def _resolve_db(args: Optional[argparse.Namespace], config: MemoryConfig) -> str:
    """Resolve database path: CLI --db > MACHINE_MEMORY_DB > config > default."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("MACHINE_MEMORY_DB", config.store.db_path)


@contextmanager
def _session(args: argparse.Namespace, mode: str) -> Iterator[Any]:
    """Open a store session for one command; always closed on exit."""
    from machine_memory.store import open_store

    config = _resolve_config(args)
    with open_store(_resolve_db(args, config), mode=mode, config=config.store) as store:
        yield store, config


def _filters(args: argparse.Namespace):
    from machine_memory.types import SearchFilters
    return SearchFilters(
        tag=getattr(args, "tags", None),
        memory_type=getattr(args, "type", None),
        certainty=getattr(args, "certainty", None),
        status=getattr(args, "status", None),
        include_deprecated=getattr(args, "include_deprecated", False),
    )


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _read_content(args: argparse.Namespace, positional: Optional[str]) -> str:
    """Content from a positional argument or --content-file (exclusive)."""
    path = getattr(args, "content_file", None)
    if path and positional:
        raise ValidationError("Pass content either inline or with --content-file, not both.")
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    return positional or ""


def _print_batch(result, single: bool) -> None:
    """Single target: the record itself (or not found). Otherwise the batch."""
    if single:
        if result.not_found:
            raise NotFoundError(result.not_found[0])
        _print_json(result.records[0].to_dict() if result.records else {"deleted": result.ids[0]})
        return
    _print_json(result.to_dict())


# ===========================================================================
# Commands
# ===========================================================================


def cmd_migrate(args: argparse.Namespace) -> None:
    """Create or upgrade the store schema (idempotent)."""
    with _session(args, WRITE) as (store, _):
        report = store.migrate()
        report["status"] = "ok"
        report["db"] = store.db_path
        _print_json(report)


def cmd_add(args: argparse.Namespace) -> None:
    from machine_memory.operations import add_memory

    content = _read_content(args, args.content)
    with _session(args, WRITE) as (store, config):
        result = add_memory(
            store, content,
            tags=args.tags, context=args.context or "",
            memory_type=args.type, certainty=args.certainty,
            source_agent=args.source_agent or "", updated_by=args.updated_by,
            refs=args.refs, expires_after_days=args.expires_after_days,
            check_conflicts=not args.no_conflicts, config=config,
        )
        _print_json(result.to_dict())


def cmd_get(args: argparse.Namespace) -> None:
    from machine_memory.operations import get_memory
    from machine_memory.types import parse_id_spec

    record_id = parse_id_spec(args.id)[0]
    with _session(args, READ) as (store, _):
        _print_json(get_memory(store, record_id).to_dict())


def cmd_list(args: argparse.Namespace) -> None:
    filters = _filters(args)
    with _session(args, READ) as (store, _):
        records = store.list_records(filters, limit=args.limit)
        _print_json([r.to_dict() for r in records])


def cmd_query(args: argparse.Namespace) -> None:
    from machine_memory.operations import query_memories

    filters = _filters(args)
    with _session(args, READ) as (store, _):
        _print_json(query_memories(store, args.term, filters, limit=args.limit).to_dict())


def cmd_update(args: argparse.Namespace) -> None:
    from machine_memory.operations import resolve_targets, update_memories

    positional = list(args.targets)
    with _session(args, WRITE) as (store, _):
        if args.match is not None:
            if len(positional) > 1:
                raise ValidationError("With --match, pass at most the new content.")
            ids = resolve_targets(store, match=args.match)
            content_arg = positional[0] if positional else None
        else:
            if not positional:
                raise ValidationError("Usage: update <id|id,id,...> <content>")
            ids = resolve_targets(store, positional[0])
            content_arg = " ".join(positional[1:]) or None
        content = _read_content(args, content_arg)
        result = update_memories(
            store, ids, content,
            tags=args.tags, context=args.context,
            memory_type=args.type, certainty=args.certainty,
            refs=args.refs, expires_after_days=args.expires_after_days,
            updated_by=args.updated_by,
        )
        _print_batch(result, single=len(ids) == 1)


def cmd_deprecate(args: argparse.Namespace) -> None:
    from machine_memory.operations import deprecate_memories, resolve_targets

    with _session(args, WRITE) as (store, _):
        if args.match is not None:
            ids = resolve_targets(store, ",".join(args.ids) or None, match=args.match)
        else:
            ids = resolve_targets(store, ",".join(args.ids))
        result = deprecate_memories(
            store, ids, args.superseded_by, updated_by=args.updated_by,
        )
        _print_batch(result, single=len(ids) == 1)


def cmd_delete(args: argparse.Namespace) -> None:
    from machine_memory.operations import delete_memories
    from machine_memory.types import parse_id_spec

    ids = parse_id_spec(",".join(args.ids))
    with _session(args, WRITE) as (store, _):
        _print_batch(delete_memories(store, ids), single=len(ids) == 1)


def _parse_files(args: argparse.Namespace) -> List[str]:
    if args.files_json:
        try:
            parsed = json.loads(args.files_json)
        except ValueError:
            parsed = None
        if not isinstance(parsed, list) or not all(isinstance(p, str) for p in parsed):
            raise ValidationError(
                "Invalid --files-json value. Provide a JSON array of paths, "
                "e.g. --files-json '[\"src/a.ts\",\"src/b.ts\"]'."
            )
        return [p.strip() for p in parsed if p.strip()]
    if args.files:
        return [p.strip() for p in args.files.split(",") if p.strip()]
    raise ValidationError("Usage: suggest --files <a,b> | --files-json '[...]'")


def cmd_suggest(args: argparse.Namespace) -> None:
    from machine_memory.operations import suggest_memories

    files = _parse_files(args)
    filters = _filters(args)
    with _session(args, READ) as (store, config):
        _print_json(suggest_memories(store, files, filters, config).to_dict())


def cmd_verify(args: argparse.Namespace) -> None:
    from machine_memory.operations import verify_fact
    from machine_memory.types import parse_id_spec

    record_id = parse_id_spec(args.id)[0]
    with _session(args, READ) as (store, config):
        _print_json(verify_fact(store, record_id, " ".join(args.fact), config))


def cmd_diff(args: argparse.Namespace) -> None:
    from machine_memory.operations import diff_fact
    from machine_memory.types import parse_id_spec

    record_id = parse_id_spec(args.id)[0]
    with _session(args, READ) as (store, config):
        _print_json(diff_fact(store, record_id, " ".join(args.content), config))


def cmd_doctor(args: argparse.Namespace) -> None:
    from machine_memory.doctor import run_doctor

    with _session(args, READ) as (store, config):
        report = run_doctor(store, config.dedup)
        if args.brief:
            print("\n".join(report.suggested_commands))
        else:
            _print_json(report.to_dict())


def cmd_gc(args: argparse.Namespace) -> None:
    from machine_memory.operations import gc_dry_run

    if not args.dry_run:
        raise ValidationError("Usage: gc --dry-run (expired memories are never deleted automatically)")
    with _session(args, READ) as (store, _):
        _print_json(gc_dry_run(store))


def cmd_stats(args: argparse.Namespace) -> None:
    from machine_memory.operations import memory_stats

    with _session(args, READ) as (store, _):
        _print_json(memory_stats(store))


def cmd_export(args: argparse.Namespace) -> None:
    from machine_memory.operations import export_records

    filters = _filters(args)
    with _session(args, READ) as (store, _):
        _print_json(export_records(store, filters, since=args.since))


def cmd_import(args: argparse.Namespace) -> None:
    from machine_memory.operations import import_entries

    try:
        with open(args.file, "r", encoding="utf-8") as f:
            entries = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Failed to parse JSON: {e}") from None
    if not isinstance(entries, list):
        raise ValidationError("Import file must contain a JSON array.")
    with _session(args, WRITE) as (store, config):
        _print_json({"results": import_entries(store, entries, config)})


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the machine-memory MCP server in foreground."""
    try:
        from machine_memory.mcp.server import build_parser as mcp_parser
        from machine_memory.mcp.server import create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install machine-memory[mcp]")
        sys.exit(1)

    config = _resolve_config(args)
    server_argv = ["--db", _resolve_db(args, config)]
    if getattr(args, "config", None):
        server_argv.extend(["--config", args.config])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, store = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install machine-memory[mcp]")
        sys.exit(1)

    _warn(f"machine-memory MCP server (db={server_args.db})")
    try:
        mcp.run()
    finally:
        store.close()


# ===========================================================================
# Shared argument helpers
# ===========================================================================


def _add_filter_arguments(p: argparse.ArgumentParser) -> None:
    """Visibility filters shared by list/query/suggest/export."""
    p.add_argument("--tags", default=None, help="Only memories whose tags contain this text")
    p.add_argument("--type", default=None, help="Filter by memory type")
    p.add_argument("--certainty", default=None, help="Filter by certainty (aliases accepted)")
    p.add_argument("--status", default=None, help="Filter by status (overrides active-only)")
    p.add_argument(
        "--include-deprecated", action="store_true",
        help="Include deprecated and superseded memories",
    )


def _add_field_arguments(p: argparse.ArgumentParser) -> None:
    """Record fields shared by add/update."""
    p.add_argument("--content-file", default=None, help="Read content from a file")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--context", default=None, help="Free-text context")
    p.add_argument("--type", default=None, help="Memory type (default: convention)")
    p.add_argument("--certainty", default=None, help="verified|inferred|speculative")
    p.add_argument("--updated-by", default=None, help="Agent making the change")
    p.add_argument("--refs", default=None, help="JSON array or comma-separated references")
    p.add_argument(
        "--expires-after-days", type=int, default=None,
        help="Advisory TTL in days (reported by gc --dry-run)",
    )


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    # Shared parent with flags that work on all subcommands.
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _db_default = _env_str("MACHINE_MEMORY_DB", ".agents/memory.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to JSON config file (default: MACHINE_MEMORY_CONFIG)",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="machine-memory",
        description="machine-memory — persistent project memory for coding agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("migrate", parents=[_common], help="Create or upgrade the store schema")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("add", parents=[_common], help="Add a memory")
    p.add_argument("content", nargs="?", default=None, help="Memory content")
    _add_field_arguments(p)
    p.add_argument("--source-agent", default=None, help="Agent that produced the memory")
    p.add_argument("--no-conflicts", action="store_true", help="Skip the conflict search")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("get", parents=[_common], help="Show one memory")
    p.add_argument("id", help="Memory id")
    p.set_defaults(func=cmd_get)

    p = sub.add_parser("list", parents=[_common], help="List memories")
    _add_filter_arguments(p)
    p.add_argument("--limit", type=int, default=None, help="Max results")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("query", parents=[_common], help="Ranked full-text search")
    p.add_argument("term", help="Search text")
    _add_filter_arguments(p)
    p.add_argument("--limit", type=int, default=None, help="Max results")
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("update", parents=[_common], help="Replace memory content")
    p.add_argument("targets", nargs="*", help="<id|id,id,...> <content...>")
    p.add_argument("--match", default=None, help="Target the best active match for this text")
    _add_field_arguments(p)
    p.set_defaults(func=cmd_update)

    p = sub.add_parser("deprecate", parents=[_common], help="Deprecate memories")
    p.add_argument("ids", nargs="*", help="Memory ids")
    p.add_argument("--superseded-by", type=int, default=None, help="Id of the replacing memory")
    p.add_argument("--updated-by", default=None, help="Agent making the change")
    p.add_argument("--match", default=None, help="Target the best active match for this text")
    p.set_defaults(func=cmd_deprecate)

    p = sub.add_parser("delete", parents=[_common], help="Delete memories")
    p.add_argument("ids", nargs="+", help="Memory ids")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("suggest", parents=[_common], help="Memories related to files")
    p.add_argument("--files", default=None, help="Comma-separated file paths")
    p.add_argument("--files-json", default=None, help="JSON array of file paths")
    _add_filter_arguments(p)
    p.set_defaults(func=cmd_suggest)

    p = sub.add_parser("verify", parents=[_common], help="Check a fact against a memory")
    p.add_argument("id", help="Memory id")
    p.add_argument("fact", nargs="+", help="Statement to check")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("diff", parents=[_common], help="Term diff against a memory")
    p.add_argument("id", help="Memory id")
    p.add_argument("content", nargs="+", help="Proposed content")
    p.set_defaults(func=cmd_diff)

    p = sub.add_parser("doctor", parents=[_common], help="Hygiene sweep")
    p.add_argument("--brief", action="store_true", help="Print only suggested commands")
    p.set_defaults(func=cmd_doctor)

    p = sub.add_parser("gc", parents=[_common], help="List expired memories")
    p.add_argument("--dry-run", action="store_true", help="Required: report only")
    p.set_defaults(func=cmd_gc)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("export", parents=[_common], help="Export memories as JSON")
    _add_filter_arguments(p)
    p.add_argument("--since", default=None, help="Only memories updated on/after this date")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", parents=[_common], help="Import memories from a JSON file")
    p.add_argument("file", help="JSON array produced by export")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: machine-memory <command> [args]."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except EngineError as e:
        _print_json(e.to_dict())
        sys.exit(1)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
