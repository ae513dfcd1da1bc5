"""
machine-memory MCP Server — project memory as agent tools

Standalone MCP server exposing machine-memory operations via the
Model Context Protocol. Thin layer: every tool delegates to
machine_memory.operations; no business logic lives here.

Usage:
    python -m machine_memory.mcp.server --db .agents/memory.db
    machine-memory serve
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Persistent project memory for coding agents (8 tools).\n"
    "\n"
    "BEFORE EDITING: memory_suggest with the files you will touch.\n"
    "SEARCH:  memory_query with 2-3 keywords; memory_get by id.\n"
    "STORE:   memory_add for conventions, decisions, gotchas, status.\n"
    "CHECK:   memory_verify / memory_diff before relying on or replacing a fact.\n"
    "PRUNE:   memory_deprecate (optionally superseded_by), memory_doctor.\n"
    "\n"
    "Rules:\n"
    "- One short fact per memory, with 2-5 lowercase tags\n"
    "- Review potential_conflicts returned by memory_add\n"
    "- Use memory_type=status for transient state; older status notes are "
    "reported for deprecation\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="machine-memory-mcp",
        description="machine-memory MCP Server — project memory for coding agents",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("MACHINE_MEMORY_DB"),
        help="SQLite database path (default: $MACHINE_MEMORY_DB or config)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("MACHINE_MEMORY_CONFIG"),
        help="JSON config file (default: $MACHINE_MEMORY_CONFIG)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    The store is opened once in write mode, which migrates the schema
    when needed.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from machine_memory.config import load_config
    from machine_memory.mcp.tools import register_memory_tools
    from machine_memory.store import MemoryStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    if args.db:
        config.store.db_path = args.db

    store = MemoryStore(db_path=config.store.db_path, mode="write", config=config.store)

    mcp = FastMCP(
        name="machine-memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_memory_tools(mcp, store, config)

    logger.info(f"machine-memory MCP server ready: db={store.db_path}")
    return mcp, store


def main():
    """CLI entry point: parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, store = create_server(args)
    try:
        mcp.run()
    finally:
        store.close()


if __name__ == "__main__":
    main()
