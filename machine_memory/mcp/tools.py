"""
machine-memory MCP Tools — 8 memory tools for MCP integration.

Thin wrappers around machine_memory.operations. Every tool returns a
JSON-safe dict; engine errors come back as their structured payload
(``{"error", "kind", "hint", ...}``) instead of raising into the client.

Tool hierarchy:
    CONTEXT:    memory_suggest   — memories near the files about to change
    SEARCH:     memory_query     — ranked full-text search
                memory_get       — one memory by id
    WRITE:      memory_add       — store a memory (+ conflicts, status cascade)
                memory_deprecate — retire memories, optionally superseded
    CHECK:      memory_verify, memory_diff
    HYGIENE:    memory_doctor
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from machine_memory.config import MemoryConfig
from machine_memory.doctor import run_doctor
from machine_memory.errors import EngineError
from machine_memory.operations import (
    add_memory,
    deprecate_memories,
    diff_fact,
    get_memory,
    query_memories,
    resolve_targets,
    suggest_memories,
    verify_fact,
)
from machine_memory.store import MemoryStore
from machine_memory.types import SearchFilters

logger = logging.getLogger(__name__)


def _internal_error(tool: str, exc: Exception) -> Dict[str, Any]:
    logger.exception(f"{tool} failed")
    return {"error": f"{tool} failed: {exc}", "kind": "internal"}


def register_memory_tools(
    mcp,
    store: MemoryStore,
    config: Optional[MemoryConfig] = None,
) -> None:
    """
    Register the memory MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything exposing ``tool()``).
        store: Open MemoryStore (write mode for memory_add/memory_deprecate).
        config: MemoryConfig for dedup and suggest tuning.
    """
    config = config or MemoryConfig()

    # =====================================================================
    # CONTEXT / SEARCH
    # =====================================================================

    @mcp.tool()
    def memory_query(
        query: str,
        tags: Optional[str] = None,
        memory_type: Optional[str] = None,
        certainty: Optional[str] = None,
        include_deprecated: bool = False,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Ranked full-text search over stored memories.

        Args:
            query: Search text; 2-3 keywords work best.
            tags: Only memories whose tags contain this text.
            memory_type: convention|decision|gotcha|status|...
            certainty: verified|inferred|speculative.
            include_deprecated: Also return deprecated/superseded memories.
            limit: Max results.

        Returns:
            results (scored, best first), or an empty-result payload with a
            reason and derived terms.
        """
        try:
            filters = SearchFilters(
                tag=tags, memory_type=memory_type, certainty=certainty,
                include_deprecated=include_deprecated,
            )
            outcome = query_memories(store, query, filters, limit=limit)
            return outcome.to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_query", e)

    @mcp.tool()
    def memory_get(id: int) -> Dict[str, Any]:
        """Read one memory by id."""
        try:
            return get_memory(store, int(id)).to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_get", e)

    @mcp.tool()
    def memory_suggest(
        files: List[str],
        include_deprecated: bool = False,
    ) -> Dict[str, Any]:
        """Memories relevant to a set of files you are about to edit.

        Combines index matches on path terms with directory/extension hints;
        each result says how it was found (index, neighborhood or both).
        """
        try:
            filters = SearchFilters(include_deprecated=include_deprecated)
            outcome = suggest_memories(store, files, filters, config)
            return outcome.to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_suggest", e)

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    def memory_add(
        content: str,
        tags: Optional[str] = None,
        context: str = "",
        memory_type: Optional[str] = None,
        certainty: Optional[str] = None,
        source_agent: str = "",
        refs: Optional[List[str]] = None,
        expires_after_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Store a memory.

        Args:
            content: One short fact.
            tags: Comma-separated tags.
            context: Where/why this applies.
            memory_type: Default convention.
            certainty: Default inferred.
            source_agent: Agent name; also recorded as last_updated_by.
            refs: Files or URLs backing the fact.
            expires_after_days: Advisory TTL.

        Returns:
            The created memory, potential_conflicts, and for status memories
            a status_cascade with a ready-to-run deprecate command.
        """
        try:
            result = add_memory(
                store, content,
                tags=tags, context=context,
                memory_type=memory_type, certainty=certainty,
                source_agent=source_agent, refs=refs,
                expires_after_days=expires_after_days,
                config=config,
            )
            return result.to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_add", e)

    @mcp.tool()
    def memory_deprecate(
        ids: Optional[str] = None,
        match: Optional[str] = None,
        superseded_by: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Deprecate memories by id list ("3,5,8") or by best text match.

        With superseded_by, the memories point at their replacement.
        """
        try:
            target_ids = resolve_targets(store, ids, match=match)
            result = deprecate_memories(
                store, target_ids, superseded_by, updated_by=updated_by,
            )
            return result.to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_deprecate", e)

    # =====================================================================
    # CHECK / HYGIENE
    # =====================================================================

    @mcp.tool()
    def memory_verify(id: int, fact: str) -> Dict[str, Any]:
        """Check whether a statement is consistent with a stored memory."""
        try:
            return verify_fact(store, int(id), fact, config)
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_verify", e)

    @mcp.tool()
    def memory_diff(id: int, content: str) -> Dict[str, Any]:
        """Term-level diff between a stored memory and proposed content."""
        try:
            return diff_fact(store, int(id), content, config)
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_diff", e)

    @mcp.tool()
    def memory_doctor() -> Dict[str, Any]:
        """Hygiene sweep: duplicates, stale status notes, tag and refs issues."""
        try:
            return run_doctor(store, config.dedup).to_dict()
        except EngineError as e:
            return e.to_dict()
        except Exception as e:
            return _internal_error("memory_doctor", e)

    logger.debug("Registered 8 machine-memory MCP tools")
