"""
Tests for the 8 MCP tools in machine_memory.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.
"""

import pytest

from machine_memory.config import MemoryConfig, StoreConfig
from machine_memory.store import MemoryStore


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


@pytest.fixture
def mcp_env(tmp_path):
    """Create store, config, mock MCP, and register all tools."""
    db_path = str(tmp_path / "memory.db")
    config = MemoryConfig(store=StoreConfig(db_path=db_path))
    store = MemoryStore(db_path=db_path)
    mcp = MockMCP()

    from machine_memory.mcp.tools import register_memory_tools
    register_memory_tools(mcp, store, config)

    yield {"mcp": mcp, "store": store, "config": config}
    store.close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


# ---------------------------------------------------------------------------
# Tool count
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_8_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == 8

    def test_all_tool_names(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == {
            "memory_query", "memory_get", "memory_suggest", "memory_add",
            "memory_deprecate", "memory_verify", "memory_diff", "memory_doctor",
        }


# ---------------------------------------------------------------------------
# memory_add / memory_get
# ---------------------------------------------------------------------------


class TestMemoryAdd:
    def test_add_defaults(self, mcp_env):
        r = call(mcp_env, "memory_add", content="Use ruff for linting", tags="lint")
        assert r["id"] == 1
        assert r["memory_type"] == "convention"
        assert r["certainty"] == "inferred"
        assert r["status"] == "active"
        assert r["potential_conflicts"] == []

    def test_source_agent_recorded(self, mcp_env):
        r = call(mcp_env, "memory_add", content="x fact", source_agent="planner")
        assert r["source_agent"] == "planner"
        assert r["last_updated_by"] == "planner"

    def test_refs_list(self, mcp_env):
        r = call(mcp_env, "memory_add", content="x fact", refs=["a.py", "b.py"])
        assert r["refs"] == ["a.py", "b.py"]

    def test_conflicts_reported(self, mcp_env):
        call(mcp_env, "memory_add", content="Auth tokens use JWT", tags="auth")
        r = call(mcp_env, "memory_add", content="Auth uses cookies", tags="auth")
        assert [c["id"] for c in r["potential_conflicts"]] == [1]

    def test_status_cascade(self, mcp_env):
        call(mcp_env, "memory_add", content="ci red", tags="ci", memory_type="status")
        r = call(mcp_env, "memory_add", content="pipeline green", tags="ci", memory_type="status")
        assert r["status_cascade"]["overlapping_ids"] == [1]
        assert r["status_cascade"]["suggested_command"] == (
            "machine-memory deprecate 1 --superseded-by 2"
        )

    def test_invalid_type(self, mcp_env):
        r = call(mcp_env, "memory_add", content="x", memory_type="note")
        assert r["kind"] == "validation"
        assert "error" in r

    def test_empty_content(self, mcp_env):
        r = call(mcp_env, "memory_add", content="   ")
        assert r["kind"] == "validation"

    def test_get(self, mcp_env):
        call(mcp_env, "memory_add", content="hello world")
        r = call(mcp_env, "memory_get", id=1)
        assert r["content"] == "hello world"

    def test_get_missing(self, mcp_env):
        r = call(mcp_env, "memory_get", id=99)
        assert r == {"error": "Not found", "kind": "not_found", "id": 99}


# ---------------------------------------------------------------------------
# memory_query / memory_suggest
# ---------------------------------------------------------------------------


class TestSearch:
    def test_query(self, mcp_env):
        call(mcp_env, "memory_add", content="redis cache invalidation", tags="redis")
        call(mcp_env, "memory_add", content="postgres vacuum schedule")
        r = call(mcp_env, "memory_query", query="redis")
        assert r["count"] == 1
        assert r["results"][0]["content"] == "redis cache invalidation"

    def test_query_no_terms(self, mcp_env):
        r = call(mcp_env, "memory_query", query="of the")
        assert r["reason"] == "no_search_terms"
        assert r["results"] == []

    def test_query_excludes_deprecated(self, mcp_env):
        call(mcp_env, "memory_add", content="redis cache invalidation")
        call(mcp_env, "memory_deprecate", ids="1")
        assert call(mcp_env, "memory_query", query="redis")["count"] == 0
        r = call(mcp_env, "memory_query", query="redis", include_deprecated=True)
        assert r["count"] == 1

    def test_query_invalid_type_filter(self, mcp_env):
        r = call(mcp_env, "memory_query", query="redis", memory_type="note")
        assert r["kind"] == "validation"

    def test_suggest(self, mcp_env):
        call(mcp_env, "memory_add", content="rotate jwt keys monthly", tags="auth")
        r = call(mcp_env, "memory_suggest", files=["src/auth/jwt.ts"])
        assert r["files"] == ["src/auth/jwt.ts"]
        assert r["count"] == 1
        assert set(r["results"][0]["found_via"]) == {"index", "neighborhood"}

    def test_suggest_no_files(self, mcp_env):
        r = call(mcp_env, "memory_suggest", files=[])
        assert r["kind"] == "validation"


# ---------------------------------------------------------------------------
# memory_deprecate
# ---------------------------------------------------------------------------


class TestDeprecate:
    def test_by_ids(self, mcp_env):
        call(mcp_env, "memory_add", content="one alpha")
        call(mcp_env, "memory_add", content="two beta")
        r = call(mcp_env, "memory_deprecate", ids="1,2,7")
        assert r["count"] == 2
        assert r["not_found"] == [7]
        assert {m["status"] for m in r["deprecated"]} == {"deprecated"}

    def test_superseded_by(self, mcp_env):
        call(mcp_env, "memory_add", content="old approach")
        call(mcp_env, "memory_add", content="new approach")
        r = call(mcp_env, "memory_deprecate", ids="1", superseded_by=2, updated_by="bot")
        rec = r["deprecated"][0]
        assert rec["status"] == "superseded_by"
        assert rec["superseded_by"] == 2
        assert rec["last_updated_by"] == "bot"

    def test_by_match(self, mcp_env):
        call(mcp_env, "memory_add", content="prettier runs on commit")
        r = call(mcp_env, "memory_deprecate", match="prettier")
        assert r["count"] == 1

    def test_ids_and_match_exclusive(self, mcp_env):
        r = call(mcp_env, "memory_deprecate", ids="1", match="x")
        assert r["kind"] == "validation"

    def test_missing_superseding_memory(self, mcp_env):
        call(mcp_env, "memory_add", content="x")
        r = call(mcp_env, "memory_deprecate", ids="1", superseded_by=5)
        assert r["kind"] == "validation"
        assert r["superseded_by"] == 5


# ---------------------------------------------------------------------------
# memory_verify / memory_diff / memory_doctor
# ---------------------------------------------------------------------------


class TestCheckTools:
    def test_verify_consistent(self, mcp_env):
        call(mcp_env, "memory_add", content="API responses are cached")
        r = call(mcp_env, "memory_verify", id=1, fact="API responses cached")
        assert r["ok"] is True
        assert r["result"] == "consistent"

    def test_verify_negation(self, mcp_env):
        call(mcp_env, "memory_add", content="API responses are cached")
        r = call(mcp_env, "memory_verify", id=1, fact="API responses are never cached")
        assert r["ok"] is False
        assert r["negation_mismatch"] is True
        assert r["warning"] == "Conflict"

    def test_verify_missing(self, mcp_env):
        r = call(mcp_env, "memory_verify", id=3, fact="x")
        assert r["kind"] == "not_found"

    def test_diff(self, mcp_env):
        call(mcp_env, "memory_add", content="deploy with helm")
        r = call(mcp_env, "memory_diff", id=1, content="deploy with kustomize")
        assert r["id"] == 1
        assert r["added_terms"] == ["kustomize"]
        assert r["removed_terms"] == ["helm"]

    def test_doctor(self, mcp_env):
        call(mcp_env, "memory_add", content="untagged fact")
        r = call(mcp_env, "memory_doctor")
        assert r["summary"]["checked"] == 1
        assert r["summary"]["tag_hygiene"] == 1

    def test_internal_error_payload(self, mcp_env, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("machine_memory.mcp.tools.run_doctor", boom)
        r = call(mcp_env, "memory_doctor")
        assert r == {"error": "memory_doctor failed: disk on fire", "kind": "internal"}


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


class TestServer:
    def test_parser_env_defaults(self, monkeypatch):
        from machine_memory.mcp.server import build_parser

        monkeypatch.setenv("MACHINE_MEMORY_DB", "/tmp/env.db")
        monkeypatch.delenv("MACHINE_MEMORY_CONFIG", raising=False)
        args = build_parser().parse_args([])
        assert args.db == "/tmp/env.db"
        assert args.config is None
        assert args.verbose is False

    def test_create_server(self, tmp_path):
        pytest.importorskip("mcp")
        from machine_memory.mcp.server import build_parser, create_server

        db_path = str(tmp_path / "srv" / "memory.db")
        args = build_parser().parse_args(["--db", db_path])
        mcp, store = create_server(args)
        try:
            assert store.db_path == db_path
            assert store.mode == "write"
            assert store.schema_status()["current"] is True
        finally:
            store.close()
