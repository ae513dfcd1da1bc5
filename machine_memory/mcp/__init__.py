"""MCP tool surface for machine-memory (requires the ``mcp`` extra)."""
