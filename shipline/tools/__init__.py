"""Tool implementations shared by the CLI and the MCP server."""
