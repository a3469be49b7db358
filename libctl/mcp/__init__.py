"""libctl MCP integration: server, tools, and audit logging."""
