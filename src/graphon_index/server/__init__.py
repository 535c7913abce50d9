"""MCP server exposing the Graphon query surface."""
