"""Command-line interface for MCP Aggregator."""
