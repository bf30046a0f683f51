"""ServiceDesk Plus MCP Server - Model Context Protocol server for ManageEngine ServiceDesk Plus."""

__version__ = "0.1.0"
