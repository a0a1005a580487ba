"""MCP server for Super Bookmarks."""
