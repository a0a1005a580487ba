"""Data models for Super Bookmarks."""
