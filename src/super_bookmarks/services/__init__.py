"""Search, embedding and note services for Super Bookmarks."""
