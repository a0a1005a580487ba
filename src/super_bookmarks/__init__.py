"""
Super Bookmarks - note and bookmark capture with local semantic search.
This package stores notes in SQLite, embeds their content with a small local
model, and ranks them for a query by blending cosine similarity with
keyword and tag matching.

Search operations are asynchronous; the embedding model runs on its own
worker thread so loading it never blocks a caller.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("super-bookmarks")
except PackageNotFoundError:
    __version__ = "0.3.0"
