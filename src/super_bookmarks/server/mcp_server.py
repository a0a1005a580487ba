"""MCP server implementation for Super Bookmarks."""

import atexit
import logging
import uuid
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from super_bookmarks.config import config
from super_bookmarks.exceptions import BookmarksError
from super_bookmarks.models.schema import ScoredNote
from super_bookmarks.observability import metrics, timed_operation
from super_bookmarks.services.embedding_client import EmbeddingClient
from super_bookmarks.services.note_service import LAST_REINDEX_META_KEY, NoteService
from super_bookmarks.services.search_service import SearchService
from super_bookmarks.storage.async_store import AsyncNoteStore
from super_bookmarks.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_tags(tags: Optional[str]) -> List[str]:
    """Convert a comma-separated tag string to a list."""
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


def format_results(results: List[ScoredNote]) -> str:
    """Render scored notes as a numbered markdown list."""
    lines = []
    for i, note in enumerate(results, 1):
        lines.append(f"{i}. **{note.title}** (score: {note.score:.3f})")
        lines.append(f"   ID: {note.id}")
        if note.url:
            lines.append(f"   URL: {note.url}")
        if note.tags:
            lines.append(f"   Tags: {', '.join(note.tags)}")
        if note.excerpt:
            excerpt = note.excerpt.replace("\n", " ")
            lines.append(f"   {excerpt[:150]}{'...' if len(excerpt) > 150 else ''}")
        lines.append("")
    return "\n".join(lines)


class BookmarksMcpServer:
    """MCP server exposing bookmark capture and search."""

    def __init__(self, engine=None, embeddings: Optional[EmbeddingClient] = None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None, one is
                created from the configured database path.
            embeddings: Embedding client to use. When None, one is built
                from the configuration.
        """
        self.mcp = FastMCP(config.server_name)
        self.store = AsyncNoteStore(NoteRepository(engine=engine))
        self.embeddings = embeddings or EmbeddingClient.from_config(config)
        self.search_service = SearchService(
            self.store,
            self.embeddings,
            settings=config.search_settings(),
            dimension=config.embedding_dim,
        )
        self.note_service = NoteService(
            self.store, self.embeddings, self.search_service.engine
        )
        logger.info("Super Bookmarks MCP server initialized")
        # Register shutdown hook for resource cleanup
        atexit.register(self._shutdown)
        self._register_tools()

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.embeddings.terminate()
        self.store.close()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors show their message; anything else is logged with its
        traceback and reported by reference ID only.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, BookmarksError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="bm_search")
        async def bm_search(query: str, limit: int = 20) -> str:
            """Search saved bookmarks and notes.
            Args:
                query: Free text. Prefix with "tag:" to match tags only,
                    e.g. "tag: python async"
                limit: Maximum number of results (default 20)
            """
            with timed_operation("bm_search", limit=limit) as op:
                try:
                    response = await self.search_service.query(query, limit=limit)
                    op["result_count"] = len(response.results)
                    output = ""
                    if response.notice:
                        output += f"_{response.notice}_\n\n"
                    if not response.results:
                        if response.failed:
                            return output.rstrip()
                        return output + f"No results for '{response.query}'."
                    output += f"Found {len(response.results)} results for '{response.query}':\n\n"
                    return output + format_results(response.results)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_find_similar")
        async def bm_find_similar(note_id: str, limit: int = 5) -> str:
            """Find notes semantically similar to a given note.
            Args:
                note_id: ID of the reference note
                limit: Maximum number of results (default 5)
            """
            with timed_operation("bm_find_similar", note_id=note_id) as op:
                try:
                    note = await self.note_service.get_note(note_id)
                    results = await self.search_service.find_similar(note_id, limit=limit)
                    op["result_count"] = len(results)
                    if not results:
                        return f"No similar notes found for '{note.title}'."
                    return (
                        f"Notes similar to '{note.title}':\n\n" + format_results(results)
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_add_note")
        async def bm_add_note(
            title: str = "",
            content: str = "",
            url: Optional[str] = None,
            tags: Optional[str] = None,
            favicon: Optional[str] = None,
        ) -> str:
            """Save a bookmark or note.

            Saving again with a URL that is already stored appends the new
            content to the existing note.
            Args:
                title: Title of the note (defaults to "Untitled")
                content: Text to save (selection, highlight, or free notes)
                url: Source URL (optional)
                tags: Comma-separated list of tags (optional)
                favicon: Favicon URL (optional)
            """
            with timed_operation("bm_add_note", title=title[:30]) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = await self.note_service.save_note(
                        title=title,
                        content=content,
                        url=url,
                        tags=_split_tags(tags),
                        favicon=favicon,
                    )
                    op["note_id"] = note.id
                    return f"Note saved with ID: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_update_note")
        async def bm_update_note(
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            url: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Update an existing note. Omitted fields are left unchanged.
            Args:
                note_id: ID of the note to update
                title: New title (optional)
                content: New content, replacing the old content (optional)
                url: New source URL (optional)
                tags: Comma-separated tags replacing the current ones (optional)
            """
            with timed_operation("bm_update_note", note_id=note_id):
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = await self.note_service.update_note(
                        note_id,
                        title=title,
                        content=content,
                        url=url,
                        tags=_split_tags(tags) if tags is not None else None,
                    )
                    return f"Note updated: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_delete_note")
        async def bm_delete_note(note_id: str) -> str:
            """Delete a note and its embedding.
            Args:
                note_id: ID of the note to delete
            """
            with timed_operation("bm_delete_note", note_id=note_id):
                try:
                    if await self.note_service.delete_note(note_id):
                        return f"Note deleted: {note_id}"
                    return f"Note not found: {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_get_note")
        async def bm_get_note(note_id: str) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: ID of the note
            """
            with timed_operation("bm_get_note", note_id=note_id) as op:
                try:
                    note = await self.note_service.get_note(note_id)
                    op["found"] = True
                    output = f"# {note.title}\n"
                    output += f"ID: {note.id}\n"
                    if note.url:
                        output += f"URL: {note.url}\n"
                    if note.tags:
                        output += f"Tags: {', '.join(note.tags)}\n"
                    output += f"Created: {note.created_at.isoformat()}\n"
                    output += f"Updated: {note.updated_at.isoformat()}\n"
                    output += f"Words: {note.metadata.word_count}\n"
                    output += f"\n{note.content}"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_list_tags")
        async def bm_list_tags(prefix: Optional[str] = None) -> str:
            """List tags by usage count.
            Args:
                prefix: Only list tags starting with this text (optional)
            """
            with timed_operation("bm_list_tags") as op:
                try:
                    tags = await self.note_service.list_tags(prefix)
                    op["result_count"] = len(tags)
                    if not tags:
                        return "No tags found."
                    output = f"## Tags ({len(tags)} total)\n"
                    output += "| Tag | Uses |\n"
                    output += "|-----|------|\n"
                    for tag in tags:
                        output += f"| {tag.display_name} | {tag.usage_count} |\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_reindex")
        async def bm_reindex(force: bool = False) -> str:
            """Generate missing or outdated embeddings.
            Args:
                force: Re-embed every note, not only missing or outdated ones
            """
            with timed_operation("bm_reindex", force=force):
                try:
                    counts = await self.note_service.reindex(force=force)
                    return (
                        f"Reindex complete: {counts['embedded']} embedded, "
                        f"{counts['skipped']} up to date, {counts['failed']} failed, "
                        f"{counts['removed']} removed (of {counts['total']} notes)"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="bm_status")
        async def bm_status() -> str:
            """Show note counts, embedding status, cache and server metrics."""
            with timed_operation("bm_status"):
                try:
                    total = await self.store.get_notes_count()
                    cache = self.search_service.get_cache_stats()
                    model = await self.embeddings.ping()
                    summary = metrics.get_summary()
                    last_reindex = await self.store.get_meta(LAST_REINDEX_META_KEY)

                    output = "# Super Bookmarks Status\n\n"
                    output += f"**Total Notes:** {total}\n\n"
                    output += "## Embeddings\n"
                    output += f"**Enabled:** {'Yes' if self.embeddings.enabled else 'No'}\n"
                    if self.embeddings.enabled:
                        output += f"**Model:** {config.embedding_model}\n"
                        output += f"**Loaded:** {'Yes' if model['loaded'] else 'No'}\n"
                    if last_reindex:
                        output += f"**Last Reindex:** {last_reindex.get('at', 'unknown')}\n"
                    output += "\n## Vector Cache\n"
                    output += f"**Valid:** {'Yes' if cache['is_valid'] else 'No'}\n"
                    output += f"**Entries:** {cache['size']}\n"
                    output += f"**Memory:** {cache['memory_estimate_bytes'] / 1024:.1f} KB\n\n"
                    output += "## Server Metrics\n"
                    output += f"**Uptime:** {summary['uptime_seconds']:.0f} seconds\n"
                    output += f"**Operations:** {summary['total_operations']}\n"
                    output += f"**Success Rate:** {summary['overall_success_rate']:.1%}\n"
                    output += f"**Errors:** {summary['total_errors']}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
