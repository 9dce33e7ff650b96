"""FastMCP server exposing context queries and re-indexing to chat assistants."""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import AsyncIterator, List, Optional

from mcp.server.fastmcp import Context, FastMCP

from .components import Components, build_components
from .config import get_env_config
from .indexer.models import repository_id
from .retrieval.query_engine import QueryFailedError, QueryRequest
from .store.base import StoreUnavailableError
from .store.qdrant_store import QdrantIndexStore

config = get_env_config()

# Create formatters and handlers
formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Console handler (for Docker logs)
console_handler = logging.StreamHandler()
console_handler.setLevel(config["log_level"])
console_handler.setFormatter(formatter)

# File handler (for detailed logs)
file_handler = logging.FileHandler(config["log_file"])
file_handler.setLevel(config["log_level"])
file_handler.setFormatter(formatter)

# Configure root logger
root_logger = logging.getLogger()
root_logger.setLevel(config["log_level"])
root_logger.addHandler(console_handler)
root_logger.addHandler(file_handler)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[Components]:
    """Build components on startup and release them on shutdown."""
    logger.info("Initializing components...")
    components = build_components(config)

    if isinstance(components.store, QdrantIndexStore):
        await components.store.initialize()

    if not await components.embeddings.health_check():
        logger.warning("Embedding provider is not healthy; chunks will be indexed without vectors")

    logger.info("Components initialized successfully")
    try:
        yield components
    finally:
        await components.close()


mcp = FastMCP("cora", lifespan=lifespan)


def _components(ctx: Context) -> Components:
    return ctx.request_context.lifespan_context


@mcp.tool()
async def query_context(
    messages: List[dict],
    repos: List[dict],
    ctx: Context,
    approx_length: int = 8000,
    boost_directives: Optional[dict] = None,
) -> dict:
    """Return a size-budgeted, reference-expanded set of code excerpts for a conversation.

    Args:
        messages: Conversation messages ({"role", "content"}); the latest user turn is the query
        repos: Repositories in scope: {"origin_uri", "checkout_path"?, "version_specifier"?}
        approx_length: Approximate character budget of the result
        boost_directives: {"files": [...], "declarations": [{"repo_id", "path", "include_implementation"}]}

    Returns:
        Dictionary with grouped repositories/files/sections plus files_used and chunks_used
    """
    try:
        request = QueryRequest.from_dict(
            {
                "messages": messages,
                "repos": repos,
                "approx_length": approx_length,
                "boost_directives": boost_directives,
            }
        )
        response = await _components(ctx).query_engine.query(request)
        return {"success": True, **response.to_dict()}
    except (QueryFailedError, KeyError, TypeError) as e:
        logger.error(f"Query failed: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def register_repository(origin_uri: str, ctx: Context, checkout_path: Optional[str] = None) -> dict:
    """Register a repository so it can be indexed and queried.

    Args:
        origin_uri: Origin location (clone URL); determines the repository id
        checkout_path: Local checkout to index from

    Returns:
        Dictionary with the repository record
    """
    try:
        repository = await _components(ctx).reindexer.register_repository(origin_uri, checkout_path)
        return {"success": True, "repository": asdict(repository)}
    except StoreUnavailableError as e:
        return {"success": False, "error": str(e)}


@mcp.tool()
async def notify_changed(repo_id: str, ctx: Context, file_paths: Optional[List[str]] = None) -> dict:
    """Re-index changed files of a repository. No paths triggers a full rescan.

    Args:
        repo_id: Repository id (see register_repository)
        file_paths: Changed paths, absolute or relative to the checkout

    Returns:
        Dictionary with per-file results
    """
    try:
        results = await _components(ctx).reindexer.notify_changed(repo_id, file_paths or [])
        return {"success": True, "results": [asdict(r) for r in results]}
    except (ValueError, StoreUnavailableError) as e:
        logger.error(f"Change notification failed for {repo_id}: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def refresh_repository(repo_id: str, ctx: Context, file_paths: Optional[List[str]] = None) -> dict:
    """Force a re-index pass that ignores change detection.

    Args:
        repo_id: Repository id
        file_paths: Paths to refresh (whole repository if omitted)

    Returns:
        Dictionary with per-file results
    """
    try:
        results = await _components(ctx).reindexer.rescan(repo_id, file_paths)
        return {"success": True, "results": [asdict(r) for r in results]}
    except (ValueError, StoreUnavailableError) as e:
        logger.error(f"Refresh failed for {repo_id}: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def record_commit(repo_id: str, commit_hash: str, ctx: Context, timestamp: Optional[float] = None) -> dict:
    """Associate the current file versions with a commit for version-pinned queries.

    Args:
        repo_id: Repository id
        commit_hash: Commit the checkout is at
        timestamp: Commit time (seconds since epoch), defaults to now

    Returns:
        Dictionary with the number of file versions recorded
    """
    try:
        count = await _components(ctx).reindexer.record_commit(repo_id, commit_hash, timestamp)
        return {"success": True, "file_versions": count}
    except (ValueError, StoreUnavailableError) as e:
        return {"success": False, "error": str(e)}


@mcp.tool()
def get_repository_id(origin_uri: str) -> dict:
    """Compute the repository id for an origin URI."""
    return {"success": True, "repo_id": repository_id(origin_uri)}


@mcp.tool()
async def health_check(ctx: Context) -> dict:
    """Check health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    components = _components(ctx)
    return {
        "success": True,
        "components": {
            "server": True,
            "store": await components.store.health_check(),
            "embeddings": await components.embeddings.health_check(),
        },
    }


@mcp.tool()
async def get_index_stats(ctx: Context) -> dict:
    """Get record counts of the index.

    Returns:
        Dictionary with counts per record kind
    """
    try:
        return {"success": True, "stats": await _components(ctx).store.get_stats()}
    except StoreUnavailableError as e:
        return {"success": False, "error": str(e)}


if __name__ == "__main__":
    logger.info("Starting Cora MCP Server...")
    mcp.run()
