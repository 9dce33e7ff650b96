#!/usr/bin/env python3
"""Standalone indexer script - indexes a repository checkout and exits."""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Main indexer function."""
    # Import here to avoid issues if running from different context
    from cora.components import build_components
    from cora.config import get_env_config
    from cora.store.base import StoreUnavailableError

    config = get_env_config()

    # Get repository settings from environment
    workspace_path = os.getenv("WORKSPACE_PATH", "/workspace")
    origin_uri = os.getenv("REPO_ORIGIN") or os.getenv("REPO_NAME")
    commit_hash = os.getenv("COMMIT_HASH")
    force = os.getenv("FORCE", "false").lower() == "true"

    repo_path_obj = Path(workspace_path)
    if not repo_path_obj.exists():
        logger.error(f"Repository path does not exist: {workspace_path}")
        sys.exit(1)

    # Auto-generate origin if not provided
    if not origin_uri:
        origin_uri = f"file://{repo_path_obj.resolve()}"
        logger.info(f"Auto-generated origin: {origin_uri}")

    logger.info(f"Starting indexer for repository: {origin_uri}")
    logger.info(f"Workspace path: {workspace_path}")
    logger.info(f"Qdrant: {config['qdrant_host']}:{config['qdrant_port']}")
    logger.info(f"Ollama: {config['ollama_host']}")
    logger.info(f"Force: {force}")

    # Initialize components
    logger.info("Initializing components...")
    components = build_components(config)

    try:
        await components.store.initialize()

        # Health check Ollama
        if not await components.embeddings.health_check():
            logger.error("Ollama health check failed!")
            sys.exit(1)

        logger.info("Components initialized successfully")

        repository = await components.reindexer.register_repository(
            origin_uri, checkout_path=str(repo_path_obj.resolve())
        )
        if force:
            results = await components.reindexer.rescan(repository.repo_id)
        else:
            results = await components.reindexer.full_scan(repository.repo_id)

        if commit_hash:
            recorded = await components.reindexer.record_commit(repository.repo_id, commit_hash)
            logger.info(f"Recorded {recorded} file versions for commit {commit_hash}")

    except StoreUnavailableError as e:
        logger.error(f"Fatal error during indexing: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await components.close()

    failed = [r for r in results if r.status == "failed"]
    counts = {}
    for result in results:
        counts[result.status] = counts.get(result.status, 0) + 1

    logger.info("=" * 80)
    logger.info("Indexing Complete!")
    logger.info(f"Repository: {origin_uri} ({repository.repo_id})")
    logger.info(f"Total files: {len(results)}")
    for status, count in sorted(counts.items()):
        logger.info(f"{status.capitalize()}: {count}")
    logger.info(f"Total chunks: {sum(r.chunks for r in results)}")
    logger.info("=" * 80)

    if failed:
        logger.warning(f"Failed to index {len(failed)} files:")
        for result in failed:
            logger.warning(f"  - {result.file_path}: {result.error}")
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    asyncio.run(main())
