"""Embedding generation using Ollama for local LLM inference.

The same provider and model embed chunk text at index time and query text at
query time, so their vectors are comparable.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import blake3
import httpx

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns text into vectors. Failed texts yield None instead of raising."""

    @abstractmethod
    async def generate_embeddings(self, texts: List[str], use_cache: bool = True) -> List[Optional[List[float]]]:
        pass

    async def embed(self, text: str) -> Optional[List[float]]:
        """Embed a single text."""
        return (await self.generate_embeddings([text]))[0]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class OllamaEmbeddings(EmbeddingProvider):
    """Generate embeddings using Ollama's local embedding models."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        cache_dir: Optional[Path] = None,
        batch_size: int = 32,
        max_concurrent: int = 4,
        max_tokens: int = 2048,
        max_retries: int = 3,
    ):
        """Initialize Ollama embeddings client.

        Args:
            host: Ollama API host URL
            model: Name of the embedding model to use
            cache_dir: Directory for caching embeddings (None to disable)
            batch_size: Number of texts to process in parallel
            max_concurrent: Maximum concurrent requests to Ollama
            max_tokens: Maximum token length for model (default: 2048 for nomic-embed-text)
            max_retries: Attempts per text before giving up
        """
        self.host = host.rstrip("/")
        self.model = model
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.batch_size = batch_size
        self.max_concurrent = max_concurrent
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = None
        self._client_loop_id: Optional[int] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

        # Create cache directory if specified
        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Embedding cache enabled at: {self.cache_dir}")

        logger.info(f"Initialized Ollama embeddings with model: {model} (max_tokens: {max_tokens})")

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create an httpx client for the current event loop.

        Returns:
            httpx.AsyncClient instance for current event loop
        """
        loop_id = id(asyncio.get_running_loop())

        # Create new client if we don't have one or if we're in a different event loop
        if self._client is None or self._client_loop_id != loop_id:
            self._client = httpx.AsyncClient(timeout=60.0)
            self._client_loop_id = loop_id
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            logger.debug(f"Created new httpx client for event loop {loop_id}")

        return self._client

    def _get_cache_key(self, text: str) -> str:
        """Generate cache key for a text.

        Uses Blake3 hash of (model + text) for content-addressable storage.
        """
        # Include model name to invalidate cache if model changes
        cache_input = f"{self.model}:{text}"
        return blake3.blake3(cache_input.encode()).hexdigest()

    def _get_cached_embedding(self, cache_key: str) -> Optional[List[float]]:
        """Retrieve cached embedding if available."""
        if not self.cache_dir:
            return None

        cache_file = self.cache_dir / f"{cache_key}.json"
        if cache_file.exists():
            try:
                with open(cache_file, "r") as f:
                    data = json.load(f)
                logger.debug(f"Cache hit for key: {cache_key}")
                return data["embedding"]
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Error reading cache file {cache_file}: {e}")
                return None

        return None

    def _save_cached_embedding(self, cache_key: str, embedding: List[float]) -> None:
        """Save embedding to cache."""
        if not self.cache_dir:
            return

        cache_file = self.cache_dir / f"{cache_key}.json"
        try:
            with open(cache_file, "w") as f:
                json.dump({"embedding": embedding}, f)
            logger.debug(f"Cached embedding for key: {cache_key}")
        except OSError as e:
            logger.warning(f"Error writing cache file {cache_file}: {e}")

    def _truncate_text(self, text: str) -> str:
        """Truncate text to fit within model's token limit.

        Uses a conservative estimate of 3 characters per token with a 20% buffer.
        """
        max_chars = int(self.max_tokens * 3 * 0.8)

        if len(text) > max_chars:
            logger.warning(
                f"Truncated text from {len(text)} to {max_chars} chars to fit {self.max_tokens} token limit"
            )
            return text[:max_chars]

        return text

    async def _generate_embedding_single(self, text: str) -> List[float]:
        """Generate embedding for a single text using Ollama API.

        Server errors and transport errors are retried with exponential
        backoff; client errors are not. The concurrency slot is released
        while waiting to retry.

        Raises:
            httpx.HTTPError: If API request fails after all retries
        """
        text = self._truncate_text(text)
        client = self._get_client()

        for attempt in range(self.max_retries):
            try:
                async with self._semaphore:
                    response = await client.post(
                        f"{self.host}/api/embeddings",
                        json={"model": self.model, "prompt": text},
                    )
                    response.raise_for_status()
                    return response.json()["embedding"]
            except httpx.HTTPStatusError as e:
                # Don't retry on 4xx errors (client errors)
                if e.response.status_code < 500 or attempt == self.max_retries - 1:
                    logger.error(f"Ollama API error {e.response.status_code}: text_len={len(text)}")
                    raise
                wait_time = 2**attempt  # 1s, 2s, 4s
                logger.warning(
                    f"Ollama {e.response.status_code} error (attempt {attempt + 1}/{self.max_retries}), "
                    f"retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)
            except httpx.TransportError as e:
                if attempt == self.max_retries - 1:
                    logger.error(f"Ollama unreachable after {self.max_retries} attempts: {e}")
                    raise
                wait_time = 2**attempt
                logger.warning(f"Ollama transport error ({e}), retrying in {wait_time}s...")
                await asyncio.sleep(wait_time)
            except KeyError as e:
                logger.error(f"Unexpected API response format: {e}")
                raise

        raise RuntimeError("unreachable")

    async def generate_embeddings(self, texts: List[str], use_cache: bool = True) -> List[Optional[List[float]]]:
        """Generate embeddings for multiple texts with caching.

        Args:
            texts: List of texts to generate embeddings for
            use_cache: Whether to use cached embeddings

        Returns:
            Embedding vectors corresponding to input texts; None where
            generation failed after retries
        """
        embeddings: List[Optional[List[float]]] = []
        pending = []

        # Check cache first
        for i, text in enumerate(texts):
            cached = self._get_cached_embedding(self._get_cache_key(text)) if use_cache else None
            embeddings.append(cached)
            if cached is None:
                pending.append(i)

        if not pending:
            return embeddings

        logger.info(f"Generating {len(pending)} embeddings ({len(texts) - len(pending)} cached)")

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            # Use return_exceptions=True to allow partial success
            generated = await asyncio.gather(
                *(self._generate_embedding_single(texts[i]) for i in batch), return_exceptions=True
            )
            for i, result in zip(batch, generated):
                if isinstance(result, Exception):
                    logger.warning(f"Failed to generate embedding for text {i}: {result}")
                    continue
                embeddings[i] = result
                if use_cache:
                    self._save_cached_embedding(self._get_cache_key(texts[i]), result)

        failed_count = sum(1 for i in pending if embeddings[i] is None)
        if failed_count > 0:
            logger.warning(f"{failed_count}/{len(pending)} embeddings failed, continuing with successful ones")

        return embeddings

    async def health_check(self) -> bool:
        """Check if Ollama is healthy and the model is available."""
        try:
            client = self._get_client()
            response = await client.get(f"{self.host}/api/tags")
            response.raise_for_status()

            model_names = [m["name"] for m in response.json().get("models", [])]

            # Check for exact match or match with :latest suffix
            if self.model not in model_names and f"{self.model}:latest" not in model_names:
                logger.warning(f"Model '{self.model}' not found in Ollama. Available models: {model_names}")
                logger.info(f"Run: ollama pull {self.model}")
                return False

            return True

        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Ollama health check failed: {e}")
            return False

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get statistics about the embedding cache."""
        if not self.cache_dir:
            return {"enabled": False}

        cache_files = list(self.cache_dir.glob("*.json"))
        total_size = sum(f.stat().st_size for f in cache_files)

        return {
            "enabled": True,
            "cache_dir": str(self.cache_dir),
            "cached_embeddings": len(cache_files),
            "total_size_mb": round(total_size / (1024 * 1024), 2),
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
