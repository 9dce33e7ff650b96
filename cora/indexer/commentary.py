"""Generated commentary for chunks, via Ollama's generate endpoint."""

import asyncio
import logging
from typing import List, Optional

import httpx

from .models import Chunk

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "Summarize in two or three sentences what the following {language} excerpt from "
    "{file_path} (lines {line_start}-{line_end}) does. Mention the names it declares.\n\n"
    "{content}"
)


class OllamaCommentary:
    """Writes a short natural-language description for each chunk."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.2",
        max_concurrent: int = 2,
        max_chars: int = 6000,
        timeout: float = 120.0,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.max_concurrent = max_concurrent
        self.max_chars = max_chars
        self.timeout = timeout

    async def describe(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore, chunk: Chunk) -> Optional[str]:
        prompt = PROMPT_TEMPLATE.format(
            language=chunk.language,
            file_path=chunk.file_path,
            line_start=chunk.line_start,
            line_end=chunk.line_end,
            content=chunk.content[: self.max_chars],
        )
        async with semaphore:
            try:
                response = await client.post(
                    f"{self.host}/api/generate",
                    json={"model": self.model, "prompt": prompt, "stream": False},
                )
                response.raise_for_status()
                return response.json().get("response", "").strip() or None
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Commentary failed for {chunk.file_path}:{chunk.line_start}: {e}")
                return None

    async def annotate(self, chunks: List[Chunk]) -> int:
        """Set `commentary` on chunks in place.

        Chunks whose commentary cannot be generated keep None; indexing
        continues without it.

        Returns:
            Number of chunks that received commentary
        """
        if not chunks:
            return 0

        semaphore = asyncio.Semaphore(self.max_concurrent)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            results = await asyncio.gather(*(self.describe(client, semaphore, chunk) for chunk in chunks))

        for chunk, commentary in zip(chunks, results):
            chunk.commentary = commentary

        annotated = sum(1 for c in results if c)
        logger.debug(f"Generated commentary for {annotated}/{len(chunks)} chunks")
        return annotated
