"""Query pipeline: version view -> retrieval -> link-rank -> boosts -> budget."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..graph.versions import build_version_view
from ..indexer.models import repository_id
from ..store.base import IndexStore, StoreUnavailableError
from .boost import BoostDirectives, BoostedUnit, BoostResolver
from .budget import BudgetAssembler, QueryResponse
from .hybrid_retriever import HybridRetriever, latest_user_turn
from .link_rank import LinkRankExpander, RankedChunk, rank_without_graph

logger = logging.getLogger(__name__)


class QueryFailedError(Exception):
    """Raised when a query cannot produce any result."""


@dataclass
class RepoSpec:
    """A repository in a query's scope, optionally pinned to a commit."""

    origin_uri: str
    checkout_path: Optional[str] = None
    version_specifier: Optional[str] = None
    repo_id: Optional[str] = None

    def __post_init__(self):
        if self.repo_id is None:
            self.repo_id = repository_id(self.origin_uri)


@dataclass
class QueryRequest:
    messages: List[Dict[str, Any]]
    repos: List[RepoSpec]
    approx_length: int = 8000
    boost_directives: BoostDirectives = field(default_factory=BoostDirectives)
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryRequest":
        return cls(
            messages=list(data.get("messages") or []),
            repos=[RepoSpec(**repo) for repo in data.get("repos") or []],
            approx_length=int(data.get("approx_length", 8000)),
            boost_directives=BoostDirectives.from_dict(data.get("boost_directives")),
            timeout=data.get("timeout"),
        )


class QueryEngine:
    """Runs one query end to end against the store."""

    def __init__(
        self,
        store: IndexStore,
        retriever: HybridRetriever,
        expander: LinkRankExpander,
        boost_resolver: BoostResolver,
        assembler: BudgetAssembler,
        timeout: float = 30.0,
    ):
        self.store = store
        self.retriever = retriever
        self.expander = expander
        self.boost_resolver = boost_resolver
        self.assembler = assembler
        self.timeout = timeout

    async def query(self, request: QueryRequest) -> QueryResponse:
        """Answer a query with a budgeted, grouped chunk set.

        Retrieval failures are fatal. Failures or timeouts after candidates
        were fetched degrade the result instead: expansion falls back to
        retrieval order, unresolved boosts are dropped.

        Args:
            request: Query request

        Returns:
            Query response

        Raises:
            QueryFailedError: Nothing could be retrieved
        """
        if not request.repos:
            raise QueryFailedError("Query names no repositories")
        try:
            query_text = latest_user_turn(request.messages)
        except ValueError as e:
            raise QueryFailedError(str(e)) from e

        deadline = time.monotonic() + (request.timeout or self.timeout)

        def remaining() -> float:
            return max(deadline - time.monotonic(), 0.0)

        try:
            view = await asyncio.wait_for(
                build_version_view(self.store, [(r.repo_id, r.version_specifier) for r in request.repos]),
                remaining(),
            )
            candidates = await asyncio.wait_for(self.retriever.search(query_text, view), remaining())
        except StoreUnavailableError as e:
            logger.error(f"Store unavailable during retrieval: {e}")
            raise QueryFailedError(f"Store unavailable: {e}") from e
        except asyncio.TimeoutError as e:
            raise QueryFailedError("Query timed out before any candidates were retrieved") from e

        degraded = False
        partial = False

        ranked: List[RankedChunk]
        try:
            ranked = await asyncio.wait_for(self.expander.expand(candidates, view), remaining())
        except StoreUnavailableError as e:
            logger.warning(f"Reference expansion failed, using retrieval order: {e}")
            ranked = rank_without_graph(candidates)
            degraded = True
        except asyncio.TimeoutError:
            logger.warning("Reference expansion timed out, using retrieval order")
            ranked = rank_without_graph(candidates)
            partial = True

        boosts: List[BoostedUnit] = []
        if request.boost_directives:
            try:
                boosts = await asyncio.wait_for(
                    self.boost_resolver.resolve(request.boost_directives, view), remaining()
                )
            except StoreUnavailableError as e:
                logger.warning(f"Boost resolution failed: {e}")
                degraded = True
            except asyncio.TimeoutError:
                logger.warning("Boost resolution timed out")
                partial = True

        # Past the deadline, what was ranked so far is still assembled in full
        response = self.assembler.assemble(
            boosts, ranked, request.approx_length, deadline=deadline if remaining() > 0 else None
        )
        response.partial = response.partial or partial
        response.degraded = degraded
        return response
