import networkx as nx
import pytest
from conftest import make_chunk, make_definition, make_reference, make_version

from cora.graph.reference_graph import ReferenceGraph, edge_list
from cora.graph.resolver import ReferenceResolver
from cora.graph.versions import build_version_view
from cora.indexer.models import ReferenceType
from cora.retrieval.hybrid_retriever import RetrievalCandidate
from cora.retrieval.link_rank import (
    LinkRankExpander,
    RankedChunk,
    combine_scores,
    personalized_pagerank,
    rank_without_graph,
    sort_ranked,
)


def _candidate(chunk, relevance):
    return RetrievalCandidate(chunk=chunk, score=relevance, relevance=relevance)


@pytest.fixture
def chunks():
    auth = make_version("app/auth.py")
    token = make_version("app/token.py")
    views = make_version("web/views.py")
    return {
        "login": make_chunk(auth, 1, 10),
        "parse": make_chunk(token, 1, 8),
        "view": make_chunk(views, 1, 12),
    }


async def _store_call_graph(store, chunks):
    """login calls parse_token (defined in parse); view calls login."""
    for chunk in chunks.values():
        await store.upsert_file_version(make_version(chunk.file_path))
    await store.upsert_chunks(list(chunks.values()))
    await store.upsert_definitions(
        [make_definition("login", chunks["login"]), make_definition("parse_token", chunks["parse"])]
    )
    await store.upsert_references(
        [
            make_reference("parse_token", chunks["login"], ReferenceType.CALL, line=4),
            make_reference("parse_token", chunks["login"], ReferenceType.MENTION, line=2),
            make_reference("login", chunks["view"], ReferenceType.CALL, line=6),
        ]
    )


def test_adding_an_inbound_edge_raises_rank():
    graph = nx.DiGraph()
    graph.add_nodes_from(["A", "B", "N"])
    graph.add_edge("A", "B", weight=1.0)
    seeds = {"A": 1.0, "B": 0.5}

    before = personalized_pagerank(graph, seeds)
    graph.add_edge("N", "A", weight=1.0)
    after = personalized_pagerank(graph, seeds)

    assert after["A"] > before["A"]
    assert sum(after.values()) == pytest.approx(1.0)


def test_every_node_keeps_restart_mass():
    graph = nx.DiGraph()
    graph.add_edge("A", "B", weight=1.0)
    graph.add_node("C")

    rank = personalized_pagerank(graph, {"A": 1.0}, restart_floor=0.05)
    assert rank["C"] > 0


def test_seeds_without_signal_restart_uniformly():
    graph = nx.DiGraph()
    graph.add_nodes_from(["A", "B"])
    rank = personalized_pagerank(graph, {"A": 0.0, "B": 0.0})
    assert rank["A"] == pytest.approx(rank["B"])


def test_non_convergence_falls_back_to_restart_distribution():
    graph = nx.DiGraph()
    graph.add_edge("A", "B", weight=1.0)
    graph.add_edge("B", "A", weight=1.0)

    rank = personalized_pagerank(graph, {"A": 1.0}, restart_floor=0.0, max_iter=1, tol=1e-12)
    assert rank == {"A": 1.0, "B": 0.0}


def test_expansion_only_chunks_need_the_inclusion_threshold(chunks):
    graph = nx.DiGraph()
    graph.add_edge(chunks["login"].id, chunks["parse"].id, weight=1.0)
    graph.add_edge(chunks["view"].id, chunks["login"].id, weight=1.0)
    candidates = [_candidate(chunks["login"], 0.8)]
    neighbors = {chunks["parse"].id: chunks["parse"], chunks["view"].id: chunks["view"]}
    pagerank = {chunks["login"].id: 0.6, chunks["parse"].id: 0.35, chunks["view"].id: 0.05}

    ranked = combine_scores(graph, candidates, neighbors, pagerank, retrieval_weight=0.7, inclusion_threshold=0.1)

    assert [r.chunk.id for r in ranked] == [chunks["login"].id, chunks["parse"].id]
    login, parse = ranked
    assert login.score == pytest.approx(1.0)
    assert login.is_candidate
    assert parse.score == pytest.approx(0.3 * 0.35 / 0.6)
    assert not parse.is_candidate


def test_rank_without_graph_uses_relevance(chunks):
    ranked = rank_without_graph([_candidate(chunks["view"], 0.2), _candidate(chunks["login"], 0.4)])
    assert [r.chunk.id for r in ranked] == [chunks["login"].id, chunks["view"].id]
    assert [r.score for r in ranked] == [pytest.approx(1.0), pytest.approx(0.5)]


def test_sort_ranked_breaks_ties_by_location(chunks):
    ranked = sort_ranked([RankedChunk(chunk=c, score=0.5) for c in (chunks["view"], chunks["parse"], chunks["login"])])
    assert [r.chunk.file_path for r in ranked] == ["app/auth.py", "app/token.py", "web/views.py"]


async def test_reference_graph_edges(store, chunks):
    await _store_call_graph(store, chunks)
    view = await build_version_view(store, [("repo", None)])
    builder = ReferenceGraph(store, ReferenceResolver(store))

    graph = await builder.build([chunks["login"].id], view)

    assert edge_list(graph) == sorted(
        [
            # call + mention add up
            (chunks["login"].id, chunks["parse"].id, 1.5),
            (chunks["view"].id, chunks["login"].id, 1.0),
        ]
    )


async def test_inbound_neighbors_are_capped(store, chunks):
    await _store_call_graph(store, chunks)
    extra = make_chunk(make_version("web/admin.py"), 1, 5)
    await store.upsert_file_version(make_version("web/admin.py"))
    await store.upsert_chunks([extra])
    await store.upsert_references([make_reference("login", extra, ReferenceType.CALL)])

    view = await build_version_view(store, [("repo", None)])
    graph = await ReferenceGraph(store, ReferenceResolver(store), max_neighbors=1).build([chunks["login"].id], view)

    inbound = [u for u, _ in graph.in_edges(chunks["login"].id)]
    assert len(inbound) == 1


async def test_expander_pulls_in_called_definition(store, chunks):
    await _store_call_graph(store, chunks)
    view = await build_version_view(store, [("repo", None)])
    expander = LinkRankExpander(store, ReferenceGraph(store, ReferenceResolver(store)))

    ranked = await expander.expand([_candidate(chunks["login"], 1.0)], view)

    by_id = {r.chunk.id: r for r in ranked}
    assert ranked[0].chunk.id == chunks["login"].id
    assert chunks["parse"].id in by_id
    assert not by_id[chunks["parse"].id].is_candidate
    assert by_id[chunks["parse"].id].score >= 0.1


async def test_expander_skips_superseded_versions(store, chunks):
    await _store_call_graph(store, chunks)
    # token.py moved on to a version without parse_token
    await store.upsert_file_version(make_version("app/token.py", generation=2))

    view = await build_version_view(store, [("repo", None)])
    expander = LinkRankExpander(store, ReferenceGraph(store, ReferenceResolver(store)))
    ranked = await expander.expand([_candidate(chunks["login"], 1.0)], view)

    assert chunks["parse"].id not in {r.chunk.id for r in ranked}


async def test_expander_with_no_candidates(store):
    view = await build_version_view(store, [("repo", None)])
    expander = LinkRankExpander(store, ReferenceGraph(store, ReferenceResolver(store)))
    assert await expander.expand([], view) == []
