import time

from conftest import make_chunk, make_version

from cora.retrieval.boost import BoostedUnit
from cora.retrieval.budget import ELIDED, FULL, SIGNATURE, BudgetAssembler, elided_marker
from cora.retrieval.link_rank import RankedChunk


def _chunk(fv, line_start, line_end, size):
    return make_chunk(fv, line_start, line_end, content="x" * (size - 1) + "\n")


def _ranked(*chunks):
    return [RankedChunk(chunk=c, score=1.0 - i * 0.1) for i, c in enumerate(chunks)]


def _sections(response):
    return [s for repo in response.repositories for f in repo.files for s in f.sections]


def test_everything_fits_and_adjacent_chunks_merge():
    fv = make_version("app/a.py")
    c1, c2, c3 = _chunk(fv, 1, 10, 50), _chunk(fv, 11, 20, 50), _chunk(fv, 40, 50, 50)
    c2.commentary = "Second half of the parser."

    response = BudgetAssembler().assemble([], _ranked(c3, c1, c2), approx_length=10_000)

    assert response.chunks_used == [c3.id, c1.id, c2.id]
    assert response.total_chars == 150 + len(c2.commentary)
    assert not response.partial
    merged, last = _sections(response)
    assert (merged.line_start, merged.line_end, merged.mode) == (1, 20, FULL)
    assert merged.chunk_ids == [c1.id, c2.id]
    assert merged.content == c1.content + c2.content
    assert merged.commentary == c2.commentary
    assert (last.line_start, last.line_end) == (40, 50)
    assert response.files_used == [{"repo_id": "repo", "file_path": "app/a.py", "file_version_id": fv.id}]


def test_once_a_chunk_does_not_fit_the_rest_is_elided():
    fv = make_version("app/a.py")
    c1, c2, c3 = _chunk(fv, 1, 10, 100), _chunk(fv, 11, 20, 150), _chunk(fv, 40, 50, 10)

    response = BudgetAssembler().assemble([], _ranked(c1, c2, c3), approx_length=200)

    sections = _sections(response)
    assert [s.mode for s in sections] == [FULL, ELIDED, ELIDED]
    assert sections[1].content == elided_marker(11, 20)
    # Small enough to fit, but eliding has started
    assert sections[2].content == elided_marker(40, 50)
    assert response.total_chars == 100 + 2 * len(elided_marker(11, 20))
    assert response.total_chars <= 200


def test_adjacent_elided_chunks_merge():
    fv = make_version("app/a.py")
    c1, c2, c3 = _chunk(fv, 1, 10, 100), _chunk(fv, 11, 20, 150), _chunk(fv, 21, 30, 150)

    response = BudgetAssembler().assemble([], _ranked(c1, c2, c3), approx_length=200)

    full, elided = _sections(response)
    assert full.mode == FULL
    assert (elided.line_start, elided.line_end, elided.mode) == (11, 30, ELIDED)
    assert elided.content == elided_marker(11, 30)
    assert elided.chunk_ids == [c2.id, c3.id]


def test_tail_cut_after_max_elided_chunks():
    fv = make_version("app/a.py")
    c1, c2, c3 = _chunk(fv, 1, 10, 100), _chunk(fv, 11, 20, 150), _chunk(fv, 40, 50, 150)

    response = BudgetAssembler(max_elided_chunks=1).assemble([], _ranked(c1, c2, c3), approx_length=200)

    assert response.chunks_used == [c1.id, c2.id]


def test_tail_cut_when_marker_does_not_fit():
    fv = make_version("app/a.py")
    c1, c2 = _chunk(fv, 1, 10, 95), _chunk(fv, 11, 20, 150)

    response = BudgetAssembler().assemble([], _ranked(c1, c2), approx_length=100)

    assert response.chunks_used == [c1.id]


def test_must_render_chunk_overflows_once():
    fv = make_version("app/a.py")
    small, large, ranked = _chunk(fv, 1, 10, 60), _chunk(fv, 20, 30, 80), _chunk(fv, 40, 50, 10)
    boosts = [
        BoostedUnit(chunks=[small], directive="a", must_render_fully=True),
        BoostedUnit(chunks=[large], directive="b", must_render_fully=True),
    ]

    response = BudgetAssembler().assemble(boosts, _ranked(ranked), approx_length=100)

    assert [s.mode for s in _sections(response)] == [FULL, FULL]
    assert response.chunks_used == [small.id, large.id]
    assert response.total_chars == 140


def test_must_render_chunk_larger_than_budget():
    fv = make_version("app/a.py")
    big, other = _chunk(fv, 1, 100, 300), _chunk(fv, 101, 120, 300)
    boosts = [
        BoostedUnit(chunks=[big], directive="a", must_render_fully=True),
        BoostedUnit(chunks=[other], directive="b", must_render_fully=True),
    ]

    response = BudgetAssembler().assemble(boosts, [], approx_length=100)

    assert response.chunks_used == [big.id]
    assert _sections(response)[0].content == big.content


def test_signature_rendering():
    fv = make_version("app/handlers.py")
    content = "def handler(request):\n    a = 1\n    b = 2\n    return a + b\n"
    chunk = make_chunk(fv, 10, 13, content=content)
    neighbor = make_chunk(fv, 14, 20)
    boosts = [BoostedUnit(chunks=[chunk], directive="handler", signature_line=10)]

    response = BudgetAssembler().assemble(boosts, _ranked(neighbor), approx_length=10_000)

    signature, full = _sections(response)
    assert signature.mode == SIGNATURE
    assert signature.content == "def handler(request):\n" + elided_marker(11, 13)
    # Signature sections are never merged with neighbors
    assert (full.line_start, full.mode) == (14, FULL)


def test_boosted_chunks_come_first_and_are_not_duplicated():
    fv = make_version("app/a.py")
    c1, c2 = _chunk(fv, 1, 10, 50), _chunk(fv, 30, 40, 50)
    boosts = [BoostedUnit(chunks=[c2], directive="app/a.py")]

    response = BudgetAssembler().assemble(boosts, _ranked(c1, c2), approx_length=10_000)

    assert response.chunks_used == [c2.id, c1.id]
    assert response.total_chars == 100


def test_grouped_by_repository_then_file():
    first = make_version("lib/x.py", repo_id="other")
    second = make_version("app/a.py")
    third = make_version("app/b.py")
    c1, c2, c3 = _chunk(first, 1, 5, 20), _chunk(second, 1, 5, 20), _chunk(third, 1, 5, 20)

    response = BudgetAssembler().assemble([], _ranked(c1, c2, c3), approx_length=10_000)

    assert [r.repo_id for r in response.repositories] == ["other", "repo"]
    assert [f.file_path for f in response.repositories[1].files] == ["app/a.py", "app/b.py"]
    assert [f["file_path"] for f in response.files_used] == ["lib/x.py", "app/a.py", "app/b.py"]
    assert response.to_dict()["repositories"][0]["files"][0]["sections"][0]["mode"] == FULL


def test_deadline_returns_partial_result():
    fv = make_version("app/a.py")
    response = BudgetAssembler().assemble(
        [], _ranked(_chunk(fv, 1, 10, 50)), approx_length=10_000, deadline=time.monotonic() - 1
    )
    assert response.partial
    assert response.chunks_used == []
