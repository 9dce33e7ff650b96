from cora.store.lexical import sparse_vector, token_index, tokenize


def test_identifiers_are_split_into_parts():
    assert tokenize("parseHTTPResponse") == ["parsehttpresponse", "parse", "http", "response"]
    assert tokenize("snake_case_name") == ["snake_case_name", "snake", "case", "name"]


def test_short_tokens_are_dropped():
    assert tokenize("x = a_b + 7") == ["a_b"]


def test_sparse_vector_counts_terms():
    indices, values = sparse_vector("login login logout")

    assert indices == sorted(indices)
    weights = dict(zip(indices, values))
    assert weights[token_index("login")] == 2.0
    assert weights[token_index("logout")] == 1.0


def test_token_index_is_stable():
    assert token_index("login") == token_index("login")
    assert 0 <= token_index("login") < 2**32
    assert sparse_vector("") == ([], [])
