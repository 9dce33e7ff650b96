"""Identifier-aware tokenization and hashed sparse vectors for lexical search."""

import re
from collections import Counter
from typing import Dict, List, Tuple

import blake3

WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
CAMEL_BOUNDARY = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

MIN_TOKEN_LENGTH = 2


def tokenize(text: str) -> List[str]:
    """Lower-cased tokens of a text, with identifiers also split into their parts.

    `parseHTTPResponse` yields `parsehttpresponse`, `parse`, `http` and
    `response`; `snake_case_name` yields the whole name plus each part.
    """
    tokens = []
    for word in WORD.findall(text):
        lowered = word.lower()
        if len(lowered) >= MIN_TOKEN_LENGTH:
            tokens.append(lowered)

        parts = [p for piece in word.split("_") for p in CAMEL_BOUNDARY.findall(piece)]
        if len(parts) > 1:
            tokens.extend(p.lower() for p in parts if len(p) >= MIN_TOKEN_LENGTH)
    return tokens


def token_index(token: str) -> int:
    """Stable 32-bit index of a token in the sparse vector space."""
    return int(blake3.blake3(token.encode()).hexdigest()[:8], 16)


def sparse_vector(text: str) -> Tuple[List[int], List[float]]:
    """Term-frequency sparse vector as parallel (indices, values) lists.

    Document frequency weighting is left to the store (IDF modifier).
    """
    counts: Dict[int, float] = {}
    for token, count in Counter(tokenize(text)).items():
        index = token_index(token)
        counts[index] = counts.get(index, 0.0) + float(count)

    indices = sorted(counts)
    return indices, [counts[i] for i in indices]
