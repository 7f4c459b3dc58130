"""Token-set similarity used by the verifier, the resolver and duplicate checks."""

from __future__ import annotations

import re

_TOKEN_RE = re.compile(r"\w+")


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip().lower()


def token_set(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(normalize_text(text)))


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over lower-cased word tokens; 0.0 if either is empty."""
    ta, tb = token_set(a), token_set(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)
