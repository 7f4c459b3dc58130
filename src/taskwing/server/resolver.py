"""Reference resolver: free-form string -> entity id.

Resolution order:

1. exact id (case-insensitive),
2. unique id prefix of at least 8 characters,
3. fuzzy token-set match against title and description; confident only
   at a score of 0.7 or more with no tie at the top.

Anything less returns the ranked candidates so the caller can ask the
user which one was meant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from ..core.similarity import jaccard_similarity, normalize_text
from ..errors import AmbiguousReferenceError, TaskNotFoundError

MIN_PREFIX = 8
CONFIDENT_SCORE = 0.7
DEFAULT_LIMIT = 5


class Referable(Protocol):
    id: str
    title: str
    description: str


@dataclass
class ResolveResult:
    resolved: bool
    id: str = ""
    matches: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"resolved": self.resolved, "id": self.id, "matches": self.matches, "message": self.message}


def _match(entity: Referable, score: float) -> dict[str, Any]:
    return {"id": entity.id, "title": entity.title, "score": round(score, 4)}


def score_entity(reference: str, entity: Referable) -> float:
    return max(
        jaccard_similarity(reference, entity.title),
        jaccard_similarity(reference, entity.description or ""),
    )


def resolve_reference(
    reference: str,
    entities: Iterable[Referable],
    limit: int = DEFAULT_LIMIT,
) -> ResolveResult:
    """Resolve *reference* against *entities*.

    Parameters
    ----------
    reference : str
        Id, id prefix or a few words from the title or description.
    entities : iterable
        Objects with ``id``, ``title`` and ``description``.
    limit : int
        Maximum number of candidates returned when unresolved.
    """
    ref = normalize_text(reference)
    pool = list(entities)
    if not ref:
        return ResolveResult(resolved=False, message="empty reference")

    lowered = ref.lower()
    for e in pool:
        if e.id.lower() == lowered:
            return ResolveResult(resolved=True, id=e.id, matches=[_match(e, 1.0)], message=f"exact id match: {e.title}")

    if len(lowered) >= MIN_PREFIX:
        prefixed = [e for e in pool if e.id.lower().startswith(lowered)]
        if len(prefixed) == 1:
            e = prefixed[0]
            return ResolveResult(resolved=True, id=e.id, matches=[_match(e, 1.0)], message=f"id prefix match: {e.title}")

    # Stable order: score desc, then title, then id.
    scored = sorted(
        ((score_entity(ref, e), e) for e in pool),
        key=lambda pair: (-pair[0], pair[1].title.lower(), pair[1].id),
    )
    scored = [(s, e) for s, e in scored if s > 0]
    if not scored:
        return ResolveResult(resolved=False, message=f"no task matches '{reference}'")

    top_score, top = scored[0]
    runner_up = scored[1][0] if len(scored) > 1 else 0.0
    matches = [_match(e, s) for s, e in scored[: max(1, limit)]]
    if top_score >= CONFIDENT_SCORE and top_score > runner_up:
        return ResolveResult(resolved=True, id=top.id, matches=matches, message=f"matched '{top.title}'")
    return ResolveResult(
        resolved=False,
        matches=matches,
        message=f"'{reference}' is ambiguous; best candidate is '{top.title}' ({top_score:.0%})",
    )


def resolve_task_id(reference: str, entities: Iterable[Referable]) -> str:
    """Like ``resolve_reference`` but raises instead of returning candidates."""
    result = resolve_reference(reference, entities)
    if result.resolved:
        return result.id
    if result.matches:
        raise AmbiguousReferenceError(
            result.message,
            details={"reference": reference, "matches": result.matches},
        )
    raise TaskNotFoundError(result.message, details={"reference": reference})
