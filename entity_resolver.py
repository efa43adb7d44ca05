# entity_resolver.py

from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple, Union
import logging

from name_matching import (
    contains_either_way,
    is_near_duplicate,
    normalize_name,
    score_candidate,
    strip_board_prefix,
)

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 5
DEFAULT_MAX_DISTANCE = 5
# Candidates scoring above this survive fuzzy filtering regardless of distance
MIN_KEEP_SCORE = 8


class EntityKind(Enum):
    BOARD = "board"
    LIST = "list"
    MEMBER = "member"


class MatchMode(Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class NamedEntity:
    """A board, list or member of the task board, as supplied by the directory provider."""
    id: str
    raw_name: str
    kind: EntityKind

    @property
    def match_name(self) -> str:
        """The text used for matching; boards drop their "[TAG] 1 - " prefix."""
        if self.kind is EntityKind.BOARD:
            return strip_board_prefix(self.raw_name)
        return self.raw_name


@dataclass(frozen=True)
class ScoredCandidate:
    entity: NamedEntity
    distance: int
    score: float


@dataclass(frozen=True)
class Unique:
    entity: NamedEntity


@dataclass(frozen=True)
class Ambiguous:
    candidates: Tuple[NamedEntity, ...]


@dataclass(frozen=True)
class NotFound:
    pass


ResolutionResult = Union[Unique, Ambiguous, NotFound]


def _result_from(entities: Sequence[NamedEntity]) -> ResolutionResult:
    if not entities:
        return NotFound()
    if len(entities) == 1:
        return Unique(entities[0])
    return Ambiguous(tuple(entities[:MAX_CANDIDATES]))


def _prepare_query(query: str, entities: Sequence[NamedEntity]) -> str:
    query = (query or '').strip()
    if entities and entities[0].kind is EntityKind.BOARD:
        return strip_board_prefix(query)
    return query


def resolve_exact(query: str, entities: Sequence[NamedEntity]) -> ResolutionResult:
    """Case-insensitive equality against raw names (and prefix-stripped board names)."""
    raw_query = (query or '').strip().lower()
    if not normalize_name(raw_query).clean:
        return NotFound()

    stripped_query = strip_board_prefix(raw_query).lower()
    matches = []
    for entity in entities:
        if entity.raw_name.strip().lower() == raw_query:
            matches.append(entity)
        elif entity.kind is EntityKind.BOARD and entity.match_name.lower() == stripped_query:
            matches.append(entity)

    return _result_from(matches)


def rank_candidates(query: str, entities: Sequence[NamedEntity],
                    max_distance: int = DEFAULT_MAX_DISTANCE) -> List[ScoredCandidate]:
    """
    Score every entity against the query and keep the plausible ones, best first.

    An entity survives when it scores above 8, is within max_distance edits,
    or one name contains the other.
    """
    query = _prepare_query(query, entities)
    clean_query = normalize_name(query).compact
    if not clean_query:
        return []

    survivors = []
    for entity in entities:
        clean_name = normalize_name(entity.match_name).compact
        if not clean_name:
            continue

        scored = score_candidate(query, entity.match_name)
        if (scored.score > MIN_KEEP_SCORE
                or scored.distance <= max_distance
                or contains_either_way(clean_name, clean_query)):
            survivors.append(ScoredCandidate(entity=entity, distance=scored.distance, score=scored.score))

    survivors.sort(key=lambda candidate: candidate.score, reverse=True)
    return survivors[:MAX_CANDIDATES]


def resolve_fuzzy(query: str, entities: Sequence[NamedEntity],
                  max_distance: int = DEFAULT_MAX_DISTANCE) -> ResolutionResult:
    ranked = rank_candidates(query, entities, max_distance)
    return _result_from([candidate.entity for candidate in ranked])


def resolve(query: str, entities: Sequence[NamedEntity], mode: MatchMode = MatchMode.EXACT,
            max_distance: int = DEFAULT_MAX_DISTANCE) -> ResolutionResult:
    """
    Resolve a free-text name to one of the given entities.

    Returns Unique, Ambiguous (at most five candidates) or NotFound. Never
    raises for a missing or ambiguous name.
    """
    if mode is MatchMode.EXACT:
        result = resolve_exact(query, entities)
    else:
        result = resolve_fuzzy(query, entities, max_distance)
    logger.debug(f"Resolved '{query}' in {mode.value} mode over {len(entities)} entities: {result}")
    return result


def resolve_board(query: str, boards: Sequence[NamedEntity]) -> ResolutionResult:
    """Exact board lookup that falls back to fuzzy ranking when nothing matches."""
    result = resolve(query, boards, MatchMode.EXACT)
    if isinstance(result, NotFound):
        logger.info(f"No exact board match for '{query}', trying fuzzy matching")
        result = resolve(query, boards, MatchMode.FUZZY)
    return result


def find_near_duplicate_boards(query: str, boards: Sequence[NamedEntity]) -> List[NamedEntity]:
    """Boards whose name is basically the requested one, for "did you mean" prompts."""
    matches = [board for board in boards if is_near_duplicate(query, board.raw_name)]
    return matches[:MAX_CANDIDATES]
