# name_matching.py

from dataclasses import dataclass
from typing import List, Tuple
import re
import unicodedata

# Ranking weights for score_candidate
BASE_SCORE = 10
CONTAINMENT_BONUS = 5
LENGTH_BONUS = 3
LENGTH_BONUS_MAX_DIFF = 3
WORD_MATCH_BONUS = 2

# Per-word edit distance tolerated when ranking many candidates
RANKING_WORD_DISTANCE = 2
# Per-word edit distance tolerated by the strict "did you mean" gate
NEAR_DUPLICATE_WORD_DISTANCE = 1
NEAR_DUPLICATE_MAX_DISTANCE = 2
NEAR_DUPLICATE_WORD_RATIO = 0.7

# "[OZ] 1 - Franki Kancelaria", "[[ITM]] Admin", "[[ C-Level ]] Szymon"
BOARD_PREFIX_PATTERN = re.compile(r'^\s*\[+[^\[\]]*\]+\s*(?:\d+\s*-\s*|-\s*)?')

# Letters that NFD does not decompose into base + combining mark
_EXTRA_FOLDS = str.maketrans({'ł': 'l', 'Ł': 'L', 'ø': 'o', 'Ø': 'O', 'đ': 'd', 'Đ': 'D', 'ß': 'ss'})


@dataclass(frozen=True)
class NormalizedName:
    """Canonical form of a free-text name."""
    clean: str
    words: Tuple[str, ...]

    @property
    def compact(self) -> str:
        """The clean form without spaces, used for edit distances."""
        return self.clean.replace(' ', '')


@dataclass(frozen=True)
class CandidateScore:
    distance: int
    score: float


def levenshtein_distance(a: str, b: str) -> int:
    """
    Edit distance between two strings, ignoring case.

    Insertions, deletions and substitutions each cost 1.
    """
    a = str(a).lower()
    b = str(b).lower()

    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(a) + 1))
    for i in range(1, len(b) + 1):
        current = [i] + [0] * len(a)
        for j in range(1, len(a) + 1):
            cost = 0 if a[j - 1] == b[i - 1] else 1
            current[j] = min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            )
        previous = current

    return previous[len(a)]


def normalize_name(text: str) -> NormalizedName:
    """Lowercase, strip accents and punctuation, and collapse whitespace."""
    if not text:
        return NormalizedName(clean='', words=())

    folded = unicodedata.normalize('NFD', text.translate(_EXTRA_FOLDS).lower())
    folded = ''.join(ch for ch in folded if not unicodedata.combining(ch))
    folded = re.sub(r'[^\w\s]', '', folded)
    clean = re.sub(r'\s+', ' ', folded).strip()

    return NormalizedName(clean=clean, words=tuple(clean.split()))


def strip_board_prefix(text: str) -> str:
    """Remove a leading "[TAG] 12 - " style prefix from a board name."""
    if not text:
        return ''
    stripped = BOARD_PREFIX_PATTERN.sub('', text, count=1).strip()
    # A name that is only a tag keeps the tag
    return stripped or text.strip()


def _split_words(text: str) -> List[str]:
    return text.lower().split()


def words_match(first: str, second: str, max_distance: int) -> bool:
    """Two words match if one contains the other or they are a few edits apart."""
    return (
        first in second
        or second in first
        or levenshtein_distance(first, second) <= max_distance
    )


def count_matching_words(candidate_words: List[str], query_words: List[str], max_distance: int) -> int:
    """Number of candidate words that match at least one query word."""
    return sum(
        1 for word in candidate_words
        if any(words_match(word, query_word, max_distance) for query_word in query_words)
    )


def contains_either_way(first: str, second: str) -> bool:
    if not first or not second:
        return False
    return first in second or second in first


def score_candidate(query: str, candidate_name: str) -> CandidateScore:
    """
    Score how well a candidate name matches a free-text query.

    Higher is better. The score is only meaningful for ranking candidates
    against the same query.
    """
    clean_query = normalize_name(query).compact
    clean_candidate = normalize_name(candidate_name).compact

    distance = levenshtein_distance(clean_candidate, clean_query)
    score = BASE_SCORE - distance

    if contains_either_way(clean_candidate, clean_query):
        score += CONTAINMENT_BONUS

    if abs(len(clean_candidate) - len(clean_query)) <= LENGTH_BONUS_MAX_DIFF:
        score += LENGTH_BONUS

    matching_words = count_matching_words(
        _split_words(candidate_name), _split_words(query), RANKING_WORD_DISTANCE
    )
    score += WORD_MATCH_BONUS * matching_words

    return CandidateScore(distance=distance, score=float(score))


def is_near_duplicate(query: str, board_name: str) -> bool:
    """
    Strict yes/no check whether a board name is basically the requested one.

    Accepts close edit distance, containment, or at least 70% of the words
    matching in any order.
    """
    clean_query = normalize_name(query).compact
    clean_board = normalize_name(board_name).compact
    clean_stripped = normalize_name(strip_board_prefix(board_name)).compact

    if not clean_query or not clean_board:
        return False

    if (levenshtein_distance(clean_board, clean_query) <= NEAR_DUPLICATE_MAX_DISTANCE
            or levenshtein_distance(clean_stripped, clean_query) <= NEAR_DUPLICATE_MAX_DISTANCE):
        return True

    if contains_either_way(clean_board, clean_query) or contains_either_way(clean_stripped, clean_query):
        return True

    board_words = _split_words(board_name)
    query_words = _split_words(query)
    matching = count_matching_words(board_words, query_words, NEAR_DUPLICATE_WORD_DISTANCE)
    return matching / max(len(board_words), len(query_words)) >= NEAR_DUPLICATE_WORD_RATIO
