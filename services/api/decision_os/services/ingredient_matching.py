"""Token-overlap matcher between recipe ingredients and inventory items.

Deliberately conservative: a weak match that slips through can inflate a
meal's inventory score, so everything below MATCH_THRESHOLD is discarded and
prefix matches are only allowed for near-identical lengths ("tomato" vs
"tomatoes", not "egg" vs "eggplant").
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

MATCH_THRESHOLD = 0.66
PREFIX_MATCH_SCORE = 0.80
PREFIX_MAX_EXTRA_CHARS = 3
PREFIX_MIN_LENGTH_RATIO = 0.70
MIN_TOKEN_LENGTH = 3
MAX_TOKENS = 10

STOPWORDS = frozenset({
    # Descriptors
    "fresh", "organic", "natural", "raw", "cooked", "frozen", "canned",
    # Sizes / packaging
    "large", "small", "medium", "mini", "jumbo", "pack", "pkg", "package",
    "family", "value", "brand", "store", "bulk",
    # Units
    "oz", "lb", "lbs", "ct", "each", "count", "gal", "qt", "pt",
    # Fillers
    "the", "and", "for", "with",
})


@dataclass(frozen=True)
class MatchResult:
    item: object
    score: float


def tokenize(text: Optional[str]) -> list[str]:
    if not text:
        return []
    s = re.sub(r"[^a-z0-9]+", " ", text.lower())
    tokens: list[str] = []
    for tok in s.split():
        if len(tok) < MIN_TOKEN_LENGTH or tok in STOPWORDS or tok in tokens:
            continue
        tokens.append(tok)
        if len(tokens) >= MAX_TOKENS:
            break
    return tokens


def _token_score(token: str, candidates: Sequence[str]) -> float:
    best = 0.0
    for cand in candidates:
        if token == cand:
            return 1.0
        shorter, longer = (token, cand) if len(token) <= len(cand) else (cand, token)
        if not longer.startswith(shorter):
            continue
        if len(longer) - len(shorter) > PREFIX_MAX_EXTRA_CHARS:
            continue
        if len(shorter) / len(longer) < PREFIX_MIN_LENGTH_RATIO:
            continue
        best = max(best, PREFIX_MATCH_SCORE)
    return best


def compute_overlap_score(ingredient_tokens: Sequence[str], item_tokens: Sequence[str]) -> float:
    """Mean best-token score over the ingredient's tokens, in [0, 1]."""
    if not ingredient_tokens or not item_tokens:
        return 0.0
    total = sum(_token_score(tok, item_tokens) for tok in ingredient_tokens)
    return min(1.0, total / len(ingredient_tokens))


def score_inventory_item(ingredient_name: str, item_name: str) -> float:
    return compute_overlap_score(tokenize(ingredient_name), tokenize(item_name))


def find_all_matches(ingredient_name: str, inventory: Sequence) -> list[MatchResult]:
    """Every inventory item at or above threshold, best first, ties by name."""
    ing_tokens = tokenize(ingredient_name)
    if not ing_tokens:
        return []
    matches = []
    for item in inventory:
        score = compute_overlap_score(ing_tokens, tokenize(item.item_name))
        if score >= MATCH_THRESHOLD:
            matches.append(MatchResult(item=item, score=score))
    matches.sort(key=lambda m: (-m.score, m.item.item_name))
    return matches


def match_inventory_item(ingredient_name: str, inventory: Sequence) -> Optional[MatchResult]:
    """Best match for an ingredient, or None below MATCH_THRESHOLD."""
    matches = find_all_matches(ingredient_name, inventory)
    return matches[0] if matches else None


@dataclass
class MatchStats:
    """Per-request matcher counters, logged by the caller."""
    attempts: int = 0
    successes: int = 0
    misses: int = 0

    def record(self, result: Optional[MatchResult]) -> None:
        self.attempts += 1
        if result is not None:
            self.successes += 1
        else:
            self.misses += 1
