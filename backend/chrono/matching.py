"""Word-overlap matching between analysis text and layer lexicons.

The engine is a pure function over already-loaded layers: it never touches
the database, so it can be unit tested directly and reused by scripts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .lexicon import LayerLexicon


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one text against a set of layers.

    `per_layer_counts` maps every examined layer id to the number of
    distinct lexicon words found in the text (0 when none). The year
    bounds are `None` when no layer matched.
    """
    per_layer_counts: Dict[int, int] = field(default_factory=dict)
    year_from: Optional[int] = None
    year_to: Optional[int] = None

    @property
    def matched(self) -> Dict[int, int]:
        return {layer_id: c for layer_id, c in self.per_layer_counts.items() if c > 0}

    @property
    def matched_count(self) -> int:
        return len(self.matched)


def tokenize(text: str | None) -> set[str]:
    """Lower-case `text` and split it on whitespace.

    Punctuation is left attached to tokens; a match requires exact equality.
    """
    if not text:
        return set()
    return set(text.lower().split())


def match(text: str | None, layers: Iterable[LayerLexicon]) -> MatchResult:
    """Count, per layer, the distinct lexicon words present in `text`.

    A lexicon word counts once no matter how often it occurs in the text.
    The year range is the min `year_from` / max `year_to` over matched
    layers and does not depend on the counts or on the order of `layers`.
    """
    text_words = tokenize(text)
    counts: Dict[int, int] = {}
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    for layer in layers:
        count = len(layer.words & text_words)
        counts[layer.id] = count
        if count == 0:
            continue
        year_from = layer.year_from if year_from is None else min(year_from, layer.year_from)
        year_to = layer.year_to if year_to is None else max(year_to, layer.year_to)
    return MatchResult(per_layer_counts=counts, year_from=year_from, year_to=year_to)
