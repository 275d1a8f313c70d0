"""Read-only access to active layers and their parsed lexicons."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from sqlmodel import Session

from . import models, repositories

_WORD_SEPARATORS = re.compile(r"[,; ]")


def parse_words(raw: str | None) -> frozenset[str]:
    """Split a stored lexicon string into lowercase tokens.

    Separators are comma, space and semicolon; surrounding whitespace is
    trimmed and empty tokens are dropped. Parsing is pure, so calling it
    again on its own joined output yields the same set.
    """
    if not raw:
        return frozenset()
    tokens = (part.strip().lower() for part in _WORD_SEPARATORS.split(raw))
    return frozenset(t for t in tokens if t)


@dataclass(frozen=True)
class LayerLexicon:
    id: int
    name: str
    year_from: int
    year_to: int
    words: frozenset[str]

    @classmethod
    def from_layer(cls, layer: models.Layer) -> "LayerLexicon":
        return cls(
            id=layer.id,
            name=layer.name,
            year_from=layer.year_from,
            year_to=layer.year_to,
            words=parse_words(layer.words),
        )


class LexiconStore:
    """Active layers with lexicons derived from the stored raw strings.

    Nothing is cached: every call re-reads the table, so an edited
    `words` column is reflected immediately.
    """
    def __init__(self, session: Session):
        self.layer_repo = repositories.LayerRepository(session)

    def active_layers(self) -> List[LayerLexicon]:
        return [LayerLexicon.from_layer(layer) for layer in self.layer_repo.list_active()]
