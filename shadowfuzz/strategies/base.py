"""Common capability shared by all generation strategies."""

from __future__ import annotations

import hashlib
import random
import re
from abc import ABC, abstractmethod

from shadowfuzz.types import GeneratedTest, StrategyKind

_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")


def slugify(text: str) -> str:
    """Make a type name usable inside file names (``Vec<i32>`` -> ``Vec_i32``)."""
    return _SLUG_PATTERN.sub("_", text).strip("_") or "test"


def content_id(kind: StrategyKind, source: str) -> str:
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]
    return f"{kind.value}-{digest}"


class Strategy(ABC):
    """A source of generated tests.

    Implementations must draw all randomness from the ``rng`` they are
    handed so that a batch is reproducible from its seed.
    """

    kind: StrategyKind

    @abstractmethod
    def next_test(self, rng: random.Random) -> GeneratedTest:
        """Produce one test. The returned id is provisional."""

    @property
    def label(self) -> str:
        return self.kind.value
