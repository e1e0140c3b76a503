"""
Content Embedding
=================
Stable projection of a memory payload (plus its context mapping) into the
Poincaré ball.

Each token gets a deterministic Gaussian vector seeded from its SHAKE-256
hash; the token vectors are summed (context tokens down-weighted), the sum
gives the direction, and the number of distinct tokens sets the radius.
Identical content and context therefore always land on the identical point,
and texts sharing most of their tokens land close together.
"""

import functools
import hashlib
import math
import re
from typing import Any, Dict, List, Optional

import numpy as np

from .config import EmbeddingConfig
from .memory_model import content_text

_TOKEN_RE = re.compile(r"\b\w+\b")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


@functools.lru_cache(maxsize=10000)
def _token_vector(token: str, dimension: int) -> np.ndarray:
    seed_bytes = hashlib.shake_256(token.encode()).digest(8)
    seed = int.from_bytes(seed_bytes, "little")
    vec = np.random.default_rng(seed).standard_normal(dimension)
    vec.flags.writeable = False
    return vec


class ContentEmbedder:
    """Maps payloads to points of a ``dimension``-dimensional Poincaré ball."""

    def __init__(self, config: EmbeddingConfig, dimension: int):
        self.config = config
        self.dimension = dimension

    def context_tokens(self, context: Optional[Dict[str, Any]]) -> List[str]:
        if not context:
            return []
        return [f"{key}={content_text(value)}" for key, value in sorted(context.items())]

    def direction(self, content: Any, context: Optional[Dict[str, Any]] = None) -> np.ndarray:
        text = content_text(content)
        tokens = tokenize(text)
        vec = np.zeros(self.dimension, dtype=np.float64)
        for token in tokens:
            vec += _token_vector(token, self.dimension)
        for token in self.context_tokens(context):
            vec += self.config.context_weight * _token_vector("ctx:" + token, self.dimension)

        norm = float(np.linalg.norm(vec))
        if norm == 0.0:
            # Punctuation-only payloads have no word tokens
            vec = np.array(_token_vector("raw:" + text, self.dimension))
            norm = float(np.linalg.norm(vec))
        return vec / norm

    def radius(self, content: Any) -> float:
        unique = len(set(tokenize(content_text(content))))
        radius = self.config.base_radius + self.config.radius_gain * math.log1p(unique)
        return min(radius, self.config.max_radius)

    def embed(self, content: Any, context: Optional[Dict[str, Any]] = None) -> np.ndarray:
        """Point for ``content`` under ``context``; norm is at most max_radius."""
        return self.direction(content, context) * self.radius(content)
