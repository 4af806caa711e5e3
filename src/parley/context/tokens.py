"""Token estimation — pluggable per-model estimators with graceful fallback."""

from __future__ import annotations

import logging
import math
from typing import Protocol, runtime_checkable

import tiktoken

from ..errors import EstimationFallback

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenEstimator(Protocol):
    """Counts tokens for a text fragment under a given model."""

    def estimate(self, text: str, model_id: str) -> int: ...


class CharRatioEstimator:
    """``ceil(len(text) / chars_per_token)``; model-agnostic."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            msg = "chars_per_token must be positive"
            raise ValueError(msg)
        self._ratio = chars_per_token

    def estimate(self, text: str, model_id: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._ratio)


class TiktokenEstimator:
    """Exact BPE counts for models tiktoken knows about.

    Raises :class:`EstimationFallback` for unknown models or when the
    encoding files cannot be loaded.
    """

    def __init__(self) -> None:
        self._encodings: dict[str, tiktoken.Encoding] = {}

    def _encoding(self, model_id: str) -> tiktoken.Encoding:
        enc = self._encodings.get(model_id)
        if enc is not None:
            return enc
        try:
            enc = tiktoken.encoding_for_model(model_id)
        except KeyError as exc:
            raise EstimationFallback(model_id, "unknown to tiktoken") from exc
        except (OSError, ValueError) as exc:
            raise EstimationFallback(model_id, str(exc)) from exc
        self._encodings[model_id] = enc
        return enc

    def estimate(self, text: str, model_id: str) -> int:
        if not text:
            return 0
        return len(self._encoding(model_id).encode(text, disallowed_special=()))


class FallbackEstimator:
    """Tries ``primary``; on :class:`EstimationFallback` uses ``fallback``."""

    def __init__(self, primary: TokenEstimator, fallback: TokenEstimator) -> None:
        self._primary = primary
        self._fallback = fallback
        self._warned: set[str] = set()

    def estimate(self, text: str, model_id: str) -> int:
        try:
            return self._primary.estimate(text, model_id)
        except EstimationFallback as exc:
            if model_id not in self._warned:
                self._warned.add(model_id)
                logger.debug("Token estimation fallback: %s", exc)
            return self._fallback.estimate(text, model_id)


class EstimatorRegistry:
    """Routes a model id to an estimator by longest matching prefix."""

    def __init__(self, default: TokenEstimator | None = None) -> None:
        self._default: TokenEstimator = default or CharRatioEstimator()
        self._by_prefix: dict[str, TokenEstimator] = {}

    def register(self, prefix: str, estimator: TokenEstimator) -> None:
        self._by_prefix[prefix] = estimator

    def resolve(self, model_id: str) -> TokenEstimator:
        matches = [p for p in self._by_prefix if model_id.startswith(p)]
        if not matches:
            return self._default
        return self._by_prefix[max(matches, key=len)]

    def estimate(self, text: str, model_id: str) -> int:
        return self.resolve(model_id).estimate(text, model_id)


# Model families tiktoken ships encodings for
_TIKTOKEN_PREFIXES = ("gpt-", "o1", "o3", "o4", "text-embedding-")


def default_estimator() -> EstimatorRegistry:
    """Tiktoken for OpenAI-family models, 4 chars/token for everything else."""
    fallback = CharRatioEstimator()
    registry = EstimatorRegistry(default=fallback)
    exact = FallbackEstimator(TiktokenEstimator(), fallback)
    for prefix in _TIKTOKEN_PREFIXES:
        registry.register(prefix, exact)
    return registry
