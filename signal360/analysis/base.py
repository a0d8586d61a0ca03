"""Shared analysis types and the base class for source analyzers."""

from __future__ import annotations

import math
import numbers
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Tuple

from signal360.errors import InvalidInputError

CATEGORIES = ("fundamental", "technical", "esg")
FACTOR_TYPES = ("positive", "negative")


def round_score(value: float) -> int:
    """Round half up and clamp to the 0-100 score range."""
    return int(max(0.0, min(100.0, math.floor(value + 0.5))))


def check_range(name: str, value: Any, low: float, high: float) -> float:
    """Return *value* as float or raise InvalidInputError if out of [low, high].

    Out-of-range values are never clamped: they signal an upstream contract
    violation.
    """
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidInputError(f"{name} must be a number, got {type(value).__name__}")
    value = float(value)
    if math.isnan(value) or not low <= value <= high:
        raise InvalidInputError(f"{name} must be between {low:g} and {high:g}, got {value}")
    return value


@dataclass(frozen=True)
class AnalysisFactor:
    """One discrete, weighted, directional signal."""

    category: str
    type: str
    description: str
    weight: float
    confidence: float

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise InvalidInputError(f"Unknown factor category: {self.category!r}")
        if self.type not in FACTOR_TYPES:
            raise InvalidInputError(f"Factor type must be positive or negative, got {self.type!r}")
        object.__setattr__(self, "weight", check_range("factor weight", self.weight, 0.0, 1.0))
        object.__setattr__(
            self, "confidence", check_range("factor confidence", self.confidence, 0.0, 1.0),
        )

    @property
    def is_positive(self) -> bool:
        return self.type == "positive"

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "type": self.type,
            "description": self.description,
            "weight": round(self.weight, 4),
            "confidence": round(self.confidence, 4),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisFactor":
        try:
            return cls(
                category=data["category"],
                type=data["type"],
                description=str(data.get("description", "")),
                weight=data["weight"],
                confidence=data.get("confidence", 1.0),
            )
        except KeyError as exc:
            raise InvalidInputError(f"Analysis factor missing field {exc}") from exc


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class AnalysisOutput:
    """Result of one source analysis: produced once per request, never mutated."""

    score: float
    factors: Tuple[AnalysisFactor, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)
    confidence: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", check_range("score", self.score, 0.0, 100.0))
        object.__setattr__(
            self, "confidence", check_range("confidence", self.confidence, 0.0, 1.0),
        )
        factors = tuple(self.factors)
        for f in factors:
            if not isinstance(f, AnalysisFactor):
                raise InvalidInputError("factors must contain AnalysisFactor instances")
        object.__setattr__(self, "factors", factors)
        object.__setattr__(self, "details", freeze(dict(self.details)))

    @property
    def positive_factors(self) -> Tuple[AnalysisFactor, ...]:
        return tuple(f for f in self.factors if f.is_positive)

    @property
    def negative_factors(self) -> Tuple[AnalysisFactor, ...]:
        return tuple(f for f in self.factors if not f.is_positive)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "factors": [f.to_dict() for f in self.factors],
            "details": thaw(self.details),
            "confidence": round(self.confidence, 4),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisOutput":
        """Build from a wire payload (e.g. a collaborator's JSON response)."""
        if not isinstance(data, Mapping):
            raise InvalidInputError("Analysis output must be a mapping")
        if "score" not in data:
            raise InvalidInputError("Analysis output missing 'score'")
        if "confidence" not in data:
            raise InvalidInputError("Analysis output missing 'confidence'")
        return cls(
            score=data["score"],
            factors=tuple(AnalysisFactor.from_dict(f) for f in data.get("factors", ()) or ()),
            details=data.get("details", {}) or {},
            confidence=data["confidence"],
        )


def ensure_output(value: Any, source: str) -> AnalysisOutput:
    """Coerce a collaborator's return value into an AnalysisOutput."""
    if isinstance(value, AnalysisOutput):
        return value
    if isinstance(value, Mapping):
        return AnalysisOutput.from_dict(value)
    raise InvalidInputError(f"{source} analysis returned {type(value).__name__}, expected AnalysisOutput")


class BaseAnalyzer(ABC):
    """Interface every source analyzer must implement.

    The fundamental and ESG engines live outside this package; anything that
    implements ``analyze`` and returns an ``AnalysisOutput`` (or its dict
    form) can be plugged into the synthesis pipeline as a source.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Source name: one of fundamental, technical, esg."""
        ...

    @abstractmethod
    def analyze(self, ticker: str, context: str, timeframe: str | None = None) -> AnalysisOutput:
        """Run the analysis for a single ticker."""
        ...

