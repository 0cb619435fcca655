"""
Fix matcher: scores catalog patterns against a detected error.

Scoring:
    +3 when the pattern category equals the error category
    +2 when the error severity is in the pattern's severity set
    +5 for each match expression found in the error message
    +2 for each match expression found in the stack trace (if present)

Patterns scoring 0, or whose ``when`` guard is false, are excluded. The
ranking key is ``score * confidence``; ties keep catalog order.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from ..models import DetectedError, FixPattern
from .catalog import FixCatalog

logger = logging.getLogger(__name__)

CATEGORY_WEIGHT = 3
SEVERITY_WEIGHT = 2
MESSAGE_WEIGHT = 5
TRACE_WEIGHT = 2


@dataclass
class ScoredPattern:
    """A candidate pattern with its raw and confidence-weighted scores."""
    pattern: FixPattern
    score: int
    weighted: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern.id,
            "name": self.pattern.name,
            "score": self.score,
            "confidence": self.pattern.confidence,
            "weighted": round(self.weighted, 4),
        }


class FixMatcher:
    """
    Ranks fix patterns for a detected error.

    The matcher reads a snapshot of its catalog on every call, so runtime
    catalog changes only affect errors ranked afterwards.

    Example:
        >>> matcher = FixMatcher(default_catalog())
        >>> [p.id for p in matcher.find_candidates(error)][:1]
        ['sec-005']
    """

    def __init__(self, catalog: FixCatalog):
        self.catalog = catalog

    def score(self, error: DetectedError, pattern: FixPattern) -> int:
        """
        Compute the raw match score of one pattern.

        Args:
            error: Detected error
            pattern: Candidate pattern

        Returns:
            Raw score (0 means the pattern does not apply)
        """
        if pattern.when is not None and not pattern.when.evaluate(error):
            logger.debug(f"Pattern '{pattern.id}' guard rejected error {error.id}")
            return 0

        score = 0

        if pattern.category == error.category:
            score += CATEGORY_WEIGHT

        if error.severity in pattern.severities:
            score += SEVERITY_WEIGHT

        expressions = pattern.compiled_expressions()

        for regex in expressions:
            if regex.search(error.message):
                score += MESSAGE_WEIGHT

        if error.stack_trace:
            for regex in expressions:
                if regex.search(error.stack_trace):
                    score += TRACE_WEIGHT

        return score

    def rank(self, error: DetectedError) -> List[ScoredPattern]:
        """
        Score every catalog pattern and return the applicable ones, best first.

        Args:
            error: Detected error

        Returns:
            ScoredPattern list sorted by weighted score (stable)
        """
        scored = []
        for pattern in self.catalog.list_all():
            raw = self.score(error, pattern)
            if raw > 0:
                scored.append(ScoredPattern(pattern, raw, raw * pattern.confidence))

        # sorted() is stable, so equal keys keep catalog order
        scored = sorted(scored, key=lambda s: s.weighted, reverse=True)

        if scored:
            top = scored[0]
            logger.info(
                f"Found {len(scored)} candidate fixes for {error.id}; "
                f"best is '{top.pattern.id}' (score {top.score}, weighted {top.weighted:.2f})"
            )
        else:
            logger.info(f"No candidate fixes for {error.id}")

        return scored

    def find_candidates(self, error: DetectedError) -> List[FixPattern]:
        """Ordered candidate patterns, highest likelihood first."""
        return [s.pattern for s in self.rank(error)]
