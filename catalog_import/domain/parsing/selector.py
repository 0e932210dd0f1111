import logging
from typing import List, Optional, Sequence

from catalog_import.core.config import settings
from catalog_import.core.exceptions import NoRecoverableDataError

from .scoring import score_confidence
from .strategies import ParsingStrategy, default_strategies
from .types import ParseResult, RawBuffer

logger = logging.getLogger(__name__)


class StrategySelector:
    """
    Runs every applicable strategy in priority order and keeps the most
    confident successful result.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[ParsingStrategy]] = None,
        min_confidence: Optional[float] = None,
    ):
        strategies = list(strategies) if strategies is not None else default_strategies()
        self.strategies: List[ParsingStrategy] = sorted(
            strategies, key=lambda strategy: strategy.priority, reverse=True
        )
        self.min_confidence = settings.min_parse_confidence if min_confidence is None else min_confidence
        self.attempts: List[ParseResult] = []

    def select(self, buffer: RawBuffer) -> ParseResult:
        """
        Return the winning ParseResult.

        Raises:
            NoRecoverableDataError: when no strategy can handle the buffer or
                none produced a result above the confidence floor.
        """
        attempts: List[ParseResult] = []
        best: Optional[ParseResult] = None

        for strategy in self.strategies:
            if not strategy.can_handle(buffer):
                logger.debug("Strategy %s cannot handle %s", strategy.name, buffer.filename or "buffer")
                continue

            result = strategy.execute(buffer)
            attempts.append(result)
            if not result.success:
                logger.info("Strategy %s failed: %s", strategy.name, result.error)
                continue
            if result.confidence < self.min_confidence:
                logger.info(
                    "Strategy %s below confidence floor (%.2f < %.2f)",
                    strategy.name,
                    result.confidence,
                    self.min_confidence,
                )
                continue

            logger.info(
                "Strategy %s parsed %d rows with confidence %.2f",
                strategy.name,
                result.row_count,
                result.confidence,
            )
            # Strict comparison keeps the higher-priority strategy on ties
            if best is None or result.confidence > best.confidence:
                best = result

        self.attempts = attempts
        if best is None:
            reasons = "; ".join(f"{attempt.strategy_name}: {attempt.error}" for attempt in attempts)
            raise NoRecoverableDataError(
                f"No parsing strategy could recover data ({reasons or 'no strategy applicable'})",
                attempts=attempts,
            )

        breakdown = score_confidence(best.rows, best.metadata)
        best.metadata.confidence_breakdown = breakdown
        logger.info(
            "Selected %s; quality breakdown score %d (%s)",
            best.strategy_name,
            breakdown.score,
            ", ".join(breakdown.issues) or "no quality issues",
        )
        return best
