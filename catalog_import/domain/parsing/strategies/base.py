"""
Common behaviour for parsing strategies.
"""
import csv
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..primitives import clamp, decode_buffer, detect_encoding
from ..types import ParseMetadata, ParseResult, RawBuffer

logger = logging.getLogger(__name__)

SNIFF_BYTES = 1024


class StrategyRejected(Exception):
    """Raised inside ``parse`` when the input is outside the strategy's class."""


class ParsingStrategy(ABC):
    """
    One self-contained parsing algorithm.

    Subclasses implement ``can_handle`` (a cheap sniff) and ``parse``.
    ``execute`` wraps ``parse`` with timing, clamping and failure capture so a
    strategy never raises into the selector.
    """

    name: str = "base"
    priority: int = 0
    min_confidence: float = 0.0
    max_confidence: float = 100.0

    @abstractmethod
    def can_handle(self, buffer: RawBuffer) -> bool:
        ...

    @abstractmethod
    def parse(self, buffer: RawBuffer, started: float) -> ParseResult:
        ...

    def execute(self, buffer: RawBuffer) -> ParseResult:
        started = time.perf_counter()
        try:
            result = self.parse(buffer, started)
        except StrategyRejected as exc:
            logger.debug("%s rejected input: %s", self.name, exc)
            return self.failure(str(exc), started)
        except (ValueError, UnicodeDecodeError, LookupError, csv.Error) as exc:
            logger.debug("%s could not parse input: %s", self.name, exc)
            return self.failure(f"{type(exc).__name__}: {exc}", started)
        return result

    # Helpers shared by subclasses

    def sample_text(self, buffer: RawBuffer) -> str:
        data = buffer.data
        encoding = detect_encoding(data)
        return decode_buffer(data[:SNIFF_BYTES * 4], encoding, errors="ignore")[:SNIFF_BYTES]

    def decode(self, buffer: RawBuffer, errors: str = "strict"):
        encoding = detect_encoding(buffer.data)
        return decode_buffer(buffer.data, encoding, errors=errors), encoding

    def clamp_confidence(self, value: float) -> float:
        return round(clamp(value, self.min_confidence, self.max_confidence), 2)

    @staticmethod
    def elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def failure(self, reason: str, started: float, metadata: Optional[Dict[str, Any]] = None) -> ParseResult:
        meta = ParseMetadata(parse_time_ms=self.elapsed_ms(started), **(metadata or {}))
        return ParseResult(
            success=False,
            rows=[],
            confidence=0,
            strategy_name=self.name,
            metadata=meta,
            error=reason,
        )

    def success(
        self,
        rows: List[Dict[str, Any]],
        confidence: float,
        started: float,
        *,
        delimiter: str,
        has_headers: bool,
        encoding: str,
        quality_score: float,
        issues: List[str],
        column_names: List[str],
    ) -> ParseResult:
        return ParseResult(
            success=True,
            rows=rows,
            confidence=self.clamp_confidence(confidence),
            strategy_name=self.name,
            metadata=ParseMetadata(
                delimiter=delimiter,
                has_headers=has_headers,
                encoding=encoding,
                parse_time_ms=self.elapsed_ms(started),
                quality_score=quality_score,
                issues=issues,
                column_names=column_names,
            ),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"
