"""
Parsing strategies, each targeting one class of tabular input.
"""
from .alternative_delimiters import AlternativeDelimiterStrategy
from .base import ParsingStrategy, StrategyRejected
from .complex_fields import ComplexFieldsStrategy
from .dirty_recovery import DirtyRecoveryStrategy
from .numeric_headerless import NumericHeaderlessStrategy
from .standard import StandardCSVStrategy


def default_strategies():
    return [
        StandardCSVStrategy(),
        AlternativeDelimiterStrategy(),
        NumericHeaderlessStrategy(),
        ComplexFieldsStrategy(),
        DirtyRecoveryStrategy(),
    ]


__all__ = [
    "AlternativeDelimiterStrategy",
    "ComplexFieldsStrategy",
    "DirtyRecoveryStrategy",
    "NumericHeaderlessStrategy",
    "ParsingStrategy",
    "StandardCSVStrategy",
    "StrategyRejected",
    "default_strategies",
]
