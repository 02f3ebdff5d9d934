"""Recurrence rules and their expansion into occurrences."""

from .expander import ExpansionResult, RuleExpander, RuleExpanderConfig
from .rule import (
    AfterCount,
    EndCondition,
    Frequency,
    NeverEnd,
    RecurrenceRule,
    UntilInstant,
    format_rule,
    parse_rule,
)

__all__ = [
    "AfterCount",
    "EndCondition",
    "ExpansionResult",
    "Frequency",
    "NeverEnd",
    "RecurrenceRule",
    "RuleExpander",
    "RuleExpanderConfig",
    "UntilInstant",
    "format_rule",
    "parse_rule",
]
