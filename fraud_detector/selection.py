"""Sigma-style event selection.

A selection is a mapping of field -> expected value.  Every field must match
(AND).  A scalar is an exact match, a list is OR.  A ``|modifier`` suffix on
the field turns the clause into a comparison:

    kind: transaction
    type: [debit, cash_withdrawal]
    amount|lt: 500

Supported modifiers: gt, gte, lt, lte, ne.
"""

from typing import Any, Mapping

# Comparison operators shared by selections and rule conditions.
OPS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
}


class Selection:
    __slots__ = ("_clauses", "signature")

    def __init__(self, spec: Mapping[str, Any] | None = None):
        clauses = []
        for raw_field, expected in sorted((spec or {}).items()):
            field, _, modifier = raw_field.partition("|")
            if modifier and modifier not in OPS:
                raise ValueError(f"unknown selection modifier '{modifier}' on '{field}'")
            if isinstance(expected, (list, tuple, set)):
                if modifier:
                    raise ValueError(f"'{raw_field}' cannot take a list")
                expected = tuple(expected)
            clauses.append((field, modifier, expected))
        self._clauses = tuple(clauses)
        # Canonical text form.  Two rules with the same selection share one
        # measure in the aggregate store.
        self.signature = ",".join(
            f"{f}{'|' + m if m else ''}={e!r}" for f, m, e in self._clauses
        ) or "*"

    def match(self, event) -> bool:
        for field, modifier, expected in self._clauses:
            actual = event.get(field)
            if modifier:
                if actual is None:
                    return False
                try:
                    if not OPS[modifier](actual, expected):
                        return False
                except TypeError:
                    return False
            elif isinstance(expected, tuple):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True

    def __eq__(self, other):
        return isinstance(other, Selection) and other.signature == self.signature

    def __hash__(self):
        return hash(self.signature)

    def __repr__(self):
        return f"Selection({self.signature})"
