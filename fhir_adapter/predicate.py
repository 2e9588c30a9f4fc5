"""Native predicate tree handed to the repository collaborator

A predicate is an AND/OR tree whose leaves are ``(path, operator, value)``
terms.  Paths use the repository's dotted notation; a bracketed segment
(``identifiers[acme.org/mrn].value``) scopes a collection to one classifier.
"""
from dataclasses import dataclass
from enum import Enum


class Operator(Enum):
    EQUAL = "=="
    NOT_EQUAL = "!="
    GREATER = ">"
    GREATER_OR_EQUAL = ">="
    LESS = "<"
    LESS_OR_EQUAL = "<="
    APPROXIMATE = "~="
    LIKE = "~"
    IS_NULL = "is null"
    NOT_NULL = "is not null"

    @property
    def unary(self):
        return self in (Operator.IS_NULL, Operator.NOT_NULL)


# two character comparison prefixes of the search grammar
PREFIXES = {
    "eq": Operator.EQUAL,
    "ne": Operator.NOT_EQUAL,
    "gt": Operator.GREATER,
    "ge": Operator.GREATER_OR_EQUAL,
    "lt": Operator.LESS,
    "le": Operator.LESS_OR_EQUAL,
    "ap": Operator.APPROXIMATE,
}


@dataclass(frozen=True)
class Term:
    path: str
    operator: Operator = Operator.EQUAL
    value: object = None

    def __str__(self):
        if self.operator.unary:
            return f"{self.path} {self.operator.value}"
        return f"{self.path} {self.operator.value} {self.value!r}"

    def terms(self):
        yield self


@dataclass(frozen=True)
class AnyOf:
    """Disjunction"""
    operands: tuple

    def __str__(self):
        return "(" + " OR ".join(str(o) for o in self.operands) + ")"

    def terms(self):
        for operand in self.operands:
            yield from operand.terms()


@dataclass(frozen=True)
class AllOf:
    """Conjunction"""
    operands: tuple

    def __str__(self):
        if not self.operands:
            return "TRUE"
        return " AND ".join(str(o) for o in self.operands)

    def terms(self):
        for operand in self.operands:
            yield from operand.terms()


def any_of(operands):
    operands = tuple(operands)
    if len(operands) == 1:
        return operands[0]
    return AnyOf(operands)


def all_of(*operands):
    """Conjunction of the given operands, flattening nested conjunctions"""
    flat = []
    for operand in operands:
        if operand is None:
            continue
        if isinstance(operand, AllOf):
            flat.extend(operand.operands)
        else:
            flat.append(operand)
    if len(flat) == 1:
        return flat[0]
    return AllOf(tuple(flat))
