"""Query state and include instructions produced by the query rewriter"""
from dataclasses import dataclass, field
import re

from fhir_adapter.constants import INCLUDE_PARAMETERS
from fhir_adapter.exceptions import InvalidArgument

_UNESCAPED_COMMA = re.compile(r"(?<!\\),")


@dataclass(frozen=True)
class IncludeInstruction:
    """A ``Type:joinPath`` directive from ``_include`` or ``_revinclude``"""
    kind: str
    join_path: str

    @classmethod
    def parse(cls, instruction):
        parsed = instruction.split(":")
        if len(parsed) != 2 or not all(parsed):
            raise InvalidArgument(f"{instruction} is not a valid include instruction")
        return cls(kind=parsed[0], join_path=parsed[1])

    def __str__(self):
        return f"{self.kind}:{self.join_path}"


@dataclass
class QueryState:
    """Pagination cursor for one search call

    ``actual_parameters`` holds every accepted filter parameter as
    ``(key, value)`` pairs, in request order, for link reproduction.
    """
    offset: int = 0
    quantity: int = 100
    state_id: str = None
    total: int = None
    actual_parameters: list = field(default_factory=list)
    includes: list = field(default_factory=list)
    reverse_includes: list = field(default_factory=list)

    def __post_init__(self):
        if self.offset < 0:
            raise InvalidArgument(f"offset must not be negative: {self.offset}")
        if self.quantity < 0:
            raise InvalidArgument(f"count must not be negative: {self.quantity}")

    @property
    def filters(self):
        """Accepted filter parameters, leaving out include directives"""
        return [
            (key, value) for key, value in self.actual_parameters
            if key not in INCLUDE_PARAMETERS]

    def has_more(self):
        if self.total is None or not self.quantity:
            return False
        return self.offset + self.quantity < self.total


def normalize_parameters(parameters):
    """Flatten request parameters into ordered ``(key, [values])`` pairs

    Accepts a werkzeug ``MultiDict`` (anything with ``getlist``), a mapping of
    key to string or list of strings, or an iterable of ``(key, value)`` pairs.
    """
    if parameters is None:
        return []
    if hasattr(parameters, "getlist"):
        return [(key, list(parameters.getlist(key))) for key in parameters.keys()]
    if hasattr(parameters, "items"):
        pairs = parameters.items()
    else:
        pairs = parameters

    normalized = {}
    for key, value in pairs:
        values = [value] if isinstance(value, str) else list(value)
        normalized.setdefault(key, []).extend(values)
    return list(normalized.items())


def split_values(values):
    """Split each raw value on unescaped commas; ``\\,`` is a literal comma"""
    for value in values:
        for part in _UNESCAPED_COMMA.split(value):
            yield part.replace("\\,", ",")
