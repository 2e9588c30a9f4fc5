"""Search parameter map

Translates external search parameter names into native field paths per
resource kind.  A map is assembled once by a ``ParameterMapBuilder`` (built-in
defaults first, then each site override applied on top) and frozen into an
immutable ``ParameterMap`` safe for unsynchronized concurrent reads.

Map documents are JSON::

    {"types": [
        {"map": [{"fhir": "_id", "model": "key", "type": "token"}]},
        {"resource": "Patient",
         "map": [{"fhir": "birthdate", "model": "date_of_birth", "type": "date",
                  "desc": "Date of birth"}]}
    ]}

A type entry without ``resource`` is the default table, consulted for every
kind after its own table.
"""
from dataclasses import dataclass
from enum import Enum
import json
import logging
import os
import threading
from types import MappingProxyType

BUILTIN_MAP = os.path.join(os.path.dirname(__file__), "parameter_map.json")

logger = logging.getLogger(__name__)


class ParameterKind(Enum):
    """Semantic kind of a search parameter, drives query rewriting"""
    NONE = "none"
    CONCEPT = "concept"
    IDENTIFIER = "identifier"
    TOKEN = "token"
    REFERENCE = "reference"
    TAG = "tag"
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    QUANTITY = "quantity"
    INDICATOR = "indicator"

    @property
    def ordered(self):
        """True for kinds accepting bare comparison prefixes (``gt2020``)"""
        return self in (ParameterKind.NUMBER, ParameterKind.DATE, ParameterKind.QUANTITY)

    @property
    def coded(self):
        return self in (
            ParameterKind.CONCEPT, ParameterKind.IDENTIFIER, ParameterKind.TOKEN,
            ParameterKind.REFERENCE, ParameterKind.TAG)


@dataclass(frozen=True)
class ParameterMapping:
    name: str
    path: str
    kind: ParameterKind = ParameterKind.NONE
    description: str = ""

    @classmethod
    def from_json(cls, data):
        try:
            return cls(
                name=data["fhir"],
                path=data["model"],
                kind=ParameterKind(data.get("type", "none")),
                description=data.get("desc", ""))
        except (KeyError, ValueError) as err:
            raise ValueError(f"invalid parameter map entry {data}: {err}")

    def as_json(self):
        return {
            "fhir": self.name, "model": self.path,
            "type": self.kind.value, "desc": self.description}


class ParameterMap:
    """Immutable per-kind name to native path table"""

    def __init__(self, tables):
        self._tables = MappingProxyType({
            kind: MappingProxyType(dict(table)) for kind, table in tables.items()})

    def lookup(self, kind, name):
        """Return the mapping for ``name`` on ``kind``, falling back to the default table

        :returns: ``ParameterMapping`` or None when neither table knows the name
        """
        specific = self._tables.get(kind)
        if specific is not None and name in specific:
            return specific[name]
        default = self._tables.get(None)
        if default is not None:
            return default.get(name)
        return None

    def parameters(self, kind):
        """All mappings visible to ``kind``; kind specific entries shadow defaults"""
        merged = dict(self._tables.get(None, {}))
        merged.update(self._tables.get(kind, {}))
        return list(merged.values())

    def kinds(self):
        return sorted(k for k in self._tables if k is not None)

    def as_json(self):
        types = []
        for kind, table in self._tables.items():
            entry = {"map": [m.as_json() for m in table.values()]}
            if kind is not None:
                entry["resource"] = kind
            types.append(entry)
        return {"types": types}


class ParameterMapBuilder:
    """Mutable staging area; ``build`` freezes the result"""

    def __init__(self):
        self._tables = {}

    def add(self, kind, name, path, parameter_kind=ParameterKind.NONE, description=""):
        """Add or replace a single parameter; one native path per name and kind"""
        self._tables.setdefault(kind, {})[name] = ParameterMapping(
            name=name, path=path, kind=ParameterKind(parameter_kind),
            description=description)
        return self

    def remove(self, kind, name):
        self._tables.get(kind, {}).pop(name, None)
        return self

    def merge(self, document):
        """Merge a map document on top of the current tables

        Entries sharing a name with an existing entry of the same kind replace
        it; everything else is added.
        """
        for type_entry in document.get("types", []):
            kind = type_entry.get("resource")
            table = self._tables.setdefault(kind, {})
            for item in type_entry.get("map", []):
                mapping = ParameterMapping.from_json(item)
                table[mapping.name] = mapping
        return self

    def merge_file(self, path):
        logger.debug("merging parameter map %s", path)
        with open(path) as fp:
            return self.merge(json.load(fp))

    def build(self):
        return ParameterMap(self._tables)


def load_parameter_map(overrides=()):
    """Build the process parameter map: built-in table, then each override in order"""
    builder = ParameterMapBuilder().merge_file(BUILTIN_MAP)
    for path in overrides:
        if not os.path.exists(path):
            logger.warning("parameter map override %s not found; skipping", path)
            continue
        builder.merge_file(path)
    return builder.build()


class ParameterMapProvider:
    """Loads the parameter map lazily, exactly once"""

    def __init__(self, overrides=()):
        self._overrides = tuple(overrides)
        self._map = None
        self._lock = threading.Lock()

    def get(self):
        if self._map is None:
            with self._lock:
                if self._map is None:
                    self._map = load_parameter_map(self._overrides)
        return self._map
