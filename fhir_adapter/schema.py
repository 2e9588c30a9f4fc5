"""Declarative native model schema and search parameter type inference

Each native model type is described once at startup as a table of property
name to type name.  A type name ending in ``[]`` is a collection of that
element type.  Primitive type names are listed in ``PRIMITIVE_SEARCH_TYPES``.

Type inference is used only when describing capabilities; query execution
never consults the schema.
"""
import logging
import re
from types import MappingProxyType

from fhir_adapter.parameter_map import ParameterKind

logger = logging.getLogger(__name__)

PRIMITIVE_SEARCH_TYPES = {
    "string": "string",
    "uri": "uri",
    "int": "number",
    "float": "number",
    "decimal": "number",
    "date": "date",
    "datetime": "date",
}

# parameters every searchable kind accepts
DEFAULT_SEARCH_PARAMETERS = (
    ("_count", "number"),
    ("_lastUpdated", "date"),
    ("_format", "token"),
    ("_offset", "number"),
    ("_page", "number"),
    ("_stateid", "token"),
    ("_id", "token"),
    ("_pretty", "token"),
    ("_summary", "token"),
    ("_total", "token"),
)

# property, optional [classifier], optional @Cast
_SEGMENT = re.compile(r"(?P<name>[A-Za-z_]\w*)(?:\[[^\]]*\])?(?:@(?P<cast>\w+))?")


def path_segments(path):
    """Split a native path into ``(property, cast)`` pairs, respecting brackets"""
    return [(m.group("name"), m.group("cast")) for m in _SEGMENT.finditer(path)]


class ModelSchema:
    """Immutable table of native model types"""

    def __init__(self, types):
        self._types = MappingProxyType({
            name: MappingProxyType(dict(props)) for name, props in types.items()})

    def __contains__(self, type_name):
        return type_name in self._types

    def properties(self, type_name):
        return self._types.get(type_name, {})

    def resolve_path(self, model_type, path):
        """Walk ``path`` from ``model_type`` to its terminal type name

        Collections are de-referenced to their element type and ``@Type``
        segments switch the scope to the cast type.  An unknown property ends
        the walk at the current scope.
        """
        scope = model_type
        for name, cast in path_segments(path):
            if cast:
                scope = cast
                continue
            prop_type = self.properties(scope).get(name)
            if prop_type is None:
                return scope
            scope = prop_type[:-2] if prop_type.endswith("[]") else prop_type
        return scope

    def infer_search_type(self, model_type, mapping):
        """Map a parameter mapping to its declared search parameter type"""
        if mapping.kind in (
                ParameterKind.CONCEPT, ParameterKind.IDENTIFIER,
                ParameterKind.TOKEN, ParameterKind.INDICATOR):
            return "token"
        if mapping.kind is ParameterKind.REFERENCE:
            return "reference"
        if model_type not in self:
            return "string"
        terminal = self.resolve_path(model_type, mapping.path)
        return PRIMITIVE_SEARCH_TYPES.get(terminal, "composite")


def search_parameters(parameter_map, schema, kind, model_type):
    """Capability description of every search parameter ``kind`` accepts"""
    described = [{
        "name": mapping.name,
        "type": schema.infer_search_type(model_type, mapping),
        "documentation": mapping.description,
        "definition": f"/SearchParameter/{kind}-{mapping.name}",
    } for mapping in parameter_map.parameters(kind)]

    known = {p["name"] for p in described}
    described.extend(
        {"name": name, "type": search_type}
        for name, search_type in DEFAULT_SEARCH_PARAMETERS if name not in known)
    return described
