"""Rewrite protocol search parameters into a native predicate

``rewrite_query`` is a pure function of its inputs plus the resolver
collaborators.  Parameters unknown to both the kind's table and the default
table are dropped without error so newer clients keep working against older
maps.
"""
import logging
from urllib.parse import parse_qsl
import uuid

from fhir_adapter.constants import CONTROL_PARAMETERS, INCLUDE_PARAMETERS
from fhir_adapter.exceptions import InvalidArgument
from fhir_adapter.parameter_map import ParameterKind
from fhir_adapter.predicate import Operator, PREFIXES, Term, all_of, any_of
from fhir_adapter.query import (
    IncludeInstruction,
    QueryState,
    normalize_parameters,
    split_values,
)

DEFAULT_COUNT = 100

logger = logging.getLogger(__name__)


def _first(parameters, key):
    for name, values in parameters:
        if name == key and values:
            return values[0]
    return None


def _parse_int(parameters, key, default):
    value = _first(parameters, key)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise InvalidArgument(f"{key} must be an integer, not {value!r}")
    if parsed < 0:
        raise InvalidArgument(f"{key} must not be negative, not {value!r}")
    return parsed


def _is_uri(system):
    return ":" in system


class QueryRewriter:
    """Compiles search parameters for one resource kind

    :param parameter_map: the frozen ``ParameterMap``
    :param authority_resolver: resolves identifier systems to authorities
    :param concept_resolver: resolves codes (and unit codes) to concepts
    :param default_count: page size used when ``_count`` is absent
    """

    def __init__(self, parameter_map, authority_resolver, concept_resolver,
                 default_count=DEFAULT_COUNT):
        self.parameter_map = parameter_map
        self.authority_resolver = authority_resolver
        self.concept_resolver = concept_resolver
        self.default_count = default_count

    def rewrite(self, kind, parameters):
        """Produce ``(predicate, QueryState)`` for the given search parameters"""
        parameters = normalize_parameters(parameters)

        count = _parse_int(parameters, "_count", self.default_count)
        offset = _parse_int(parameters, "_offset", 0)
        page = _parse_int(parameters, "_page", None)
        if page is not None:
            offset = page * count

        state = QueryState(
            offset=offset,
            quantity=count,
            state_id=_first(parameters, "_stateid") or str(uuid.uuid4()))

        clauses = []
        for key, values in parameters:
            if key in INCLUDE_PARAMETERS:
                self._parse_includes(key, values, state)
                continue
            if key in CONTROL_PARAMETERS:
                continue

            name, _, modifier = key.partition(":")
            mapping = self.parameter_map.lookup(kind, name)
            if mapping is None:
                logger.debug("dropping unmapped search parameter %s on %s", key, kind)
                continue

            alternatives = []
            for raw in split_values(values):
                if not raw:
                    continue
                operator, operand, echo = self.parse_value(mapping, modifier, raw)
                state.actual_parameters.append((key, echo))
                if mapping.kind is ParameterKind.INDICATOR and alternatives:
                    continue
                alternatives.append(self.emit(mapping, operator, operand))

            if alternatives:
                clauses.append(any_of(alternatives))

        return all_of(*clauses), state

    def _parse_includes(self, key, values, state):
        target = state.includes if key == "_include" else state.reverse_includes
        for raw in split_values(values):
            if not raw:
                continue
            target.append(IncludeInstruction.parse(raw))
            state.actual_parameters.append((key, raw))

    def parse_value(self, mapping, modifier, raw):
        """Split a raw value into operator, operand and the echo for links

        Bare prefixes (``ge2020``) are honoured on ordered kinds; coded kinds
        take a prefix only with a dash separator (``ne-active``) so codes such
        as ``gender`` survive intact.  An ``eq`` prefix is dropped from the
        echo, any other prefix is kept so links reproduce the same filter.
        """
        if modifier == "missing":
            operator = Operator.NOT_NULL if raw.lower() == "false" else Operator.IS_NULL
            return operator, None, raw

        operator = Operator.EQUAL
        operand = raw
        prefix = raw[:2]
        if prefix in PREFIXES and len(raw) > 2:
            if mapping.kind.ordered:
                operator, operand = PREFIXES[prefix], raw[2:]
            elif mapping.kind.coded and raw[2] == "-" and len(raw) > 3:
                operator, operand = PREFIXES[prefix], raw[3:]

        echo = operand if operator is Operator.EQUAL else raw
        if modifier == "contains":
            operator = Operator.LIKE
        return operator, operand, echo

    def emit(self, mapping, operator, operand):
        """Dispatch on the parameter kind, returning one predicate node"""
        path = mapping.path
        if operator.unary:
            return Term(path, operator)

        kind = mapping.kind
        if kind is ParameterKind.IDENTIFIER:
            return self._identifier(path, operator, operand)
        if kind is ParameterKind.CONCEPT:
            return self._concept(path, operator, operand)
        if kind is ParameterKind.TOKEN:
            return self._token(path, operator, operand)
        if kind is ParameterKind.REFERENCE:
            return _term(path, operator, operand.rstrip("/").split("/")[-1])
        if kind is ParameterKind.TAG:
            if "|" in operand:
                system, value = operand.split("|", 1)
                return _term(f"{path}[{system}].value", operator, value)
            return _term(path, operator, operand)
        if kind is ParameterKind.QUANTITY:
            return self._quantity(path, operator, operand)
        if kind is ParameterKind.INDICATOR:
            return all_of(*(Term(k, Operator.EQUAL, v) for k, v in parse_qsl(path)))
        return _term(path, operator, operand)

    def _identifier(self, path, operator, operand):
        if "|" not in operand:
            return _term(f"{path}.value", operator, operand)

        system, code = operand.split("|", 1)
        domain = self.authority_resolver.resolve(system) if system else None
        if domain is None:
            if system and not _is_uri(system):
                return _term(f"{path}[{system}].value", operator, code)
            raise InvalidArgument(f"No authority for {system} found")

        logger.debug("translated identifier system %s to %s", system, domain.name)
        if code:
            return _term(f"{path}[{domain.name}].value", operator, code)
        return Term(f"{path}.domain", Operator.EQUAL, domain.key or domain.name)

    def _concept(self, path, operator, operand):
        if "|" not in operand:
            return _term(f"{path}.mnemonic", operator, operand)

        system, code = operand.split("|", 1)
        concept = self.concept_resolver.resolve(code, system or None)
        if concept is not None and concept.code_system:
            logger.debug("translated code system %s to %s", system, concept.code_system)
            return _term(f"{path}[{concept.code_system}].mnemonic", operator, code)
        return _term(f"{path}.mnemonic", operator, code)

    def _token(self, path, operator, operand):
        system, code = operand.split("|", 1) if "|" in operand else (None, operand)
        concept = self.concept_resolver.resolve(code, system or None)
        if concept is None:
            logger.debug("no concept for token %s; matching literal value", operand)
            return _term(path, operator, code)
        return _term(path, operator, concept.key)

    def _quantity(self, path, operator, operand):
        prefix = "" if path == "value" else f"{path}."
        if "|" not in operand:
            return _term(f"{prefix}value", operator, operand)

        segments = operand.split("|")
        if len(segments) != 3:
            raise InvalidArgument(f"{operand} is not in the format value|system|code")
        value, system, code = segments
        unit = self.concept_resolver.resolve(code, system or None)
        if unit is None:
            raise InvalidArgument(f"No concept for {operand} found")
        return all_of(
            Term(f"{prefix}unit_of_measure", Operator.EQUAL, unit.key),
            _term(f"{prefix}value", operator, value))


def _term(path, operator, value):
    if operator is Operator.LIKE:
        value = f"*{value}*"
    return Term(path, operator, value)
