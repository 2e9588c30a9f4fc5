"""Resource handler registry

Binds each resource kind to the handler serving it.  Registration happens at
startup from independent initializers; lookups happen on every request.  The
binding table is replaced wholesale on each write so readers always see a
complete snapshot without taking the lock.
"""
from dataclasses import dataclass, field
import logging
import threading
import uuid

from fhir_adapter.constants import Interaction, RESOURCE_TYPES
from fhir_adapter.exceptions import (
    DuplicateRegistration,
    InvalidArgument,
    NotSupported,
)

logger = logging.getLogger(__name__)

_KINDS_BY_LOWER = {k.lower(): k for k in RESOURCE_TYPES}


def parse_uuid(literal):
    """Default native key parser"""
    try:
        return uuid.UUID(str(literal))
    except ValueError:
        raise InvalidArgument(f"{literal} is not a valid identifier")


@dataclass(frozen=True)
class ResourceTypeDescriptor:
    """Immutable description of one served resource kind

    :param kind: external resource type name, e.g. ``Patient``
    :param model_type: name of the native model type in the model schema
    :param external_type: ``resourceType`` value bodies must declare
    :param interactions: supported ``Interaction`` members
    :param versioned: True when native records chain to previous versions
    :param parse_key: callable turning an id literal into a native key
    """
    kind: str
    model_type: str
    external_type: str = None
    interactions: frozenset = field(default_factory=lambda: frozenset(Interaction))
    versioned: bool = True
    parse_key: object = parse_uuid

    def __post_init__(self):
        if self.external_type is None:
            object.__setattr__(self, "external_type", self.kind)
        object.__setattr__(self, "interactions", frozenset(self.interactions))

    def supports(self, interaction):
        return interaction in self.interactions


class HandlerRegistry:
    """Kind to handler bindings, copy on write"""

    def __init__(self):
        self._handlers = {}
        self._lock = threading.RLock()

    def register(self, kind, handler):
        with self._lock:
            if kind in self._handlers:
                raise DuplicateRegistration(f"a handler for {kind} is already registered")
            handlers = dict(self._handlers)
            handlers[kind] = handler
            self._handlers = handlers
        logger.debug("registered handler %s for %s", type(handler).__name__, kind)

    def unregister(self, kind):
        """Remove the binding for ``kind``; returns the removed handler or None"""
        with self._lock:
            handlers = dict(self._handlers)
            removed = handlers.pop(kind, None)
            self._handlers = handlers
        if removed is not None:
            logger.debug("unregistered handler for %s", kind)
        return removed

    def resolve(self, kind):
        handler = self._handlers.get(kind)
        if handler is None:
            raise NotSupported(f"resource type {kind} is not supported")
        return handler

    def resolve_by_name(self, literal):
        """Parse a resource type literal, case insensitively, into a known kind"""
        if not literal:
            raise InvalidArgument("missing resource type")
        kind = _KINDS_BY_LOWER.get(literal.lower())
        if kind is None:
            raise InvalidArgument(f"{literal} is not a resource type")
        return kind

    def list_all(self):
        """Snapshot of the current bindings"""
        return dict(self._handlers)

    def __contains__(self, kind):
        return kind in self._handlers
