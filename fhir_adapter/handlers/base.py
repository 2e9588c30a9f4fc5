"""Handler strategies

A ``ResourceHandler`` composes three pluggable pieces for one resource kind:
its ``ResourceTypeDescriptor``, a ``ResourceMapper`` translating between the
external representation and the native model, and a ``Repository`` doing the
storage work.  The interaction engine owns the lifecycle; handlers carry no
lifecycle logic of their own.

NB handler instances are shared by every request thread.  Keep per request
state in the ``RequestContext`` passed to each call, never on the instance.
"""
from abc import ABC

from fhir_adapter.predicate import Operator, Term


class ResourceMapper(ABC):
    """Abstract interface, implemented by each resource kind's field mapping"""

    def to_native(self, resource, context):
        """Translate an external resource into the native model

        :param resource: external representation, a JSON compatible dict
        :param context: the ``RequestContext`` of the calling request
        :raises ValidationError: when the resource cannot be represented natively
        :returns: native model instance
        """
        pass

    def to_external(self, model, context):
        """Translate a native model into its external representation

        :param model: native model instance as returned by the repository
        :param context: the ``RequestContext`` captured by the caller; mapping
            may run on a worker thread so this is the only identity available
        :returns: external resource as a JSON compatible dict
        """
        pass


class Repository(ABC):
    """Abstract interface, implemented by each native storage binding"""

    def insert(self, model, context):
        """Persist a new record and return the stored model"""
        pass

    def get(self, key, version_key=None, context=None):
        """Fetch a record, or a specific version of it

        :returns: native model or None when the key (or version) is unknown.
            Logically deleted records are returned with ``obsoletion_time`` set.
        """
        pass

    def save(self, model, context):
        """Persist a new version of an existing record and return it"""
        pass

    def obsolete(self, key, context):
        """Logically delete a record, returning its final state"""
        pass

    def find(self, predicate, offset, count, state_id=None, context=None):
        """Query the store

        :param predicate: native predicate tree, see ``fhir_adapter.predicate``
        :param offset: rows to skip
        :param count: maximum rows to return
        :param state_id: opaque continuation token, passed through unchanged
        :returns: ``(page, total)`` with ``page`` a list of native models
        """
        pass


def read_path(model, path):
    """Values found at a dotted attribute path on a native model

    Collections are flattened and None values dropped.
    """
    values = [model]
    for segment in path.split("."):
        found = []
        for value in values:
            attr = getattr(value, segment, None)
            if isinstance(attr, (list, tuple, set)):
                found.extend(attr)
            elif attr is not None:
                found.append(attr)
        values = found
    return values


class ResourceHandler:
    """Binds descriptor, mapper and repository for one resource kind

    :param descriptor: the kind's ``ResourceTypeDescriptor``
    :param mapper: a ``ResourceMapper``
    :param repository: a ``Repository``
    """

    def __init__(self, descriptor, mapper, repository):
        self.descriptor = descriptor
        self.mapper = mapper
        self.repository = repository

    @property
    def kind(self):
        return self.descriptor.kind

    def system_filters(self):
        """Filters ANDed with every caller predicate; hides deleted records"""
        return Term("obsoletion_time", Operator.IS_NULL)

    def parse_key(self, literal):
        return self.descriptor.parse_key(literal)

    def to_native(self, resource, context):
        return self.mapper.to_native(resource, context)

    def to_external(self, model, context):
        return self.mapper.to_external(model, context)

    def resource_id(self, model):
        return str(model.key)

    def previous_version(self, model, context):
        """The predecessor of ``model`` or None at the start of the chain"""
        previous_key = getattr(model, "previous_version_key", None)
        if previous_key is None:
            return None
        return self.repository.get(model.key, previous_key, context=context)

    def referenced_keys(self, model, path):
        """Foreign key values stored at ``path`` on ``model``"""
        return read_path(model, path)

    def __repr__(self):
        return f"<{type(self).__name__} {self.kind}>"
