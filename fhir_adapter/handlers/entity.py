"""Mapping helpers shared by the entity backed resource mappers

Incoming bodies are parsed with the ``fhirclient`` models, which enforce
element names and types; outgoing resources are assembled as plain dicts.
"""
import uuid

from fhirclient.models.fhirabstractbase import FHIRValidationError

from fhir_adapter.exceptions import ValidationError
from fhir_adapter.handlers.base import ResourceMapper
from fhir_adapter.model import EntityIdentifier, EntityName

# concept keys of the entity status concepts
ACTIVE = "active"
INACTIVE = "inactive"


def parse_model(model_class, resource):
    """Parse ``resource`` with the given fhirclient model, as ValidationError on failure"""
    try:
        return model_class(resource)
    except FHIRValidationError as err:
        raise ValidationError(
            f"invalid {model_class.resource_type}: {err}", errors=[str(e) for e in err.errors])


def native_key(literal):
    if literal is None:
        return None
    try:
        return uuid.UUID(literal)
    except ValueError:
        raise ValidationError(f"{literal} is not a valid resource id")


def reference_key(reference):
    """Native key of a ``Type/id`` reference element, or None"""
    if reference is None or not reference.reference:
        return None
    return native_key(reference.reference.rstrip("/").split("/")[-1])


def fhir_instant(value):
    if value is None:
        return None
    return value.isoformat()


class EntityMapper(ResourceMapper):
    """Common mapping of identifiers, names, status and meta"""

    resource_type = None

    def native_common(self, parsed):
        """Keyword arguments for the native model shared by all entities"""
        return dict(
            key=native_key(parsed.id),
            identifiers=[
                EntityIdentifier(domain=i.system, value=i.value)
                for i in parsed.identifier or ()],
            status_concept_key=INACTIVE if parsed.active is False else ACTIVE,
        )

    def native_names(self, names):
        return [
            EntityName(family=n.family, given=list(n.given or ()), use=n.use)
            for n in names or ()]

    def external_common(self, model):
        resource = {"resourceType": self.resource_type, "id": str(model.key)}
        meta = {}
        if model.version_key is not None:
            meta["versionId"] = str(model.version_key)
        if model.updated_time or model.creation_time:
            meta["lastUpdated"] = fhir_instant(model.updated_time or model.creation_time)
        if model.tags:
            meta["tag"] = [{"system": t.key, "code": t.value} for t in model.tags]
        if meta:
            resource["meta"] = meta

        if model.identifiers:
            resource["identifier"] = [
                {"system": i.domain, "value": i.value} for i in model.identifiers]
        if model.status_concept_key is not None:
            resource["active"] = model.status_concept_key == ACTIVE
        return resource

    def external_names(self, names):
        external = []
        for name in names:
            entry = {}
            if name.use:
                entry["use"] = name.use
            if name.family:
                entry["family"] = name.family
            if name.given:
                entry["given"] = list(name.given)
            external.append(entry)
        return external
