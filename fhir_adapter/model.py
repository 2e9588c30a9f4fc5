"""Native model types shared by the bundled mappers

Repository collaborators may use any object exposing the same attribute
names; the engine relies only on ``key``, ``version_key``,
``previous_version_key``, ``obsoletion_time`` and the provenance fields.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import uuid

from fhir_adapter.schema import ModelSchema


@dataclass
class EntityIdentifier:
    domain: str
    value: str


@dataclass
class EntityName:
    family: Optional[str] = None
    given: List[str] = field(default_factory=list)
    use: Optional[str] = None

    @property
    def value(self):
        return " ".join(self.given + ([self.family] if self.family else []))


@dataclass
class Tag:
    key: str
    value: str


@dataclass
class IdentifiedData:
    key: Optional[uuid.UUID] = None
    version_key: Optional[uuid.UUID] = None
    previous_version_key: Optional[uuid.UUID] = None
    version_sequence: Optional[int] = None
    creation_time: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_time: Optional[datetime] = None
    updated_by: Optional[str] = None
    obsoletion_time: Optional[datetime] = None
    status_concept_key: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)


@dataclass
class Entity(IdentifiedData):
    identifiers: List[EntityIdentifier] = field(default_factory=list)
    names: List[EntityName] = field(default_factory=list)
    type_concept: Optional[str] = None


@dataclass
class Person(Entity):
    date_of_birth: Optional[str] = None
    gender_concept: Optional[str] = None
    deceased_date: Optional[str] = None
    managing_organization_key: Optional[uuid.UUID] = None


@dataclass
class Organization(Entity):
    parent_key: Optional[uuid.UUID] = None


_IDENTIFIED = {
    "key": "uuid",
    "version_key": "uuid",
    "previous_version_key": "uuid",
    "version_sequence": "int",
    "creation_time": "datetime",
    "created_by": "string",
    "updated_time": "datetime",
    "updated_by": "string",
    "obsoletion_time": "datetime",
    "status_concept_key": "uuid",
    "tags": "Tag[]",
}

_ENTITY = dict(_IDENTIFIED, **{
    "identifiers": "EntityIdentifier[]",
    "names": "EntityName[]",
    "type_concept": "Concept",
    "extensions": "Tag[]",
})

SCHEMA = ModelSchema({
    "EntityIdentifier": {"domain": "string", "value": "string"},
    "EntityName": {
        "family": "string", "given": "string[]", "use": "string", "value": "string"},
    "Tag": {"key": "string", "value": "string"},
    "Concept": {"mnemonic": "string", "key": "uuid"},
    "Entity": _ENTITY,
    "Person": dict(_ENTITY, **{
        "date_of_birth": "date",
        "gender_concept": "Concept",
        "deceased_date": "datetime",
        "managing_organization_key": "uuid",
    }),
    "Organization": dict(_ENTITY, parent_key="uuid"),
})
