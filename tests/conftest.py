from copy import deepcopy
from datetime import datetime, timezone
import uuid

from pytest import fixture

from fhir_adapter.bundle import BundleAssembler
from fhir_adapter.context import RequestContext
from fhir_adapter.engine import InteractionEngine
from fhir_adapter.handlers.base import Repository, ResourceHandler, read_path
from fhir_adapter.handlers.organization import OrganizationMapper
from fhir_adapter.handlers.patient import PatientMapper
from fhir_adapter.model import SCHEMA
from fhir_adapter.parameter_map import load_parameter_map
from fhir_adapter.predicate import AllOf, AnyOf, Operator
from fhir_adapter.registry import HandlerRegistry, ResourceTypeDescriptor
from fhir_adapter.resolvers import StaticAuthorityResolver, StaticConceptResolver
from fhir_adapter.rewriter import QueryRewriter

MRN_AUTHORITY = {
    "name": "acme.org/mrn",
    "key": "5b6ad3a3-0ba4-4f2b-a2c4-7a9e1c0d2b11",
    "url": "http://acme.org/mrn",
    "oid": "1.3.6.1.4.1.33349.3.1.5.9.2.10",
}
ACTIVE_KEY = "active"
KILOGRAM_KEY = "a0b5c1a2-9d55-4b7e-b2a4-6b1f6f0e6c91"


def matches(predicate, model):
    """Minimal evaluator for the predicate trees the rewriter produces"""
    if isinstance(predicate, AllOf):
        return all(matches(p, model) for p in predicate.operands)
    if isinstance(predicate, AnyOf):
        return any(matches(p, model) for p in predicate.operands)

    values = read_path(model, predicate.path)
    if predicate.operator is Operator.IS_NULL:
        return not values
    if predicate.operator is Operator.NOT_NULL:
        return bool(values)
    if predicate.operator is Operator.LIKE:
        needle = str(predicate.value).strip("*").lower()
        return any(needle in str(v).lower() for v in values)
    if predicate.operator is Operator.NOT_EQUAL:
        return all(str(v) != str(predicate.value) for v in values)
    return any(str(v) == str(predicate.value) for v in values)


class FakeRepository(Repository):
    """In memory version chains; remembers every query it was asked to run"""

    def __init__(self, **kwargs):
        self.options = kwargs
        self.chains = {}
        self.queries = []

    def _store(self, model, previous):
        stored = deepcopy(model)
        stored.version_key = uuid.uuid4()
        stored.previous_version_key = previous.version_key if previous else None
        stored.version_sequence = previous.version_sequence + 1 if previous else 1
        self.chains.setdefault(stored.key, []).append(stored)
        return deepcopy(stored)

    def insert(self, model, context):
        if model.key is None:
            model.key = uuid.uuid4()
        return self._store(model, None)

    def get(self, key, version_key=None, context=None):
        chain = self.chains.get(key)
        if not chain:
            return None
        if version_key is None:
            return deepcopy(chain[-1])
        for model in chain:
            if model.version_key == version_key:
                return deepcopy(model)
        return None

    def save(self, model, context):
        chain = self.chains.get(model.key)
        previous = chain[-1] if chain else None
        if previous is not None:
            model.creation_time = previous.creation_time
            model.created_by = previous.created_by
        return self._store(model, previous)

    def obsolete(self, key, context):
        current = self.get(key)
        if current is None:
            return None
        current.obsoletion_time = datetime.now(timezone.utc)
        return self._store(current, self.chains[key][-1])

    def find(self, predicate, offset, count, state_id=None, context=None):
        self.queries.append((predicate, offset, count, state_id))
        found = [chain[-1] for chain in self.chains.values() if matches(predicate, chain[-1])]
        return [deepcopy(m) for m in found[offset:offset + count]], len(found)


@fixture
def context():
    return RequestContext(principal="clinician@example.org")


@fixture
def authority_resolver():
    return StaticAuthorityResolver([MRN_AUTHORITY])


@fixture
def concept_resolver():
    return StaticConceptResolver(
        code_systems=[
            {"name": "StatusCodes", "url": "http://hl7.org/fhir/status"},
            {"name": "UnitOfMeasure", "url": "http://unitsofmeasure.org"},
            {"name": "AdministrativeGender", "url": "http://hl7.org/fhir/administrative-gender"},
        ],
        concepts=[
            {"key": ACTIVE_KEY, "mnemonic": "active", "code_system": "StatusCodes"},
            {"key": KILOGRAM_KEY, "mnemonic": "kg", "code_system": "UnitOfMeasure"},
            {"key": "f4e3a6e3-6c14-4a5e-8e6b-1df3b3b1e0a1", "mnemonic": "female",
             "code_system": "AdministrativeGender"},
        ])


@fixture
def parameter_map():
    return load_parameter_map()


@fixture
def rewriter(parameter_map, authority_resolver, concept_resolver):
    return QueryRewriter(parameter_map, authority_resolver, concept_resolver)


def sample_handlers():
    return (
        ResourceHandler(
            ResourceTypeDescriptor(kind="Patient", model_type="Person"),
            PatientMapper(), FakeRepository()),
        ResourceHandler(
            ResourceTypeDescriptor(kind="Organization", model_type="Organization"),
            OrganizationMapper(), FakeRepository()),
    )


@fixture
def registry():
    registry = HandlerRegistry()
    for handler in sample_handlers():
        registry.register(handler.kind, handler)
    return registry


@fixture
def engine(registry, rewriter):
    return InteractionEngine(
        registry=registry,
        rewriter=rewriter,
        assembler=BundleAssembler("http://fhir.example.org/fhir"),
        schema=SCHEMA)


@fixture
def patient_body():
    return {
        "resourceType": "Patient",
        "identifier": [{"system": "http://acme.org/mrn", "value": "998877"}],
        "name": [{"family": "Smith", "given": ["Jane"]}],
        "gender": "female",
        "birthDate": "1980-04-12",
    }


@fixture
def app():
    from fhir_adapter.app import create_app
    app = create_app(testing=True)
    registry = app.extensions['fhir_adapter'].registry
    for handler in sample_handlers():
        registry.register(handler.kind, handler)
    return app


@fixture
def client(app):
    with app.test_client() as c:
        yield c
