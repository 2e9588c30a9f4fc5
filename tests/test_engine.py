from concurrent.futures import ThreadPoolExecutor
import threading
import uuid

import pytest

from fhir_adapter.bundle import BundleAssembler, parse_link
from fhir_adapter.constants import Interaction
from fhir_adapter.context import RequestContext
from fhir_adapter.engine import InteractionEngine
from fhir_adapter.exceptions import (
    AmbiguousReference,
    Conflict,
    Gone,
    InvalidArgument,
    NotFound,
    NotSupported,
    ValidationError,
)
from fhir_adapter.handlers.base import ResourceHandler, ResourceMapper
from fhir_adapter.handlers.patient import PatientMapper
from fhir_adapter.hooks import BehaviorModifier, HookChain
from fhir_adapter.predicate import AllOf, Operator, Term
from fhir_adapter.registry import HandlerRegistry, ResourceTypeDescriptor

from tests.conftest import FakeRepository


def repository_of(engine, kind):
    return engine.registry.resolve(kind).repository


def test_create_and_read(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    assert created["resourceType"] == "Patient"
    assert created["meta"]["versionId"]

    read = engine.read("Patient", created["id"], context=context)
    assert read["name"] == [{"family": "Smith", "given": ["Jane"]}]
    assert read["identifier"] == [{"system": "http://acme.org/mrn", "value": "998877"}]
    assert read["birthDate"] == "1980-04-12"


def test_create_stamps_provenance(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    stored = repository_of(engine, "Patient").get(uuid.UUID(created["id"]))
    assert stored.created_by == "clinician@example.org"
    assert stored.updated_by == "clinician@example.org"
    assert stored.creation_time is not None


def test_create_wrong_resource_type(engine, patient_body, context):
    patient_body["resourceType"] = "Organization"
    with pytest.raises(InvalidArgument):
        engine.create("Patient", patient_body, context)


def test_create_missing_body(engine, context):
    with pytest.raises(InvalidArgument):
        engine.create("Patient", None, context)


def test_create_invalid_body(engine, context):
    with pytest.raises(ValidationError):
        engine.create("Patient", {"resourceType": "Patient", "gender": 7}, context)


def test_unregistered_kind(engine, context):
    with pytest.raises(NotSupported):
        engine.read("Practitioner", str(uuid.uuid4()), context=context)


def test_unsupported_interaction(rewriter, context):
    registry = HandlerRegistry()
    registry.register("Patient", ResourceHandler(
        ResourceTypeDescriptor(
            kind="Patient", model_type="Person", interactions=[Interaction.READ]),
        None, FakeRepository()))
    engine = InteractionEngine(registry, rewriter, BundleAssembler())
    with pytest.raises(NotSupported):
        engine.delete("Patient", str(uuid.uuid4()), context)


def test_read_malformed_id(engine, context):
    with pytest.raises(InvalidArgument):
        engine.read("Patient", "12-not-a-key", context=context)


def test_read_unknown_id(engine, context):
    with pytest.raises(NotFound):
        engine.read("Patient", str(uuid.uuid4()), context=context)


def test_deleted_record_gone_unless_versioned(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    deleted = engine.delete("Patient", created["id"], context)
    assert deleted["id"] == created["id"]

    with pytest.raises(Gone) as err:
        engine.read("Patient", created["id"], context=context)
    assert err.value.deletion_time is not None

    stale = engine.read(
        "Patient", created["id"], created["meta"]["versionId"], context=context)
    assert stale["meta"]["versionId"] == created["meta"]["versionId"]
    assert stale["name"][0]["family"] == "Smith"


def test_delete_unknown(engine, context):
    with pytest.raises(NotFound):
        engine.delete("Patient", str(uuid.uuid4()), context)


def test_update_assigns_path_id(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    patient_body["name"][0]["family"] = "Jones"

    updated = engine.update("Patient", created["id"], patient_body, context)

    assert updated["id"] == created["id"]
    assert updated["name"][0]["family"] == "Jones"
    assert updated["meta"]["versionId"] != created["meta"]["versionId"]


def test_update_conflicting_body_id(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    patient_body["id"] = str(uuid.uuid4())
    with pytest.raises(Conflict):
        engine.update("Patient", created["id"], patient_body, context)


def test_history_newest_first(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    versions = [created["meta"]["versionId"]]
    for family in ("Jones", "Brown"):
        patient_body["name"][0]["family"] = family
        versions.append(
            engine.update("Patient", created["id"], patient_body, context)["meta"]["versionId"])

    bundle = engine.history("Patient", created["id"], context)

    assert bundle["type"] == "history"
    assert [e["resource"]["meta"]["versionId"] for e in bundle["entry"]] == versions[::-1]
    assert [e["resource"]["name"][0]["family"] for e in bundle["entry"]] == [
        "Brown", "Jones", "Smith"]


def test_history_of_deleted_record(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    engine.delete("Patient", created["id"], context)
    bundle = engine.history("Patient", created["id"], context)
    assert bundle["total"] == 2


def test_search_ands_system_filter(engine, patient_body, context):
    engine.create("Patient", patient_body, context)
    engine.search("Patient", {"family": "Smith"}, context)

    predicate, offset, count, state_id = repository_of(engine, "Patient").queries[-1]
    assert predicate == AllOf((
        Term("obsoletion_time", Operator.IS_NULL),
        Term("names.family", Operator.EQUAL, "Smith")))
    assert (offset, count) == (0, 100)
    assert state_id


def test_search_hides_deleted(engine, patient_body, context):
    kept = engine.create("Patient", patient_body, context)
    dropped = engine.create("Patient", patient_body, context)
    engine.delete("Patient", dropped["id"], context)

    bundle = engine.search("Patient", {"name:contains": "smi"}, context)

    assert bundle["total"] == 1
    assert [e["resource"]["id"] for e in bundle["entry"]] == [kept["id"]]


def test_search_pages(engine, patient_body, context):
    for _ in range(5):
        engine.create("Patient", patient_body, context)

    bundle = engine.search("Patient", {"family": "Smith", "_count": "2", "_page": "1"}, context)

    assert bundle["total"] == 5
    assert len(bundle["entry"]) == 2
    relations = [link["relation"] for link in bundle["link"]]
    assert relations == ["self", "first", "previous", "next", "last"]



def test_search_link_reproduces_unaligned_offset(engine, patient_body, context):
    for _ in range(30):
        engine.create("Patient", patient_body, context)

    bundle = engine.search(
        "Patient", {"family": "Smith", "_offset": "15", "_count": "10"}, context)

    links = {link["relation"]: link["url"] for link in bundle["link"]}
    _, parameters = parse_link(links["self"])
    assert ("_offset", "15") in parameters
    _, state = engine.rewriter.rewrite("Patient", parameters)
    assert (state.offset, state.quantity) == (15, 10)

    _, state = engine.rewriter.rewrite("Patient", parse_link(links["next"])[1])
    assert state.offset == 25
    _, state = engine.rewriter.rewrite("Patient", parse_link(links["previous"])[1])
    assert state.offset == 5

def test_search_includes_referenced(engine, patient_body, context):
    organization = engine.create(
        "Organization", {"resourceType": "Organization", "name": "Acme Clinic"}, context)
    patient_body["managingOrganization"] = {"reference": f"Organization/{organization['id']}"}
    patient = engine.create("Patient", patient_body, context)

    bundle = engine.search(
        "Patient", {"_id": patient["id"], "_include": "Organization:organization"}, context)

    modes = [(e["resource"]["resourceType"], e["search"]["mode"]) for e in bundle["entry"]]
    assert modes == [("Patient", "match"), ("Organization", "include")]


def test_search_reverse_includes(engine, patient_body, context):
    organization = engine.create(
        "Organization", {"resourceType": "Organization", "name": "Acme Clinic"}, context)
    patient_body["managingOrganization"] = {"reference": f"Organization/{organization['id']}"}
    patient = engine.create("Patient", patient_body, context)

    bundle = engine.search(
        "Organization", {"_id": organization["id"], "_revinclude": "Patient:organization"},
        context)

    included = [e["resource"]["id"] for e in bundle["entry"] if e["search"]["mode"] == "include"]
    assert included == [patient["id"]]


class RecordingMapper(ResourceMapper):
    """Captures the context and thread each mapping ran with"""

    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()

    def to_native(self, resource, context):
        pass

    def to_external(self, model, context):
        with self.lock:
            self.calls.append((model.key, context, threading.current_thread().name))
        return {"resourceType": "Patient", "id": str(model.key)}


def test_parallel_mapping_carries_context(rewriter, patient_body):
    repository = FakeRepository()
    for _ in range(12):
        repository.insert(PatientMapper().to_native(patient_body, None), None)

    mapper = RecordingMapper()
    registry = HandlerRegistry()
    registry.register("Patient", ResourceHandler(
        ResourceTypeDescriptor(kind="Patient", model_type="Person"), mapper, repository))

    caller = RequestContext(principal="nurse@example.org")
    with ThreadPoolExecutor(max_workers=4, thread_name_prefix="mapper") as executor:
        engine = InteractionEngine(registry, rewriter, BundleAssembler(), executor=executor)
        bundle = engine.search("Patient", {}, caller)

    assert len(bundle["entry"]) == 12
    assert [e["resource"]["id"] for e in bundle["entry"]] == [
        str(key) for key in repository.chains]
    assert all(context is caller for _, context, _ in mapper.calls)
    assert any(thread.startswith("mapper") for _, _, thread in mapper.calls)


class UppercaseFamily(BehaviorModifier):
    def can_apply(self, interaction, resource):
        return interaction is Interaction.CREATE

    def after_receive_request(self, interaction, kind, resource, context):
        for name in resource.get("name", []):
            name["family"] = name["family"].upper()
        return resource

    def before_send_response(self, interaction, kind, resource, context):
        resource.setdefault("meta", {})["source"] = context.principal
        return resource


def test_hooks_wrap_interaction(registry, rewriter, patient_body, context):
    engine = InteractionEngine(
        registry, rewriter, BundleAssembler(), hooks=HookChain([UppercaseFamily()]))

    created = engine.create("Patient", patient_body, context)
    assert created["name"][0]["family"] == "SMITH"
    assert created["meta"]["source"] == "clinician@example.org"

    read = engine.read("Patient", created["id"], context=context)
    assert "source" not in read["meta"]


def test_fault_audited_and_reraised(engine, context, mocker):
    audit = mocker.patch("fhir_adapter.engine.audit_interaction")
    with pytest.raises(NotFound):
        engine.read("Patient", str(uuid.uuid4()), context=context)
    audit.assert_called_once()
    assert audit.call_args.kwargs["outcome"] == "minor-failure"


def test_success_audited(engine, patient_body, context, mocker):
    audit = mocker.patch("fhir_adapter.engine.audit_interaction")
    created = engine.create("Patient", patient_body, context)
    audit.assert_called_once_with(
        Interaction.CREATE, "Patient", context, [created["id"]], query=None)


def test_repository_fault_propagates(engine, patient_body, context, mocker):
    mocker.patch.object(
        repository_of(engine, "Patient"), "insert", side_effect=RuntimeError("disk full"))
    with pytest.raises(RuntimeError, match="disk full"):
        engine.create("Patient", patient_body, context)


def test_validate_does_not_persist(engine, patient_body, context):
    outcome = engine.validate("Patient", patient_body, context)
    assert outcome["resourceType"] == "OperationOutcome"
    assert outcome["issue"][0]["severity"] == "information"
    assert repository_of(engine, "Patient").chains == {}


def test_conditional_update_creates_then_updates(engine, patient_body, context):
    criteria = {"identifier": "998877"}
    created, was_created = engine.conditional_update("Patient", criteria, patient_body, context)
    assert was_created

    patient_body["gender"] = "male"
    updated, was_created = engine.conditional_update("Patient", criteria, patient_body, context)
    assert not was_created
    assert updated["id"] == created["id"]
    assert updated["gender"] == "male"



def test_conditional_update_include_only_rejected(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    other = dict(patient_body, name=[{"family": "Overwritten"}])

    with pytest.raises(InvalidArgument):
        engine.conditional_update(
            "Patient", {"_include": "Organization:organization"}, other, context)

    assert engine.read("Patient", created["id"], context=context)["name"][0]["family"] == "Smith"

def test_conditional_update_ambiguous(engine, patient_body, context):
    engine.create("Patient", patient_body, context)
    engine.create("Patient", patient_body, context)
    with pytest.raises(AmbiguousReference):
        engine.conditional_update("Patient", {"family": "Smith"}, patient_body, context)


def test_resolve_reference(engine, patient_body, context):
    created = engine.create("Patient", patient_body, context)
    assert engine.resolve_reference(f"Patient/{created['id']}", context)["id"] == created["id"]
    found = engine.resolve_reference("Patient?identifier=998877", context)
    assert found["id"] == created["id"]

    engine.create("Patient", patient_body, context)
    with pytest.raises(AmbiguousReference):
        engine.resolve_reference("Patient?family=Smith", context)
    with pytest.raises(NotFound):
        engine.resolve_reference("Patient?family=Nobody", context)


def test_transaction(engine, patient_body, context):
    bundle = {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [
            {"request": {"method": "POST", "url": "Organization"},
             "resource": {"resourceType": "Organization", "name": "Acme Clinic"}},
            {"request": {"method": "POST", "url": "Patient"}, "resource": patient_body},
            {"request": {"method": "GET", "url": "Patient?family=Smith"}},
        ]}

    response = engine.transaction(bundle, context)

    assert response["type"] == "transaction-response"
    statuses = [e["response"]["status"] for e in response["entry"]]
    assert statuses == ["201 Created", "201 Created", "200 OK"]
    assert response["entry"][1]["response"]["location"].startswith("Patient/")
    assert response["entry"][2]["resource"]["total"] == 1


def test_transaction_stops_at_failure(engine, context):
    bundle = {"resourceType": "Bundle", "type": "transaction", "entry": [
        {"request": {"method": "GET", "url": f"Patient/{uuid.uuid4()}"}}]}
    with pytest.raises(NotFound):
        engine.transaction(bundle, context)


def test_batch_reports_failures(engine, context):
    bundle = {"resourceType": "Bundle", "type": "batch", "entry": [
        {"request": {"method": "GET", "url": f"Patient/{uuid.uuid4()}"}},
        {"request": {"method": "PATCH", "url": "Patient/1"}}]}

    response = engine.transaction(bundle, context)

    assert response["type"] == "batch-response"
    assert [e["response"]["status"] for e in response["entry"]] == ["404", "400"]
    assert response["entry"][0]["response"]["outcome"]["issue"][0]["code"] == "not-found"


def test_capabilities(engine):
    statement = engine.capabilities(software_version="1.2")
    resources = {r["type"]: r for r in statement["rest"][0]["resource"]}
    assert sorted(resources) == ["Organization", "Patient"]

    patient = resources["Patient"]
    assert {"code": "vread"} in patient["interaction"]
    assert patient["versioning"] == "versioned"
    search_types = {p["name"]: p["type"] for p in patient["searchParam"]}
    assert search_types["birthdate"] == "date"
    assert search_types["identifier"] == "token"
    assert search_types["organization"] == "reference"
    assert search_types["family"] == "string"
    assert search_types["_count"] == "number"
