"""Generic resource interaction engine

One engine serves every registered resource kind.  Each interaction walks the
same lifecycle::

    Received -> Mapped -> Executed -> MappedBack -> Responded
                  \\__________\\____________\\________-> Faulted

Kind specific behavior lives entirely in the ``ResourceHandler`` resolved
from the registry.  The engine never retries and never swallows a fault: the
outer wrapper audits the failure and re-raises it unchanged.

Every public method takes the caller's ``RequestContext`` explicitly.  During
search the per-result mapping fans out over the injected executor, each unit
receiving that same context as an argument.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
import logging
from urllib.parse import parse_qsl

from fhir_adapter.audit import audit_interaction
from fhir_adapter.constants import Interaction
from fhir_adapter.context import RequestContext
from fhir_adapter.exceptions import (
    AmbiguousReference,
    Conflict,
    FhirError,
    Gone,
    InvalidArgument,
    NotFound,
    NotSupported,
    ValidationError,
    operation_outcome,
)
from fhir_adapter.hooks import HookChain
from fhir_adapter.predicate import Operator, Term, all_of, any_of
from fhir_adapter.schema import ModelSchema, search_parameters

FHIR_VERSION = "4.0.1"

logger = logging.getLogger(__name__)


class InteractionState(Enum):
    RECEIVED = "Received"
    MAPPED = "Mapped"
    EXECUTED = "Executed"
    MAPPED_BACK = "MappedBack"
    RESPONDED = "Responded"
    FAULTED = "Faulted"


class InteractionTrace:
    """Tracks one interaction through its lifecycle, for logging and audit"""

    def __init__(self, interaction, kind, context):
        self.interaction = interaction
        self.kind = kind
        self.context = context
        self.objects = []
        self.query = None
        self.state = InteractionState.RECEIVED
        logger.debug(
            "%s %s %s by %s", interaction.value, kind, self.state.value,
            context.principal, extra={'request_id': context.request_id})

    def advance(self, state):
        logger.debug(
            "%s %s %s -> %s", self.interaction.value, self.kind, self.state.value,
            state.value, extra={'request_id': self.context.request_id})
        self.state = state


def _stamp(model, context, created):
    """Attach authorship and timestamps before persistence"""
    now = datetime.now(timezone.utc)
    if created:
        model.creation_time = now
        model.created_by = context.principal
    model.updated_time = now
    model.updated_by = context.principal


def _response_entry(resource, status):
    response = {"status": status}
    if resource and resource.get("id") and resource["resourceType"] != "Bundle":
        location = f"{resource['resourceType']}/{resource['id']}"
        version = resource.get("meta", {}).get("versionId")
        if version:
            location = f"{location}/_history/{version}"
            response["etag"] = f'W/"{version}"'
        response["location"] = location
    entry = {"response": response}
    if resource is not None:
        entry["resource"] = resource
    return entry


class InteractionEngine:
    """Drives create, read, update, delete, search and history for every kind

    :param registry: ``HandlerRegistry`` resolving kinds to handlers
    :param rewriter: ``QueryRewriter`` compiling search parameters
    :param assembler: ``BundleAssembler`` building response bundles
    :param hooks: ``HookChain`` of behavior modifiers
    :param schema: ``ModelSchema`` used only to describe capabilities
    :param executor: ``concurrent.futures.Executor`` for the per-result
        mapping fan-out; None maps sequentially on the calling thread
    """

    def __init__(
            self, registry, rewriter, assembler, hooks=None, schema=None, executor=None):
        self.registry = registry
        self.rewriter = rewriter
        self.assembler = assembler
        self.hooks = hooks or HookChain()
        self.schema = schema or ModelSchema({})
        self.executor = executor

    @contextmanager
    def _serving(self, interaction, kind, context):
        trace = InteractionTrace(interaction, kind, context)
        try:
            yield trace
        except Exception as ex:
            trace.advance(InteractionState.FAULTED)
            logger.debug(
                "%s %s faulted: %s", interaction.value, kind, ex,
                extra={'request_id': context.request_id})
            audit_interaction(
                interaction, kind, context, trace.objects,
                outcome='minor-failure', query=trace.query)
            raise
        trace.advance(InteractionState.RESPONDED)
        audit_interaction(interaction, kind, context, trace.objects, query=trace.query)

    def _resolve(self, kind, interaction):
        handler = self.registry.resolve(kind)
        if not handler.descriptor.supports(interaction):
            raise NotSupported(f"{interaction.value} is not supported on {kind}")
        return handler

    def _check_body(self, handler, body):
        if not isinstance(body, dict):
            raise InvalidArgument(f"missing {handler.descriptor.external_type} resource body")
        declared = body.get("resourceType")
        if declared != handler.descriptor.external_type:
            raise InvalidArgument(
                f"expected a {handler.descriptor.external_type} resource, not {declared}")

    def _to_native(self, handler, interaction, body, context):
        body = self.hooks.after_receive_request(interaction, handler.kind, body, context)
        model = handler.to_native(body, context)
        if model is None:
            raise ValidationError(
                f"{handler.descriptor.external_type} could not be mapped to a native record")
        return model

    def map_all(self, handler, models, context):
        """Map native models to external form, preserving order

        Each unit of work receives ``context`` as an argument; workers never
        consult any shared notion of the current identity.
        """
        if self.executor is None or len(models) < 2:
            return [handler.to_external(model, context) for model in models]

        def map_one(model, context=context):
            return handler.to_external(model, context)

        return list(self.executor.map(map_one, models))

    def create(self, kind, body, context=None):
        """Create a new record from ``body``, returning the stored resource"""
        context = context or RequestContext()
        with self._serving(Interaction.CREATE, kind, context) as trace:
            handler = self._resolve(kind, Interaction.CREATE)
            return self._create(handler, body, context, trace)

    def _create(self, handler, body, context, trace):
        self._check_body(handler, body)
        model = self._to_native(handler, Interaction.CREATE, body, context)
        trace.advance(InteractionState.MAPPED)

        _stamp(model, context, created=True)
        stored = handler.repository.insert(model, context)
        trace.advance(InteractionState.EXECUTED)

        resource = handler.to_external(stored, context)
        trace.advance(InteractionState.MAPPED_BACK)
        trace.objects.append(handler.resource_id(stored))
        return self.hooks.before_send_response(
            Interaction.CREATE, handler.kind, resource, context)

    def read(self, kind, resource_id, version_id=None, context=None):
        """Read the current record, or one explicit version of it

        :raises NotFound: unknown id or version
        :raises Gone: the record is logically deleted and no version was named
        """
        context = context or RequestContext()
        interaction = Interaction.READ if version_id is None else Interaction.VREAD
        with self._serving(interaction, kind, context) as trace:
            handler = self._resolve(kind, interaction)
            key = handler.parse_key(resource_id)
            version_key = handler.parse_key(version_id) if version_id is not None else None
            trace.advance(InteractionState.MAPPED)

            model = handler.repository.get(key, version_key, context=context)
            trace.advance(InteractionState.EXECUTED)
            if model is None:
                missing = f"{kind}/{resource_id}"
                if version_id is not None:
                    missing = f"{missing}/_history/{version_id}"
                raise NotFound(f"{missing} not found")
            if version_id is None and model.obsoletion_time is not None:
                raise Gone(
                    f"{kind}/{resource_id} was deleted", deletion_time=model.obsoletion_time)

            resource = handler.to_external(model, context)
            trace.advance(InteractionState.MAPPED_BACK)
            trace.objects.append(handler.resource_id(model))
            return self.hooks.before_send_response(interaction, kind, resource, context)

    def update(self, kind, resource_id, body, context=None):
        """Store ``body`` as the new version of ``kind/resource_id``

        :raises Conflict: the body declares an id other than ``resource_id``
        """
        context = context or RequestContext()
        with self._serving(Interaction.UPDATE, kind, context) as trace:
            handler = self._resolve(kind, Interaction.UPDATE)
            key = handler.parse_key(resource_id)
            return self._update(handler, key, body, context, trace)

    def _update(self, handler, key, body, context, trace):
        self._check_body(handler, body)
        if body.get("id") is not None and handler.parse_key(body["id"]) != key:
            raise Conflict(f"resource id {body['id']} does not match {key}")

        model = self._to_native(handler, Interaction.UPDATE, body, context)
        if model.key is None:
            model.key = key
        elif model.key != key:
            raise Conflict(f"mapped key {model.key} does not match {key}")
        trace.advance(InteractionState.MAPPED)

        _stamp(model, context, created=False)
        stored = handler.repository.save(model, context)
        trace.advance(InteractionState.EXECUTED)

        resource = handler.to_external(stored, context)
        trace.advance(InteractionState.MAPPED_BACK)
        trace.objects.append(handler.resource_id(stored))
        return self.hooks.before_send_response(
            Interaction.UPDATE, handler.kind, resource, context)

    def conditional_update(self, kind, parameters, body, context=None):
        """Update the single record matching ``parameters``, or create one

        :raises AmbiguousReference: more than one record matches
        :returns: ``(resource, created)``
        """
        context = context or RequestContext()
        with self._serving(Interaction.UPDATE, kind, context) as trace:
            handler = self._resolve(kind, Interaction.UPDATE)
            predicate, state = self.rewriter.rewrite(kind, parameters)
            if not state.filters:
                raise InvalidArgument("conditional update requires search criteria")
            trace.query = state.actual_parameters

            page, total = handler.repository.find(
                all_of(handler.system_filters(), predicate), 0, 2, context=context)
            if len(page) > 1 or (total or 0) > 1:
                raise AmbiguousReference(
                    f"conditional update on {kind} matched {total} records")
            if not page:
                if not handler.descriptor.supports(Interaction.CREATE):
                    raise NotSupported(f"create is not supported on {kind}")
                return self._create(handler, body, context, trace), True
            return self._update(handler, page[0].key, body, context, trace), False

    def delete(self, kind, resource_id, context=None):
        """Logically delete ``kind/resource_id``, returning its final state"""
        context = context or RequestContext()
        with self._serving(Interaction.DELETE, kind, context) as trace:
            handler = self._resolve(kind, Interaction.DELETE)
            key = handler.parse_key(resource_id)
            trace.advance(InteractionState.MAPPED)

            model = handler.repository.obsolete(key, context)
            trace.advance(InteractionState.EXECUTED)
            if model is None:
                raise NotFound(f"{kind}/{resource_id} not found")

            resource = handler.to_external(model, context)
            trace.advance(InteractionState.MAPPED_BACK)
            trace.objects.append(handler.resource_id(model))
            return self.hooks.before_send_response(
                Interaction.DELETE, kind, resource, context)

    def search(self, kind, parameters, context=None):
        """Search ``kind``, returning one searchset bundle page"""
        context = context or RequestContext()
        with self._serving(Interaction.SEARCH, kind, context) as trace:
            handler = self._resolve(kind, Interaction.SEARCH)
            predicate, state = self.rewriter.rewrite(kind, parameters)
            predicate = all_of(handler.system_filters(), predicate)
            trace.query = list(state.actual_parameters)
            logger.debug("search %s where %s", kind, predicate)
            trace.advance(InteractionState.MAPPED)

            page, total = handler.repository.find(
                predicate, state.offset, state.quantity,
                state_id=state.state_id, context=context)
            state.total = total
            trace.advance(InteractionState.EXECUTED)

            resources = self.map_all(handler, page, context)
            included = self.resolve_includes(handler, page, state, context)
            trace.advance(InteractionState.MAPPED_BACK)
            trace.objects.extend(handler.resource_id(model) for model in page)

            bundle = self.assembler.searchset(kind, resources, state, included)
            return self.hooks.before_send_response(
                Interaction.SEARCH, kind, bundle, context)

    def _join_path(self, kind, name):
        mapping = self.rewriter.parameter_map.lookup(kind, name)
        return mapping.path if mapping is not None else name

    def resolve_includes(self, handler, models, state, context):
        """External forms of the records named by include directives

        ``_include=Kind:path`` follows the foreign keys at ``path`` on each
        result to records of ``Kind``.  ``_revinclude=Kind:path`` finds records
        of ``Kind`` whose ``path`` refers back to any result.  Records already
        in the page, or logically deleted, are left out.
        """
        if not models or not (state.includes or state.reverse_includes):
            return []

        seen = {(handler.kind, handler.resource_id(m)) for m in models}
        collected = []

        def collect(target, model):
            marker = (target.kind, target.resource_id(model))
            if marker not in seen:
                seen.add(marker)
                collected.append((target, model))

        for instruction in state.includes:
            target = self.registry.resolve(instruction.kind)
            path = self._join_path(handler.kind, instruction.join_path)
            for model in models:
                for key in handler.referenced_keys(model, path):
                    related = target.repository.get(key, context=context)
                    if related is not None and related.obsoletion_time is None:
                        collect(target, related)

        for instruction in state.reverse_includes:
            target = self.registry.resolve(instruction.kind)
            path = self._join_path(target.kind, instruction.join_path)
            predicate = all_of(
                target.system_filters(),
                any_of(Term(path, Operator.EQUAL, model.key) for model in models))
            related, _ = target.repository.find(
                predicate, 0, self.rewriter.default_count, context=context)
            for model in related:
                collect(target, model)

        included = []
        targets = {}
        for target, model in collected:
            targets.setdefault(target.kind, (target, []))[1].append(model)
        for target, related in targets.values():
            included.extend(self.map_all(target, related, context))
        return included

    def history(self, kind, resource_id, context=None):
        """Every version of ``kind/resource_id``, newest first

        Logically deleted records keep their history; the deleted version
        heads the chain.
        """
        context = context or RequestContext()
        with self._serving(Interaction.HISTORY, kind, context) as trace:
            handler = self._resolve(kind, Interaction.HISTORY)
            key = handler.parse_key(resource_id)
            trace.advance(InteractionState.MAPPED)

            model = handler.repository.get(key, context=context)
            if model is None:
                raise NotFound(f"{kind}/{resource_id} not found")
            versions = [model]
            if handler.descriptor.versioned:
                seen = {model.version_key}
                previous = handler.previous_version(model, context)
                while previous is not None and previous.version_key not in seen:
                    seen.add(previous.version_key)
                    versions.append(previous)
                    previous = handler.previous_version(previous, context)
            trace.advance(InteractionState.EXECUTED)

            resources = self.map_all(handler, versions, context)
            trace.advance(InteractionState.MAPPED_BACK)
            trace.objects.append(handler.resource_id(model))

            bundle = self.assembler.history(kind, resource_id, resources)
            return self.hooks.before_send_response(
                Interaction.HISTORY, kind, bundle, context)

    def validate(self, kind, body, context=None):
        """Check ``body`` maps to a native record without persisting anything"""
        context = context or RequestContext()
        with self._serving(Interaction.VALIDATE, kind, context) as trace:
            handler = self._resolve(kind, Interaction.VALIDATE)
            self._check_body(handler, body)
            self._to_native(handler, Interaction.VALIDATE, body, context)
            trace.advance(InteractionState.MAPPED)
            return operation_outcome(
                f"{kind} resource is valid", severity="information", code="informational")

    def resolve_reference(self, reference, context=None):
        """Resolve a ``Kind/id`` or ``Kind?query`` reference to one external resource

        :raises AmbiguousReference: a query reference matches more than one record
        :raises NotFound: nothing matches
        """
        context = context or RequestContext()
        if "?" in reference:
            literal, _, query = reference.partition("?")
            kind = self.registry.resolve_by_name(literal.rstrip("/").split("/")[-1])
            parameters = [
                (k, v) for k, v in parse_qsl(query, keep_blank_values=True)
                if k not in ("_count", "_offset", "_page")]
            parameters.append(("_count", "2"))
            bundle = self.search(kind, parameters, context=context)
            matches = [
                e["resource"] for e in bundle["entry"] if e["search"]["mode"] == "match"]
            if len(matches) > 1 or (bundle.get("total") or 0) > 1:
                raise AmbiguousReference(f"{reference} matches more than one {kind}")
            if not matches:
                raise NotFound(f"{reference} matches no {kind}")
            return matches[0]

        segments = [s for s in reference.split("/") if s]
        if len(segments) >= 4 and segments[-2] == "_history":
            kind, resource_id, version_id = segments[-4], segments[-3], segments[-1]
        elif len(segments) >= 2:
            kind, resource_id, version_id = segments[-2], segments[-1], None
        else:
            raise InvalidArgument(f"{reference} is not a resource reference")
        kind = self.registry.resolve_by_name(kind)
        return self.read(kind, resource_id, version_id, context=context)

    def transaction(self, bundle, context=None):
        """Dispatch each entry of a transaction or batch bundle

        A transaction stops at the first failing entry and raises it; a batch
        reports each failure as that entry's outcome and carries on.
        """
        context = context or RequestContext()
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            raise InvalidArgument("expected a Bundle resource")
        bundle_type = bundle.get("type")
        if bundle_type not in ("transaction", "batch"):
            raise InvalidArgument(f"Bundle type {bundle_type} can not be processed")
        batch = bundle_type == "batch"

        entries = []
        for entry in bundle.get("entry", []):
            request = entry.get("request") or {}
            try:
                entries.append(self._dispatch(
                    request.get("method", "").upper(), request.get("url", ""),
                    entry.get("resource"), context))
            except FhirError as err:
                if not batch:
                    raise
                logger.debug("batch entry %s failed: %s", request.get("url"), err)
                entries.append({"response": {
                    "status": str(err.status_code), "outcome": err.as_outcome()}})
        return self.assembler.transaction_response(entries, batch=batch)

    def _dispatch(self, method, url, resource, context):
        path, _, query = url.partition("?")
        segments = [s for s in path.split("/") if s]
        if not segments:
            raise InvalidArgument(f"transaction entry url {url!r} names no resource type")
        kind = self.registry.resolve_by_name(segments[0])
        parameters = parse_qsl(query, keep_blank_values=True)

        if method == "POST" and len(segments) == 1:
            return _response_entry(self.create(kind, resource, context), "201 Created")
        if method == "PUT" and len(segments) == 2:
            return _response_entry(
                self.update(kind, segments[1], resource, context), "200 OK")
        if method == "PUT" and len(segments) == 1 and parameters:
            result, created = self.conditional_update(kind, parameters, resource, context)
            return _response_entry(result, "201 Created" if created else "200 OK")
        if method == "DELETE" and len(segments) == 2:
            return _response_entry(self.delete(kind, segments[1], context), "200 OK")
        if method == "GET":
            if len(segments) == 1:
                return _response_entry(self.search(kind, parameters, context), "200 OK")
            if len(segments) == 2:
                return _response_entry(self.read(kind, segments[1], context=context), "200 OK")
            if len(segments) == 3 and segments[2] == "_history":
                return _response_entry(self.history(kind, segments[1], context), "200 OK")
            if len(segments) == 4 and segments[2] == "_history":
                return _response_entry(
                    self.read(kind, segments[1], segments[3], context), "200 OK")
        raise InvalidArgument(f"unsupported transaction entry {method} {url}")

    def capabilities(self, software_name="fhir-adapter", software_version=None):
        """CapabilityStatement describing every registered kind"""
        resources = []
        for kind, handler in sorted(self.registry.list_all().items()):
            descriptor = handler.descriptor
            described = {
                "type": kind,
                "profile": f"http://hl7.org/fhir/StructureDefinition/{descriptor.external_type}",
                "interaction": [
                    {"code": i.value} for i in Interaction
                    if i is not Interaction.VALIDATE and descriptor.supports(i)],
                "versioning": "versioned" if descriptor.versioned else "no-version",
                "readHistory": descriptor.versioned,
                "updateCreate": False,
                "conditionalUpdate": descriptor.supports(Interaction.UPDATE),
            }
            if descriptor.supports(Interaction.SEARCH):
                described["searchInclude"] = ["*"]
                described["searchRevInclude"] = ["*"]
                described["searchParam"] = search_parameters(
                    self.rewriter.parameter_map, self.schema, kind, descriptor.model_type)
            if descriptor.supports(Interaction.VALIDATE):
                described["operation"] = [{
                    "name": "validate",
                    "definition": "http://hl7.org/fhir/OperationDefinition/Resource-validate"}]
            resources.append(described)

        software = {"name": software_name}
        if software_version:
            software["version"] = software_version
        return {
            "resourceType": "CapabilityStatement",
            "status": "active",
            "date": datetime.now(timezone.utc).isoformat(),
            "kind": "instance",
            "software": software,
            "fhirVersion": FHIR_VERSION,
            "format": ["json"],
            "rest": [{
                "mode": "server",
                "resource": resources,
                "interaction": [{"code": "transaction"}, {"code": "batch"}],
            }],
        }
