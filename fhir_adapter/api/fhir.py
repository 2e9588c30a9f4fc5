from flask import Blueprint, current_app, g, jsonify, make_response, request
from flask_cors import cross_origin

from fhir_adapter import PROXY_HEADERS
from fhir_adapter.context import ANONYMOUS, RequestContext
from fhir_adapter.exceptions import FhirError, InvalidArgument

blueprint = Blueprint('fhir', __name__, url_prefix='/fhir')

FHIR_JSON = 'application/fhir+json'


def engine():
    return current_app.extensions['fhir_adapter']


def request_context():
    """Context of the calling identity, as set by the host's authentication layer"""
    principal = getattr(g, 'identity', None) or request.environ.get('REMOTE_USER') or ANONYMOUS
    if request.headers.get('X-Request-Id'):
        return RequestContext(principal=principal, request_id=request.headers['X-Request-Id'])
    return RequestContext(principal=principal)


def resolve_kind(kind):
    return engine().registry.resolve_by_name(kind)


def fhir_response(resource, status_code=200):
    response = make_response(jsonify(resource), status_code)
    response.mimetype = FHIR_JSON
    version = resource.get('meta', {}).get('versionId')
    if version and resource.get('resourceType') != 'Bundle':
        response.headers['ETag'] = f'W/"{version}"'
        if status_code == 201:
            response.headers['Location'] = '/'.join((
                request.url_root.rstrip('/'), blueprint.url_prefix.strip('/'),
                resource['resourceType'], resource['id'], '_history', version))
    return response


def request_body():
    return request.get_json(force=True, silent=True)


@blueprint.errorhandler(FhirError)
def fhir_error(error):
    current_app.logger.info(
        "%s answered %s: %s", request.path, error.status_code, error.diagnostics)
    response = make_response(jsonify(error.as_outcome()), error.status_code)
    response.mimetype = FHIR_JSON
    return response


@blueprint.route('/metadata', methods=('GET',))
@cross_origin(allow_headers=PROXY_HEADERS)
def metadata():
    return fhir_response(engine().capabilities(
        software_version=current_app.config['VERSION_STRING']))


@blueprint.route('/', methods=('POST',))
@cross_origin(allow_headers=PROXY_HEADERS)
def transaction():
    """Process a transaction or batch Bundle"""
    return fhir_response(engine().transaction(request_body(), request_context()))


@blueprint.route('/<string:kind>', methods=('GET',))
@cross_origin(allow_headers=PROXY_HEADERS)
def search(kind):
    return fhir_response(engine().search(resolve_kind(kind), request.args, request_context()))


@blueprint.route('/<string:kind>/_search', methods=('POST',))
@cross_origin(allow_headers=PROXY_HEADERS)
def search_post(kind):
    """Search with parameters in a form encoded body, as well as the query string"""
    return fhir_response(engine().search(resolve_kind(kind), request.values, request_context()))


@blueprint.route('/<string:kind>', methods=('POST',))
@cross_origin(allow_headers=PROXY_HEADERS)
def create(kind):
    resource = engine().create(resolve_kind(kind), request_body(), request_context())
    return fhir_response(resource, 201)


@blueprint.route('/<string:kind>', methods=('PUT',))
@cross_origin(allow_headers=PROXY_HEADERS)
def conditional_update(kind):
    if not request.args:
        raise InvalidArgument("update without an id requires search criteria")
    resource, created = engine().conditional_update(
        resolve_kind(kind), request.args, request_body(), request_context())
    return fhir_response(resource, 201 if created else 200)


@blueprint.route('/<string:kind>/$validate', methods=('POST',))
@cross_origin(allow_headers=PROXY_HEADERS)
def validate(kind):
    return fhir_response(engine().validate(resolve_kind(kind), request_body(), request_context()))


@blueprint.route('/<string:kind>/<string:resource_id>', methods=('GET',))
@cross_origin(allow_headers=PROXY_HEADERS)
def read(kind, resource_id):
    return fhir_response(engine().read(
        resolve_kind(kind), resource_id, context=request_context()))


@blueprint.route('/<string:kind>/<string:resource_id>', methods=('PUT',))
@cross_origin(allow_headers=PROXY_HEADERS)
def update(kind, resource_id):
    return fhir_response(engine().update(
        resolve_kind(kind), resource_id, request_body(), request_context()))


@blueprint.route('/<string:kind>/<string:resource_id>', methods=('DELETE',))
@cross_origin(allow_headers=PROXY_HEADERS)
def delete(kind, resource_id):
    return fhir_response(engine().delete(resolve_kind(kind), resource_id, request_context()))


@blueprint.route('/<string:kind>/<string:resource_id>/_history', methods=('GET',))
@cross_origin(allow_headers=PROXY_HEADERS)
def history(kind, resource_id):
    return fhir_response(engine().history(resolve_kind(kind), resource_id, request_context()))


@blueprint.route(
    '/<string:kind>/<string:resource_id>/_history/<string:version_id>', methods=('GET',))
@cross_origin(allow_headers=PROXY_HEADERS)
def vread(kind, resource_id, version_id):
    return fhir_response(engine().read(
        resolve_kind(kind), resource_id, version_id, request_context()))
