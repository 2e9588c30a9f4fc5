from flask import Blueprint, current_app, jsonify, request
import logging

from fhir_adapter.api.fhir import request_context
from fhir_adapter.audit import audit_entry

base_blueprint = Blueprint('base', __name__)


@base_blueprint.route('/')
def root():
    """Liveness probe, reporting the deployed version"""
    return {'ok': True, 'version': current_app.config['VERSION_STRING']}


@base_blueprint.route('/auditlog', methods=('POST',))
def auditlog_addevent():
    """Append a client supplied event to the audit log

    Expects a JSON object with a ``message`` and an optional ``level``
    (default "info").  Remaining keys are recorded with the event, along with
    the calling identity and request id.  Answers ``{"message": "ok"}`` or a
    400 naming the problem.
    """
    event = request.get_json(silent=True)
    if not event:
        return jsonify(message="Missing JSON data"), 400

    level = event.pop('level', 'info')
    if not isinstance(logging.getLevelName(level.upper()), int):
        return jsonify(message=f"Unknown logging `level`: {level}"), 400
    message = event.pop('message', None)
    if not message:
        return jsonify(message="missing required 'message' in post"), 400

    context = request_context()
    event.update(user=context.principal, request_id=context.request_id)
    audit_entry(message, level, event)
    return jsonify(message='ok')
