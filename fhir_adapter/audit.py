"""Audit

functions to simplify adding interaction context and extra data to log messages
destined for the audit log
"""
from copy import deepcopy
from flask import current_app, has_app_context
import logging

from fhir_adapter.auditserverhandler import AuditServerHandler
from fhir_adapter.constants import Interaction

EVENT_LOG_NAME = "fhir_adapter_audit"

LIFECYCLE = {
    Interaction.CREATE: "creation",
    Interaction.UPDATE: "amendment",
    Interaction.DELETE: "logical-deletion",
    Interaction.READ: "disclosure",
    Interaction.VREAD: "disclosure",
    Interaction.SEARCH: "disclosure",
    Interaction.HISTORY: "disclosure",
    Interaction.VALIDATE: "verification",
}

# extra keys likely to carry PHI, never echoed to the application log
PHI_KEYS = ('user', 'subject', 'patient', 'objects', 'query')


def audit_log_init(app):
    audit_server_handler = AuditServerHandler(
        token=app.config['AUDIT_SERVER_TOKEN'],
        url=app.config['AUDIT_SERVER_URL'])
    event_logger = logging.getLogger(EVENT_LOG_NAME)
    event_logger.setLevel(logging.INFO)
    event_logger.addHandler(audit_server_handler)


def audit_entry(message, level='info', extra=None):
    """Log entry, adding in app context such as the running version"""
    try:
        logger = logging.getLogger(EVENT_LOG_NAME)
        log_at_level = getattr(logger, level.lower())
    except AttributeError:
        raise ValueError(f"audit_entry given bogus level: {level}")

    if extra is None:
        extra = {}

    if has_app_context():
        if 'version' not in extra:
            extra['version'] = current_app.config['VERSION_STRING']

        # echo ERRORs to current_app.logger for alerts
        if level.lower() == 'error':
            scrubbed_extra = deepcopy(extra)
            for x in PHI_KEYS:
                if x in scrubbed_extra:
                    scrubbed_extra[x] = 'REDACTED - see audit logs'
            current_app.logger.error(message, extra=scrubbed_extra)

    log_at_level(message, extra=extra)


def audit_interaction(interaction, kind, context, objects=(), outcome='success', query=None):
    """Record one audit event for an interaction

    :param interaction: the ``Interaction`` served
    :param kind: resource kind acted upon
    :param context: ``RequestContext`` of the caller
    :param objects: ids of the records disclosed or changed
    :param outcome: ``success`` or ``minor-failure``
    :param query: echoed search parameters, for searches
    """
    extra = {
        'tags': ['interaction', interaction.value],
        'interaction': interaction.value,
        'outcome': outcome,
        'resource_type': kind,
        'user': context.principal,
        'request_id': context.request_id,
        'lifecycle': LIFECYCLE[interaction],
        'objects': [str(o) for o in objects],
    }
    if query is not None:
        extra['query'] = query
    audit_entry(
        f"{interaction.value} {kind} {outcome}",
        level='info' if outcome == 'success' else 'error',
        extra=extra)
