"""Exception taxonomy raised by the interaction engine

Every fault leaving the engine is exactly one of the classes below, each
carrying a free-text diagnostic.  The transport layer translates them into
``OperationOutcome`` responses using ``status_code`` and ``issue_code``.
"""


class FhirError(Exception):
    """Base for all faults surfaced to the transport boundary"""
    status_code = 500
    issue_code = "exception"

    def __init__(self, diagnostics, **details):
        super().__init__(diagnostics)
        self.diagnostics = diagnostics
        self.details = details

    def as_outcome(self):
        return operation_outcome(self.diagnostics, code=self.issue_code)


class InvalidArgument(FhirError):
    """Malformed id, version or query value"""
    status_code = 400
    issue_code = "invalid"


class NotSupported(FhirError):
    """Unregistered resource kind or unsupported interaction"""
    status_code = 405
    issue_code = "not-supported"


class NotFound(FhirError):
    status_code = 404
    issue_code = "not-found"


class Gone(FhirError):
    """Raised when a logically deleted record is read without a version"""
    status_code = 410
    issue_code = "deleted"

    def __init__(self, diagnostics, deletion_time=None, **details):
        super().__init__(diagnostics, **details)
        self.deletion_time = deletion_time


class ValidationError(FhirError):
    """Mapping or business rule rejection on write"""
    status_code = 422
    issue_code = "processing"


class Conflict(FhirError):
    """Path id and body id disagree"""
    status_code = 409
    issue_code = "conflict"


class AmbiguousReference(FhirError):
    """A lookup requiring a unique match found more than one candidate"""
    status_code = 412
    issue_code = "multiple-matches"


class DuplicateRegistration(FhirError):
    """A handler is already bound to the given resource kind"""
    status_code = 500
    issue_code = "duplicate"


def operation_outcome(diagnostics, severity="error", code="exception"):
    """Single issue ``OperationOutcome`` resource"""
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": severity, "code": code, "diagnostics": diagnostics}],
    }
