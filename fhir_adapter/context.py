"""Per request context, passed explicitly to every unit of work"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class RequestContext:
    """Identity of the caller plus request correlation data

    Instances are immutable; workers mapping results in parallel receive the
    instance captured before the fan-out instead of reading any shared
    "current" identity.
    """
    principal: str = ANONYMOUS
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    received: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
