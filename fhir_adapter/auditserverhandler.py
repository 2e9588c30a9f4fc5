import json
import logging
from pythonjsonlogger.jsonlogger import JsonFormatter
import requests
from requests.exceptions import RequestException


class AuditServerHandler(logging.Handler):
    """Logging handler posting each audit record as nested json with a bearer token"""

    def __init__(self, url, token, timeout=5):
        super().__init__()
        self.token = token
        self.url = f"{url}/events"
        self.timeout = timeout
        self.setFormatter(JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s"))

    def emit(self, record):
        audit_event = {"event": json.loads(self.format(record))}
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}"
        }
        try:
            response = requests.post(
                url=self.url, headers=headers, json=audit_event, timeout=self.timeout)
            response.raise_for_status()
        except RequestException as ex:
            # the audit server itself is unavailable - fall back to root logger
            root_logger = logging.getLogger('root')
            root_logger.error("error submitting audit event to %s", self.url)
            root_logger.exception(ex)
