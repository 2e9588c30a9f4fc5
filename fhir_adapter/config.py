"""Default configuration

Use env var to override
"""
import json
import os

SERVER_NAME = os.getenv("SERVER_NAME")
# URL scheme to use outside of request context
PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", 'http')

# absolute service base for fullUrl and bundle links; relative when empty
FHIR_BASE_URI = os.getenv("FHIR_BASE_URI", '')
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", 100))
# workers mapping search results; 0 maps on the request thread
SEARCH_MAX_WORKERS = int(os.getenv("SEARCH_MAX_WORKERS", 4))

PARAMETER_MAP_OVERRIDES = os.getenv("PARAMETER_MAP_OVERRIDES").split(",") if "PARAMETER_MAP_OVERRIDES" in os.environ else []

# JSON list of {"kind", "mapper", "repository", ...repository kwargs}
RESOURCE_HANDLERS = json.loads(os.getenv("RESOURCE_HANDLERS", '[]'))
BEHAVIOR_MODIFIERS = json.loads(os.getenv("BEHAVIOR_MODIFIERS", '[]'))

AUTHORITY_RESOLVER = os.getenv("AUTHORITY_RESOLVER")
CONCEPT_RESOLVER = os.getenv("CONCEPT_RESOLVER")
AUTHORITIES = json.loads(os.getenv("AUTHORITIES", '[]'))
CODE_SYSTEMS = json.loads(os.getenv("CODE_SYSTEMS", '[]'))
CONCEPTS = json.loads(os.getenv("CONCEPTS", '[]'))

AUDIT_SERVER_TOKEN = os.getenv('AUDIT_SERVER_TOKEN')
AUDIT_SERVER_URL = os.getenv('AUDIT_SERVER_URL')

# NB log level hardcoded at INFO for audit server
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG').upper()

VERSION_STRING = os.getenv("VERSION_STRING")
