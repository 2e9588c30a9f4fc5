from fhir_adapter.api import fhir, views  # noqa: F401
