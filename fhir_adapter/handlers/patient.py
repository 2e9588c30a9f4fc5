from fhirclient.models.patient import Patient

from fhir_adapter.handlers.entity import EntityMapper, parse_model, reference_key
from fhir_adapter.model import Person


class PatientMapper(EntityMapper):
    """Patient resource to and from the native ``Person`` model"""

    resource_type = "Patient"

    def to_native(self, resource, context):
        patient = parse_model(Patient, resource)
        return Person(
            names=self.native_names(patient.name),
            date_of_birth=patient.birthDate.isostring if patient.birthDate else None,
            gender_concept=patient.gender,
            deceased_date=(
                patient.deceasedDateTime.isostring if patient.deceasedDateTime else None),
            managing_organization_key=reference_key(patient.managingOrganization),
            **self.native_common(patient))

    def to_external(self, model, context):
        resource = self.external_common(model)
        if model.names:
            resource["name"] = self.external_names(model.names)
        if model.gender_concept:
            resource["gender"] = model.gender_concept
        if model.date_of_birth:
            resource["birthDate"] = model.date_of_birth
        if model.deceased_date:
            resource["deceasedDateTime"] = model.deceased_date
        if model.managing_organization_key is not None:
            resource["managingOrganization"] = {
                "reference": f"Organization/{model.managing_organization_key}"}
        return resource
