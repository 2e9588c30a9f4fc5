from fhirclient.models.organization import Organization as FhirOrganization

from fhir_adapter.handlers.entity import EntityMapper, parse_model, reference_key
from fhir_adapter.model import EntityName, Organization


class OrganizationMapper(EntityMapper):
    """Organization resource to and from the native ``Organization`` model"""

    resource_type = "Organization"

    def to_native(self, resource, context):
        organization = parse_model(FhirOrganization, resource)
        type_concept = None
        if organization.type and organization.type[0].coding:
            type_concept = organization.type[0].coding[0].code
        return Organization(
            names=[EntityName(family=organization.name)] if organization.name else [],
            type_concept=type_concept,
            parent_key=reference_key(organization.partOf),
            **self.native_common(organization))

    def to_external(self, model, context):
        resource = self.external_common(model)
        if model.names:
            resource["name"] = model.names[0].family
        if model.type_concept:
            resource["type"] = [{"coding": [{"code": model.type_concept}]}]
        if model.parent_key is not None:
            resource["partOf"] = {"reference": f"Organization/{model.parent_key}"}
        return resource
