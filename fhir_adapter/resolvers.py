"""Identifier authority and concept resolution collaborators

The query rewriter only depends on the abstract interfaces; deployments
backed by a terminology service supply their own implementations through the
``AUTHORITY_RESOLVER`` / ``CONCEPT_RESOLVER`` configuration.  The static
implementations here resolve from configured tables.
"""
from abc import ABC
from dataclasses import dataclass

from fhir_adapter.exceptions import AmbiguousReference

OID_PREFIX = "urn:oid:"


@dataclass(frozen=True)
class IdentityDomain:
    """An assigning authority for business identifiers"""
    name: str
    key: str = None
    url: str = None
    oid: str = None


@dataclass(frozen=True)
class CodeSystem:
    name: str
    url: str = None
    oid: str = None


@dataclass(frozen=True)
class Concept:
    key: str
    mnemonic: str
    code_system: str = None


class AuthorityResolver(ABC):
    """Abstract interface, implemented by each identity domain source"""

    def resolve(self, system):
        """Resolve an identifier system to its assigning authority

        :param system: a URI, an OID in ``urn:oid:`` form or a bare domain name
        :returns: ``IdentityDomain`` or None when unknown
        """
        pass


class ConceptResolver(ABC):
    """Abstract interface, implemented by each terminology source"""

    def resolve(self, code, system=None):
        """Resolve a code, optionally qualified by its code system

        :param code: the code or mnemonic
        :param system: code system URI, ``urn:oid:`` OID or bare name; None
            when the caller did not qualify the code
        :returns: ``Concept`` or None when unknown
        """
        pass


def _matches_system(entry, system):
    if system.startswith(OID_PREFIX):
        return entry.oid == system[len(OID_PREFIX):]
    return system in (entry.url, entry.name)


class StaticAuthorityResolver(AuthorityResolver):
    """Resolve authorities from a configured list"""

    def __init__(self, authorities=()):
        self._domains = tuple(
            a if isinstance(a, IdentityDomain) else IdentityDomain(**a)
            for a in authorities)

    def resolve(self, system):
        matches = [d for d in self._domains if _matches_system(d, system)]
        if len(matches) > 1:
            raise AmbiguousReference(
                f"identifier system {system} matches {len(matches)} authorities")
        return matches[0] if matches else None


class StaticConceptResolver(ConceptResolver):
    """Resolve concepts from configured code systems and concepts"""

    def __init__(self, code_systems=(), concepts=()):
        self._code_systems = tuple(
            c if isinstance(c, CodeSystem) else CodeSystem(**c) for c in code_systems)
        self._concepts = tuple(
            c if isinstance(c, Concept) else Concept(**c) for c in concepts)

    def code_system(self, system):
        matches = [c for c in self._code_systems if _matches_system(c, system)]
        if len(matches) > 1:
            raise AmbiguousReference(
                f"code system {system} matches {len(matches)} code systems")
        return matches[0] if matches else None

    def resolve(self, code, system=None):
        if system:
            code_system = self.code_system(system)
            if code_system is None:
                return None
            candidates = [
                c for c in self._concepts
                if c.mnemonic == code and c.code_system == code_system.name]
        else:
            candidates = [c for c in self._concepts if c.mnemonic == code]

        if len(candidates) > 1:
            raise AmbiguousReference(
                f"code {code} matches {len(candidates)} concepts; qualify with a system")
        return candidates[0] if candidates else None
