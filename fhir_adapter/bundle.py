"""Result bundle assembly

Navigation links re-encode the accepted filter parameters in request order,
followed by ``_stateid``, the position and ``_count``.  The position is
``_page`` on a page boundary and ``_offset`` otherwise.  Parsing a link with
``parse_link`` therefore yields the original filters plus the position, and
rewriting it lands on the same rows.
"""
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode, urlsplit
import uuid

from fhir_adapter.constants import BundleKind, PAGING_PARAMETERS


def parse_link(url):
    """Split a navigation link into its path and ordered ``(key, value)`` pairs"""
    parts = urlsplit(url)
    return parts.path, parse_qsl(parts.query, keep_blank_values=True)


class BundleAssembler:
    """Builds searchset, history and transaction-response bundles

    :param base_uri: absolute service base; links and ``fullUrl`` values are
        relative when empty
    """

    def __init__(self, base_uri=""):
        self.base_uri = (base_uri or "").rstrip("/")

    def url(self, *segments):
        path = "/".join(str(s) for s in segments)
        return f"{self.base_uri}/{path}" if self.base_uri else path

    def full_url(self, resource):
        return self.url(resource["resourceType"], resource["id"])

    def _envelope(self, kind, total=None):
        bundle = {
            "resourceType": "Bundle",
            "id": str(uuid.uuid4()),
            "meta": {"lastUpdated": datetime.now(timezone.utc).isoformat()},
            "type": kind.value,
        }
        if total is not None:
            bundle["total"] = total
        return bundle

    def page_url(self, kind, state, offset):
        filters = [
            (key, value) for key, value in state.actual_parameters
            if key not in PAGING_PARAMETERS]
        if state.state_id:
            filters.append(("_stateid", state.state_id))
        if state.quantity and offset % state.quantity == 0:
            filters.append(("_page", offset // state.quantity))
        else:
            filters.append(("_offset", offset))
        filters.append(("_count", state.quantity))
        return f"{self.url(kind)}?{urlencode(filters)}"

    def links(self, kind, state):
        """Navigation links for one page of a search

        ``self`` is always present; ``first`` and ``previous`` only past the
        first row; ``next`` and ``last`` only while rows remain.  Pages step
        by ``quantity`` from the current offset.
        """
        offset, quantity = state.offset, state.quantity
        links = [{"relation": "self", "url": self.page_url(kind, state, offset)}]
        if offset > 0:
            links.append({"relation": "first", "url": self.page_url(kind, state, 0)})
            links.append({
                "relation": "previous",
                "url": self.page_url(kind, state, max(offset - quantity, 0))})
        if state.has_more():
            last = offset + (state.total - offset - 1) // quantity * quantity
            links.append({
                "relation": "next", "url": self.page_url(kind, state, offset + quantity)})
            links.append({"relation": "last", "url": self.page_url(kind, state, last)})
        return links

    def searchset(self, kind, resources, state, included=()):
        """Envelope one page of search results

        :param kind: the searched resource kind
        :param resources: external resources matching the search, in order
        :param state: the ``QueryState`` with ``total`` filled in
        :param included: external resources pulled in by include directives
        """
        bundle = self._envelope(BundleKind.SEARCHSET, state.total)
        bundle["link"] = self.links(kind, state)
        bundle["entry"] = [
            {"fullUrl": self.full_url(r), "resource": r, "search": {"mode": "match"}}
            for r in resources]
        bundle["entry"].extend(
            {"fullUrl": self.full_url(r), "resource": r, "search": {"mode": "include"}}
            for r in included)
        return bundle

    def history(self, kind, resource_id, resources):
        """Envelope every version of one record, newest first"""
        bundle = self._envelope(BundleKind.HISTORY, len(resources))
        bundle["link"] = [
            {"relation": "self", "url": self.url(kind, resource_id, "_history")}]
        bundle["entry"] = [
            {"fullUrl": self.full_url(r), "resource": r} for r in resources]
        return bundle

    def transaction_response(self, entries, batch=False):
        """Envelope per-entry outcomes of a transaction or batch

        :param entries: dicts holding ``response`` and optionally ``resource``
        """
        kind = BundleKind.BATCH_RESPONSE if batch else BundleKind.TRANSACTION_RESPONSE
        bundle = self._envelope(kind)
        bundle["entry"] = list(entries)
        return bundle
