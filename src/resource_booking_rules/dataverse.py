from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.parse import quote
import logging
import re

import httpx


logger = logging.getLogger(__name__)

# Logical names whose Web API entity set is not simply "<name>s".
_IRREGULAR_ENTITY_SETS = {
    "msdyn_workorderservicetask": "msdyn_workorderservicetasks",
    "bookingstatus": "bookingstatuses",
    "msdyn_priority": "msdyn_priorities",
    "territory": "territories",
}

_DATE_LITERAL = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


class GatewayFault(RuntimeError):
    """Any failure talking to Dataverse (HTTP status, transport, malformed response)."""

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AccessTokenSource(Protocol):
    def get_access_token(self) -> str: ...


def _normalize_guid(value: str) -> str:
    v = value.strip()
    if v.startswith("{") and v.endswith("}"):
        v = v[1:-1]
    return v.lower()


def _extract_guid_from_odata_entity_id(entity_id_url: str) -> str | None:
    # Example: https://org.crm.dynamics.com/api/data/v9.2/bookableresourcebookings(<guid>)
    match = re.search(r"\(([0-9a-fA-F-]{36})\)", entity_id_url)
    return match.group(1) if match else None


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso_datetime(value: str) -> datetime:
    # Dataverse emits Z-terminated timestamps; webhook bodies use /Date(ms)/.
    v = (value or "").strip()
    if not v:
        raise ValueError("Empty datetime string")
    m = _DATE_LITERAL.match(v)
    if m:
        return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=int(m.group(1)))
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    dt = datetime.fromisoformat(v)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def entity_set_for(logical_name: str) -> str:
    name = (logical_name or "").strip().lower()
    if not name:
        raise ValueError("logical_name is required")
    return _IRREGULAR_ENTITY_SETS.get(name, name + "s")


def entity_name_from_fetch(fetch_xml: str) -> str:
    match = re.search(r"<entity\s+name=[\"']([^\"']+)[\"']", fetch_xml or "")
    if not match:
        raise ValueError("FetchXML has no <entity name=...> element")
    return match.group(1)


@dataclass
class DataverseClient:
    base_url: str
    api_version: str
    token_provider: AccessTokenSource
    transport: httpx.BaseTransport | None = None

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=30.0, transport=self.transport)

    def _headers(self, *, include_annotations: bool = True) -> dict[str, str]:
        token = self.token_provider.get_access_token()
        headers: dict[str, str] = {
            "Authorization": f"Bearer {token}",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Accept": "application/json;odata.metadata=none",
            "Content-Type": "application/json; charset=utf-8",
        }
        if include_annotations:
            headers["Prefer"] = (
                'odata.include-annotations="'
                'OData.Community.Display.V1.FormattedValue,'
                'Microsoft.Dynamics.CRM.lookuplogicalname'
                '"'
            )
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/api/data/{self.api_version}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, *, payload: dict[str, Any] | None = None, include_annotations: bool = True) -> httpx.Response:
        url = self._url(path)
        try:
            headers = self._headers(include_annotations=include_annotations)
        except RuntimeError as e:
            raise GatewayFault(f"Dataverse {method} {url} failed: {e}", url=url) from e
        try:
            with self._client() as client:
                resp = client.request(method, url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise GatewayFault(f"Dataverse {method} {url} failed: {e}", url=url) from e
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = (resp.text or "").strip()
            raise GatewayFault(
                f"Dataverse {method} {url} failed: HTTP {resp.status_code}. {body}",
                status_code=resp.status_code,
                url=url,
            ) from e
        return resp

    def _get(self, path: str, *, include_annotations: bool = True) -> dict[str, Any]:
        resp = self._send("GET", path, include_annotations=include_annotations)
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayFault(f"Dataverse GET {path} returned a non-JSON body", url=self._url(path)) from e

    def fetch(self, fetch_xml: str, *, entity_set: str | None = None) -> list[dict[str, Any]]:
        """Run a FetchXML query through the Web API and return the rows."""
        es = entity_set or entity_set_for(entity_name_from_fetch(fetch_xml))
        payload = self._get(f"{es}?fetchXml={quote(fetch_xml, safe='')}")
        rows = payload.get("value", []) if isinstance(payload, dict) else []
        return [r for r in rows if isinstance(r, dict)]

    def create_record(self, entity_set: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a Dataverse record and return {"id": <guid>, "entity_set": <...>}.

        Dataverse usually answers 204 with an OData-EntityId header rather than a body.
        """
        resp = self._send("POST", entity_set, payload=payload, include_annotations=False)
        entity_id = resp.headers.get("OData-EntityId") or resp.headers.get("Location")
        record_id = _extract_guid_from_odata_entity_id(entity_id) if entity_id else None
        if not record_id and resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if isinstance(body, dict):
                record_id = body.get(f"{entity_set.rstrip('s')}id") or body.get("id")
        if not record_id:
            raise GatewayFault(f"Create {entity_set} succeeded but no record id was returned.", url=self._url(entity_set))
        logger.info("Created %s record %s", entity_set, record_id)
        return {"entity_set": entity_set, "id": str(record_id)}
