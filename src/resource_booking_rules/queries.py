"""FetchXML query templates.

Templates live in an XML document of the form::

    <Queries>
      <Query Id="GetWorkOrderBookings">...fetchxml...</Query>
    </Queries>

Parameters are substituted by plain text replacement of their placeholder
token. Nothing is escaped: a value that itself contains a placeholder token,
or XML metacharacters, changes the query text.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Mapping
import xml.etree.ElementTree as ET


GET_WORK_ORDER_BOOKINGS = "GetWorkOrderBookings"
WORK_ORDER_PLACEHOLDER = "WorkOrderId"


def parse_queries(xml_text: str) -> dict[str, str]:
    root = ET.fromstring(xml_text)
    container = root if root.tag == "Queries" else root.find(".//Queries")
    if container is None:
        raise ValueError("Query document has no <Queries> element")

    queries: dict[str, str] = {}
    for node in container:
        query_id = node.attrib.get("Id")
        if not query_id:
            raise ValueError(f"<{node.tag}> element is missing its Id attribute")
        if query_id in queries:
            raise ValueError(f"Duplicate query id: {query_id}")
        queries[query_id] = (node.text or "").strip()
    return queries


@dataclass(frozen=True)
class QueryCatalog:
    templates: Mapping[str, str]

    @classmethod
    def load(cls, path: str | Path | None = None) -> "QueryCatalog":
        if path is not None:
            text = Path(path).read_text(encoding="utf-8")
        else:
            text = resources.files(__package__).joinpath("queries.xml").read_text(encoding="utf-8")
        return cls(parse_queries(text))

    def template(self, query_id: str) -> str:
        try:
            return self.templates[query_id]
        except KeyError:
            raise KeyError(f"Unknown query id: {query_id}") from None

    def render(self, query_id: str, params: Mapping[str, object]) -> str:
        text = self.template(query_id)
        for token, value in params.items():
            text = text.replace(token, str(value))
        return text
