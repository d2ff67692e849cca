from __future__ import annotations

from typing import Any
import logging
import threading

from .dataverse import DataverseClient, GatewayFault, entity_set_for
from .models import Booking
from .queries import GET_WORK_ORDER_BOOKINGS, WORK_ORDER_PLACEHOLDER, QueryCatalog


logger = logging.getLogger(__name__)

# Shared by every gateway in the process; each call holds it end to end.
_GATEWAY_LOCK = threading.Lock()


class QueryGateway:
    """Templated reads and single-record inserts against Dataverse.

    Faults are logged and re-raised unchanged; there is no retry.
    """

    def __init__(self, dv: DataverseClient, queries: QueryCatalog | None = None, *, lock: threading.Lock | None = None) -> None:
        self._dv = dv
        self._queries = queries or QueryCatalog.load()
        self._lock = lock or _GATEWAY_LOCK

    def retrieve_multiple(self, fetch_xml: str) -> list[dict[str, Any]]:
        try:
            with self._lock:
                return self._dv.fetch(fetch_xml)
        except GatewayFault as e:
            logger.warning("RetrieveMultiple failed: %s", str(e)[:800])
            raise

    def find_bookings_by_work_order(self, work_order_id: str) -> list[Booking]:
        fetch_xml = self._queries.render(GET_WORK_ORDER_BOOKINGS, {WORK_ORDER_PLACEHOLDER: work_order_id})
        rows = self.retrieve_multiple(fetch_xml)
        bookings: list[Booking] = []
        for row in rows:
            try:
                bookings.append(Booking.from_dataverse(row))
            except ValueError:
                # A booking without a start time can never share a day with the candidate.
                logger.debug("Skipping booking row without work order/start time: %s", row.get("bookableresourcebookingid"))
        return bookings

    def insert(self, entity_name: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Create one record; returns the attributes plus the assigned ``id``."""
        try:
            with self._lock:
                created = self._dv.create_record(entity_set_for(entity_name), attributes)
        except GatewayFault as e:
            logger.warning("Create %s failed: %s", entity_name, str(e)[:800])
            raise
        return {**attributes, "id": created["id"]}
