from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
import logging

import uvicorn
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from mcp.types import ToolAnnotations
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from .auth import TokenProvider
from .booking_service import BookingValidationService
from .config import Settings, load_settings
from .dataverse import DataverseClient, GatewayFault
from .gateway import QueryGateway
from .pipeline import ExecutionContext, build_booking_pipeline
from .queries import QueryCatalog
from .validation import DuplicateBookingConflict


logger = logging.getLogger(__name__)


class _BearerTokenMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, token: str) -> None:
        super().__init__(app)
        self._token = token

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        auth = request.headers.get("authorization", "")
        expected = f"Bearer {self._token}"
        if auth != expected:
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        return await call_next(request)


def build_service(settings: Settings) -> BookingValidationService:
    token_provider = TokenProvider(
        tenant_id=settings.dataverse_tenant_id,
        client_id=settings.dataverse_client_id,
        client_secret=settings.dataverse_client_secret,
        resource=settings.dataverse_base_url,
    )
    dv = DataverseClient(
        base_url=settings.dataverse_base_url,
        api_version=settings.dataverse_api_version,
        token_provider=token_provider,
    )
    gateway = QueryGateway(dv, QueryCatalog.load(settings.queries_path))
    return BookingValidationService(
        gateway,
        allow_writes=settings.allow_writes,
        exclude_self=settings.exclude_self,
    )


def build_mcp(service: BookingValidationService) -> FastMCP:
    read_tool = ToolAnnotations(readOnlyHint=True, openWorldHint=True)
    write_tool = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False, openWorldHint=True)

    # DNS rebinding protection is off so the server can sit behind a tunnel
    # whose public hostname changes.
    mcp = FastMCP(
        "resource-booking-rules",
        transport_security=TransportSecuritySettings(enable_dns_rebinding_protection=False),
    )

    @mcp.tool(annotations=read_tool)
    def validate_booking(
        work_order_id: str | None = None,
        start_time: str | None = None,
        booking_id: str | None = None,
        is_update: bool = False,
        prior_work_order_id: str | None = None,
        prior_start_time: str | None = None,
    ) -> dict[str, Any]:
        """Check whether a booking would put two bookings on one work order on the same day.

        For updates, pass only the fields being changed plus the prior_* values
        currently stored on the booking.
        """
        candidate: dict[str, Any] = {}
        if work_order_id:
            candidate["msdyn_workorder"] = work_order_id
        if start_time:
            candidate["starttime"] = start_time
        if booking_id:
            candidate["bookableresourcebookingid"] = booking_id
        prior: dict[str, Any] | None = None
        if is_update:
            prior = {"msdyn_workorder": prior_work_order_id, "starttime": prior_start_time}
        try:
            outcome = service.validate_booking(candidate, is_update=is_update, prior_state=prior)
            return outcome.to_dict()
        except Exception as e:
            return {"status": "error", "message": "Failed to validate booking.", "details": str(e)}

    @mcp.tool(annotations=read_tool)
    def list_work_order_bookings(work_order_id: str) -> dict[str, Any]:
        """List the bookings currently attached to a work order."""
        try:
            bookings = service.list_work_order_bookings(work_order_id)
            return {"status": "ok", "count": len(bookings), "results": [b.to_dict() for b in bookings]}
        except Exception as e:
            return {
                "status": "error",
                "message": "Failed to list work order bookings.",
                "details": str(e),
                "count": 0,
                "results": [],
            }

    @mcp.tool(annotations=write_tool)
    def create_booking(
        work_order_id: str,
        resource_id: str,
        booking_status_id: str,
        start_time: str,
        end_time: str,
        name: str | None = None,
    ) -> dict[str, Any]:
        """Create a booking for a work order after checking the same-day rule."""
        try:
            created = service.create_booking(
                work_order_id=work_order_id,
                resource_id=resource_id,
                booking_status_id=booking_status_id,
                start_time=start_time,
                end_time=end_time,
                name=name,
            )
            return {"status": "ok", "booking": created}
        except DuplicateBookingConflict as e:
            return {"status": "reject", "reason": e.message, "conflicts": [b.to_dict() for b in e.conflicts]}
        except Exception as e:
            return {"status": "error", "message": "Failed to create booking.", "details": str(e)}

    return mcp


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, GatewayFault):
        return JSONResponse({"status": "error", "message": "Dataverse request failed.", "details": str(e)}, status_code=502)
    return JSONResponse({"status": "error", "message": "Invalid booking payload.", "details": str(e)}, status_code=422)


def build_asgi_app(service: BookingValidationService | None = None, settings: Settings | None = None) -> Any:
    if service is None:
        settings = settings or load_settings()
        service = build_service(settings)

    pipeline = build_booking_pipeline(service)
    app = build_mcp(service).sse_app()

    async def _root(_: Request) -> Response:
        return RedirectResponse(url="/sse", status_code=307)

    async def _validate(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"status": "error", "message": "Request body must be JSON."}, status_code=400)
        if not isinstance(body, dict) or not isinstance(body.get("candidate"), dict):
            return JSONResponse({"status": "error", "message": "Expected a 'candidate' object."}, status_code=400)

        prior = body.get("prior_state")
        try:
            outcome = await run_in_threadpool(
                service.validate_booking,
                body["candidate"],
                bool(body.get("is_update", False)),
                prior if isinstance(prior, dict) else None,
            )
        except (GatewayFault, ValueError) as e:
            return _error_response(e)
        return JSONResponse(outcome.to_dict(), status_code=200 if outcome.accepted else 409)

    async def _webhook(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"status": "error", "message": "Request body must be JSON."}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"status": "error", "message": "Expected a RemoteExecutionContext object."}, status_code=400)

        ctx = ExecutionContext.from_remote(body)
        try:
            fired = await run_in_threadpool(pipeline.execute, ctx)
        except DuplicateBookingConflict as e:
            # A non-2xx answer makes a synchronous webhook step abort the operation.
            return JSONResponse({"status": "reject", "reason": e.message}, status_code=400)
        except (GatewayFault, ValueError) as e:
            return _error_response(e)
        return JSONResponse({"status": "accept", "steps": fired})

    app.add_route("/", _root, methods=["GET", "POST"])
    app.add_route("/validate", _validate, methods=["POST"])
    app.add_route("/webhook", _webhook, methods=["POST"])

    token = settings.auth_token if settings is not None else None
    if token:
        app.add_middleware(_BearerTokenMiddleware, token=token)

    return app


def configure_logging(log_file: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setFormatter(formatter)
        root.addHandler(sh)

    if log_file:
        log_path = Path(log_file).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if not any(getattr(h, "baseFilename", None) == str(log_path) for h in root.handlers):
            fh = logging.FileHandler(log_path, encoding="utf-8")
            fh.setLevel(logging.INFO)
            fh.setFormatter(formatter)
            root.addHandler(fh)

    # Request-level logging from httpx is too noisy at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_file)
    app = build_asgi_app(settings=settings)
    logger.info("Serving booking rules for %s on %s:%s", settings.dataverse_base_url, settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
