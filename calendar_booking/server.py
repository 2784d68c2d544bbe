"""Calendar Booking Server - FastAPI surface for the WhatsApp booking core.

The chatbot's tool-call layer posts calendar actions to ``/actions``; agent
owners manage their Google Calendar connection through ``/integrations``.

Key features:
- Appointment create/update/delete with per-user ownership
- One active appointment per user and a per-slot concurrency ceiling
- Transparent OAuth token refresh
- Integration connect/read/edit/disconnect

The acting user for integration routes is taken from the ``X-User-Id``
header; authenticating that header is left to the deployment.
"""

import logging
import os
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .concurrency import BookingConcurrencyController, LocalBookingGuard
from .config import Settings
from .exceptions import BookingError, GatewayError, ValidationError
from .gateway import GoogleOAuthClient
from .integrations import GoogleCalendarIntegrationService, decode_state
from .models import ActionRequest, AuthCodeRequest, IntegrationCreate, IntegrationUpdate
from .orchestrator import EventMutationOrchestrator, classify_gateway_error, failure_result
from .permissions import PermissionResolver
from .store import InMemoryTableStore, IntegrationRepository, RoleDirectory, TableStore
from .tokens import TokenManager

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================================================
# FastAPI App Setup
# ============================================================================

app = FastAPI(
    title="Calendar Booking",
    description="Appointment booking on Google Calendar for chat agents",
    version=__version__,
)


# ============================================================================
# Component wiring
# ============================================================================

_settings: Settings | None = None
_store: TableStore | None = None
_orchestrator: EventMutationOrchestrator | None = None
_integration_service: GoogleCalendarIntegrationService | None = None


def get_settings() -> Settings:
    """Get or create the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_store() -> TableStore:
    """Get or create the table store shared by all components."""
    global _store
    if _store is None:
        _store = InMemoryTableStore()
    return _store


def get_orchestrator() -> EventMutationOrchestrator:
    """Get or create the singleton EventMutationOrchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        store = get_store()
        repository = IntegrationRepository(store)
        _orchestrator = EventMutationOrchestrator(
            settings=settings,
            repository=repository,
            token_manager=TokenManager(repository, GoogleOAuthClient(settings)),
            permissions=PermissionResolver(RoleDirectory(store), settings.allow_unattributed_changes),
            concurrency=BookingConcurrencyController(settings),
            booking_guard=LocalBookingGuard(),
        )
    return _orchestrator


def get_integration_service() -> GoogleCalendarIntegrationService:
    """Get or create the singleton GoogleCalendarIntegrationService instance."""
    global _integration_service
    if _integration_service is None:
        settings = get_settings()
        store = get_store()
        repository = IntegrationRepository(store)
        oauth_client = GoogleOAuthClient(settings)
        _integration_service = GoogleCalendarIntegrationService(
            settings=settings,
            repository=repository,
            roles=RoleDirectory(store),
            oauth_client=oauth_client,
            token_manager=TokenManager(repository, oauth_client),
        )
    return _integration_service


# ============================================================================
# Pydantic Models - Responses
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str = __version__


# ============================================================================
# Helper Functions
# ============================================================================


def error_response(e: Exception) -> JSONResponse:
    """Render a service failure with its mapped status code."""
    if isinstance(e, GatewayError):
        e = classify_gateway_error(e)
    if isinstance(e, BookingError):
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "error": e.message, "details": e.details},
        )
    logger.exception("Unhandled error: %s", e)
    return JSONResponse(status_code=500, content={"success": False, "error": str(e)})


async def run_service(call) -> Any:
    try:
        return await call
    except (BookingError, GatewayError) as e:
        return error_response(e)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed tool calls get the result envelope; other routes keep the default 422."""
    if request.url.path != "/actions":
        return await request_validation_exception_handler(request, exc)

    errors = jsonable_encoder(exc.errors())
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}" for err in errors
    )
    logger.warning("Rejected malformed tool call: %s", problems)
    result = failure_result(ValidationError(f"Invalid tool call: {problems}", details={"errors": errors}))
    return JSONResponse(status_code=result.status_code, content=result.model_dump(mode="json"))


# ============================================================================
# Health Endpoint
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check():
    """Health check endpoint. Returns server status and version."""
    return HealthResponse()


# ============================================================================
# Tool-call Endpoint
# ============================================================================


@app.post("/actions", tags=["actions"])
async def execute_action(request: ActionRequest):
    """Run a calendar action for the chatbot's tool-call layer.

    The body is always the result envelope; the HTTP status mirrors the
    envelope's outcome (201 on create, 409 for an occupied slot, ...).
    """
    result = await get_orchestrator().execute(request)
    return JSONResponse(status_code=result.status_code, content=result.model_dump(mode="json"))


# ============================================================================
# Integration Endpoints
# ============================================================================


@app.get("/integrations/google/auth-url", tags=["integrations"])
async def get_auth_url(agent_id: str, x_user_id: str = Header(...)):
    """Consent URL for connecting a Google Calendar to an agent."""
    return await run_service(get_integration_service().get_auth_url(agent_id, x_user_id))


@app.post("/integrations/google/callback", tags=["integrations"])
async def oauth_callback(request: AuthCodeRequest, x_user_id: str | None = Header(None)):
    """Complete the OAuth flow. Agent and user come from ``state`` when present."""
    agent_id = request.agentId
    user_id = x_user_id
    if request.state:
        try:
            state = decode_state(request.state)
        except BookingError as e:
            return error_response(e)
        agent_id = agent_id or state.get("agentId")
        user_id = user_id or state.get("userId")
    if not agent_id or not user_id:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "agentId and user are required to complete authorization."},
        )
    return await run_service(get_integration_service().process_auth_code(request.code, user_id, agent_id))


@app.post("/integrations/google", status_code=201, tags=["integrations"])
async def create_integration(request: IntegrationCreate, x_user_id: str = Header(...)):
    """Create an integration from externally obtained tokens."""
    return await run_service(get_integration_service().create_integration(request, x_user_id))


@app.get("/integrations/{integration_id}", tags=["integrations"])
async def get_integration(integration_id: str, x_user_id: str = Header(...)):
    """Integration details without credentials."""
    return await run_service(get_integration_service().get_integration(integration_id, x_user_id))


@app.patch("/integrations/{integration_id}", tags=["integrations"])
async def update_integration(integration_id: str, request: IntegrationUpdate, x_user_id: str = Header(...)):
    """Edit name, description, status or calendar settings."""
    return await run_service(get_integration_service().update_integration(integration_id, request, x_user_id))


@app.delete("/integrations/{integration_id}", tags=["integrations"])
async def delete_integration(integration_id: str, x_user_id: str = Header(...)):
    """Deactivate an integration and revoke its tokens."""
    return await run_service(get_integration_service().delete_integration(integration_id, x_user_id))


@app.get("/integrations/{integration_id}/calendars", tags=["integrations"])
async def list_calendars(integration_id: str, x_user_id: str = Header(...)):
    """Calendars visible to the connected Google account."""
    return await run_service(get_integration_service().list_calendars(integration_id, x_user_id))


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("CALENDAR_BOOKING_PORT", "8082"))
    uvicorn.run(app, host="0.0.0.0", port=port)
