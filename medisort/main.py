import asyncio
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Annotated, Any

from fastapi import Body, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from medisort.helpers.cache import get_scheduler
from medisort.helpers.config import CONFIG
from medisort.helpers.engine import ReminderEngine
from medisort.helpers.http import aiohttp_session
from medisort.helpers.logging import logger
from medisort.helpers.monitoring import start_as_current_span, suppress
from medisort.models.error import (
    ErrorInnerModel,
    ErrorKindEnum,
    ErrorModel,
    WriteResultModel,
)
from medisort.models.notification import SnapshotModel
from medisort.models.readiness import ReadinessEnum
from medisort.models.reminder import (
    ReminderImportModel,
    ReminderStatsModel,
    SourceKindEnum,
)
from medisort.models.session import IdentityModel, SessionStatusModel
from medisort.persistence.console import ConsoleSink
from medisort.persistence.errors import BackendAuthError, BackendError

# First log
logger.info(
    "medisort-reminders v%s",
    CONFIG.version,
)

# Engine
_engine = ReminderEngine.from_config(CONFIG)
_engine.dispatcher.subscribe(ConsoleSink())

_ERROR_STATUS: dict[ErrorKindEnum, HTTPStatus] = {
    ErrorKindEnum.NETWORK_FAILURE: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorKindEnum.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKindEnum.SESSION_EXPIRED: HTTPStatus.UNAUTHORIZED,
    ErrorKindEnum.UNAUTHENTICATED: HTTPStatus.UNAUTHORIZED,
    ErrorKindEnum.VALIDATION_FAILURE: HTTPStatus.UNPROCESSABLE_ENTITY,
}


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    tick_task = None

    try:
        await _engine.start()
        tick_task = asyncio.create_task(_engine.run())
        yield

    # Cancel tasks
    finally:
        if tick_task:
            tick_task.cancel()
            with suppress(asyncio.CancelledError):
                await tick_task

    # Close HTTP session
    await (await aiohttp_session()).close()


# FastAPI
api = FastAPI(
    description="Reminder lifecycle and notification engine of the medisort medication manager.",
    lifespan=lifespan,
    title="medisort-reminders",
    version=CONFIG.version,
)


@api.get("/health/liveness")
@start_as_current_span("health_liveness_get")
async def health_liveness_get() -> None:
    """
    Check if the service is running.

    No parameters are expected.

    Returns a 200 OK if the service is technically running.
    """
    return


@api.get(
    "/health/readiness",
    status_code=HTTPStatus.OK,
)
@start_as_current_span("health_readiness_get")
async def health_readiness_get() -> JSONResponse:
    """
    Check if the service is ready to serve requests.

    No parameters are expected. Services tested are: cache, credential issuer, linked and standalone backends.

    Returns a 200 OK if the service is ready to serve requests. If the service is not ready, it should return a 503 Service Unavailable.
    """
    readiness = await _engine.readiness()
    return JSONResponse(
        content=readiness.model_dump(mode="json"),
        status_code=HTTPStatus.OK
        if readiness.status == ReadinessEnum.OK
        else HTTPStatus.SERVICE_UNAVAILABLE,
    )


@api.get("/reminders")
@start_as_current_span("reminder_list_get")
async def reminder_list_get() -> SnapshotModel:
    """
    REST API to get the reminders of the last evaluation tick.

    Returns a `SnapshotModel` with the classified reminders and the badge count.
    """
    return _engine.snapshot()


@api.post("/reminders/evaluate")
@start_as_current_span("reminder_evaluate_post")
async def reminder_evaluate_post() -> SnapshotModel:
    """
    REST API to run an evaluation tick now.

    Returns the `SnapshotModel` of the tick.
    """
    return await _engine.tick()


@api.get("/reminders/stats")
@start_as_current_span("reminder_stats_get")
async def reminder_stats_get(hours_ahead: int | None = None) -> ReminderStatsModel:
    """
    REST API to get statistics of the reminders.

    Optional URL parameters:
    - hours_ahead: Window of the upcoming count, in hours

    Returns a `ReminderStatsModel`.
    """
    return _engine.stats(hours_ahead=hours_ahead)


@api.get("/reminders/export")
@start_as_current_span("reminder_export_get")
async def reminder_export_get() -> Response:
    """
    REST API to export the standalone reminders.

    Returns a JSON file.
    """
    return Response(
        content=_engine.export_standalone(),
        headers={"Content-Disposition": 'attachment; filename="reminders.json"'},
        media_type="application/json",
    )


@api.post("/reminders/import")
@start_as_current_span("reminder_import_post")
async def reminder_import_post(request: Request) -> ReminderImportModel:
    """
    REST API to import standalone reminders from an export.

    Returns a `ReminderImportModel` with the count of imported reminders and the errors.
    """
    async with get_scheduler() as scheduler:
        return await _engine.import_standalone(
            raw=await request.body(),
            scheduler=scheduler,
        )


@api.post("/reminders/{kind}")
@start_as_current_span("reminder_create_post")
async def reminder_create_post(
    kind: SourceKindEnum,
    draft: Annotated[dict[str, Any], Body()],
) -> JSONResponse:
    """
    REST API to create a reminder.

    Returns the created reminder with a 201 Created. Medicine reminders require a session.
    """
    async with get_scheduler() as scheduler:
        result = await _engine.create(
            draft=draft,
            kind=kind,
            scheduler=scheduler,
        )
    return _write_response(result, HTTPStatus.CREATED)


@api.patch("/reminders/{kind}/{reminder_id}")
@start_as_current_span("reminder_update_patch")
async def reminder_update_patch(
    kind: SourceKindEnum,
    reminder_id: str,
    patch: Annotated[dict[str, Any], Body()],
) -> JSONResponse:
    """
    REST API to update a reminder, only the given fields are changed.
    """
    async with get_scheduler() as scheduler:
        result = await _engine.update(
            kind=kind,
            patch=patch,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )
    return _write_response(result)


@api.delete("/reminders/{kind}/{reminder_id}")
@start_as_current_span("reminder_delete")
async def reminder_delete(
    kind: SourceKindEnum,
    reminder_id: str,
) -> JSONResponse:
    """
    REST API to delete a reminder.

    Deleting a reminder already gone is a success.
    """
    async with get_scheduler() as scheduler:
        result = await _engine.delete(
            kind=kind,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )
    return _write_response(result)


@api.post("/reminders/{kind}/{reminder_id}/toggle")
@start_as_current_span("reminder_toggle_post")
async def reminder_toggle_post(
    kind: SourceKindEnum,
    reminder_id: str,
    is_active: bool | None = None,
) -> JSONResponse:
    """
    REST API to switch a reminder on or off.

    Optional URL parameters:
    - is_active: Target value, the current one is flipped if not set
    """
    async with get_scheduler() as scheduler:
        result = await _engine.toggle(
            is_active=is_active,
            kind=kind,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )
    return _write_response(result)


@api.post("/reminders/{kind}/{reminder_id}/taken")
@start_as_current_span("reminder_taken_post")
async def reminder_taken_post(
    kind: SourceKindEnum,
    reminder_id: str,
) -> JSONResponse:
    """
    REST API to mark today's occurrence as taken.
    """
    async with get_scheduler() as scheduler:
        result = await _engine.mark_taken(
            kind=kind,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )
    return _write_response(result)


@api.post("/reminders/{kind}/{reminder_id}/skipped")
@start_as_current_span("reminder_skipped_post")
async def reminder_skipped_post(
    kind: SourceKindEnum,
    reminder_id: str,
) -> JSONResponse:
    """
    REST API to mark today's occurrence as skipped.
    """
    async with get_scheduler() as scheduler:
        result = await _engine.mark_skipped(
            kind=kind,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )
    return _write_response(result)


@api.get("/session")
@start_as_current_span("session_get")
async def session_get() -> SessionStatusModel:
    """
    REST API to get the session state.

    Returns a `SessionStatusModel`.
    """
    return _engine.guard.status()


@api.post("/session/login")
@start_as_current_span("session_login_post")
async def session_login_post(identity: IdentityModel) -> JSONResponse:
    """
    REST API to open a session.

    Returns a `SessionStatusModel`, or a 401 Unauthorized if the identity is refused.
    """
    try:
        status = await _engine.login(identity)
    except BackendAuthError:
        return _standard_error(
            message="Invalid username or password",
            status_code=HTTPStatus.UNAUTHORIZED,
        )
    except BackendError:
        return _standard_error(
            message="Service unavailable, please retry later",
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        )
    return JSONResponse(
        content=status.model_dump(mode="json"),
        status_code=HTTPStatus.OK,
    )


@api.post(
    "/session/logout",
    status_code=HTTPStatus.NO_CONTENT,
)
@start_as_current_span("session_logout_post")
async def session_logout_post() -> None:
    """
    REST API to close the session.

    All the data tied to the session is purged.
    """
    await _engine.logout()


@api.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation exceptions and return the error in a standard format.
    """
    return _validation_error(exc)


def _write_response(
    result: WriteResultModel,
    success_code: HTTPStatus = HTTPStatus.OK,
) -> JSONResponse:
    """
    Map a write result to its HTTP response.
    """
    if result.error:
        message = "Write failed"
        if result.error in (
            ErrorKindEnum.SESSION_EXPIRED,
            ErrorKindEnum.UNAUTHENTICATED,
        ):
            message = "Authentication required, please log in again"
        return _standard_error(
            details=result.details,
            message=message,
            status_code=_ERROR_STATUS[result.error],
        )
    return JSONResponse(
        content=result.reminder.model_dump(mode="json") if result.reminder else None,
        status_code=success_code,
    )


def _validation_error(e: ValidationError | RequestValidationError) -> JSONResponse:
    """
    Generate a standard validation error response.
    """
    messages = [
        str(x) for x in e.errors()
    ]  # Pydantic returns well formatted errors, use them
    return _standard_error(
        details=messages,
        message="Validation error",
        status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
    )


def _standard_error(
    message: str,
    status_code,
    details: list[str] | None = None,
) -> JSONResponse:
    """
    Generate a standard error response.
    """
    model = ErrorModel(
        error=ErrorInnerModel(
            details=details or [],
            message=message,
        )
    )
    return JSONResponse(
        content=model.model_dump(mode="json"),
        status_code=status_code,
    )
