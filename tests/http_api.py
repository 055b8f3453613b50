from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import time

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from pytest_assume.plugin import assume
from tenacity import wait_none

from medisort.helpers.config_models.backend import HttpModel
from medisort.models.reminder import (
    FrequencyEnum,
    ReminderPatchModel,
    SourceKindEnum,
)
from medisort.persistence.errors import (
    BackendAuthError,
    BackendMalformedError,
    BackendNetworkError,
    BackendNotFoundError,
)
from medisort.persistence.http_api import (
    HttpLinkedBackend,
    HttpStandaloneBackend,
    _HttpClient,
    _patch_to_json,
)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@asynccontextmanager
async def _serve(
    method: str,
    path: str,
    handler: _Handler,
) -> AsyncGenerator[HttpModel, None]:
    """
    Serve a single route on a local port, yield the config to reach it.
    """
    app = web.Application()
    app.router.add_route(method, path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield HttpModel(
            base_url=f"http://{server.host}:{server.port}",
            timeout_sec=5,
        )
    finally:
        await server.close()


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(_HttpClient._request.retry, "wait", wait_none())


@pytest.mark.asyncio(loop_scope="session")
async def test_chunked_body() -> None:
    """
    Test a chunked answer, without content length, is read in full.
    """

    async def _handler(request: web.Request) -> web.StreamResponse:
        res = web.StreamResponse()
        res.content_type = "application/json"
        res.enable_chunked_encoding()
        await res.prepare(request)
        await res.write(b'[{"id": 1, "title": "Walk", ')
        await res.write(b'"time": "18:00", "isActive": true}]')
        await res.write_eof()
        return res

    async with _serve("GET", "/api/custom-reminders", _handler) as config:
        reminders = await HttpStandaloneBackend(config).reminder_list()

    assume(len(reminders) == 1)
    reminder = reminders[0]
    assume(reminder.id == "1")
    assume(reminder.label == "Walk")
    assume(reminder.source_kind == SourceKindEnum.STANDALONE)
    assume(reminder.time_of_day == time(18, 0))


@pytest.mark.asyncio(loop_scope="session")
async def test_empty_body() -> None:
    """
    Test an empty answer, as for a deletion, is not an error.
    """

    async def _handler(request: web.Request) -> web.StreamResponse:
        return web.Response(status=204)

    async with _serve("DELETE", "/api/custom-reminders/1", _handler) as config:
        assume(await HttpStandaloneBackend(config).reminder_delete("1") is None)


@pytest.mark.asyncio(loop_scope="session")
async def test_malformed_record_dropped() -> None:
    """
    Test an unreadable record is dropped, the readable ones are carried by the error.
    """

    async def _handler(request: web.Request) -> web.StreamResponse:
        return web.json_response(
            [
                {"id": 10, "isActive": True, "reminderTime": "08:30"},
                {"id": 11, "isActive": True},  # No time
                {"id": 12, "reminderTime": "25:99"},
            ]
        )

    async with _serve("GET", "/api/medicines/{medicine_id}/reminders", _handler) as config:
        with pytest.raises(BackendMalformedError) as e:
            await HttpLinkedBackend(config).reminder_list("token", "3")

    parsed = e.value.parsed
    assume(len(parsed) == 1)
    assume(parsed[0].id == "10")
    assume(parsed[0].medicine_id == "3")
    assume(parsed[0].time_of_day == time(8, 30))


@pytest.mark.asyncio(loop_scope="session")
async def test_malformed_answer() -> None:
    """
    Test an answer that is not JSON, or not the expected shape, is reported as unreadable.
    """

    async def _not_json(request: web.Request) -> web.StreamResponse:
        return web.Response(body=b"<html>Oops</html>", content_type="text/html")

    async def _not_a_reminder(request: web.Request) -> web.StreamResponse:
        return web.json_response({"message": "created"})

    async with _serve("GET", "/api/custom-reminders", _not_json) as config:
        with pytest.raises(BackendMalformedError):
            await HttpStandaloneBackend(config).reminder_list()

    async with _serve("PUT", "/api/custom-reminders/{reminder_id}", _not_a_reminder) as config:
        with pytest.raises(BackendMalformedError):
            await HttpStandaloneBackend(config).reminder_update(
                "1", ReminderPatchModel(label="Run")
            )


@pytest.mark.asyncio(loop_scope="session")
@pytest.mark.parametrize(
    "status, error",
    [
        pytest.param(401, BackendAuthError, id="unauthorized"),
        pytest.param(403, BackendAuthError, id="forbidden"),
        pytest.param(404, BackendNotFoundError, id="not_found"),
    ],
)
async def test_status_mapping(status: int, error: type[Exception]) -> None:
    """
    Test client error statuses are mapped to backend errors, and never retried.
    """
    calls = []

    async def _handler(request: web.Request) -> web.StreamResponse:
        calls.append(request.path)
        return web.json_response({"message": "nope"}, status=status)

    async with _serve("GET", "/api/medicines/user/all", _handler) as config:
        with pytest.raises(error):
            await HttpLinkedBackend(config).medicine_list("token")

    assume(len(calls) == 1)


@pytest.mark.asyncio(loop_scope="session")
async def test_server_error_retried() -> None:
    """
    Test a server error is retried 3 times, then raised as a network failure.
    """
    calls = []

    async def _handler(request: web.Request) -> web.StreamResponse:
        calls.append(request.headers.get("Authorization"))
        return web.Response(status=503)

    async with _serve("GET", "/api/medicines/user/all", _handler) as config:
        with pytest.raises(BackendNetworkError):
            await HttpLinkedBackend(config).medicine_list("token")

    assume(calls == ["Bearer token"] * 3)


@pytest.mark.asyncio(loop_scope="session")
async def test_server_error_recovered() -> None:
    """
    Test a transient server error is invisible when a retry succeeds.
    """
    calls = []

    async def _handler(request: web.Request) -> web.StreamResponse:
        calls.append(request.path)
        if len(calls) == 1:
            return web.Response(status=502)
        return web.json_response([{"id": 3, "name": "Aspirin"}])

    async with _serve("GET", "/api/medicines/user/all", _handler) as config:
        medicines = await HttpLinkedBackend(config).medicine_list("token")

    assume(len(calls) == 2)
    assume([(m.id, m.name) for m in medicines] == [("3", "Aspirin")])


def test_patch_to_json() -> None:
    """
    Test only the fields set in a patch are sent, under the remote names.
    """
    patch = ReminderPatchModel(
        days_of_week={5, 1},
        is_active=False,
        label="Run",
        time_of_day=time(7, 45),
    )

    standalone = _patch_to_json(patch, time_field="time", label_field="title")
    assume(
        standalone
        == {
            "daysOfWeek": [1, 5],
            "isActive": False,
            "time": "07:45",
            "title": "Run",
        }
    )

    # Linked labels come from the medicine, never sent
    linked = _patch_to_json(patch, time_field="reminderTime")
    assume("title" not in linked)
    assume(linked["reminderTime"] == "07:45")

    assume(
        _patch_to_json(
            ReminderPatchModel(frequency=FrequencyEnum.MONTHLY), time_field="time"
        )
        == {"frequency": "monthly"}
    )
