from collections.abc import Callable
from http import HTTPStatus
from typing import Any

from aiohttp import ClientError, ClientResponse, ClientTimeout
from pydantic import ValidationError
from pydantic_core import from_json
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from medisort.helpers.config_models.backend import HttpModel
from medisort.helpers.http import aiohttp_session
from medisort.helpers.logging import logger
from medisort.models.readiness import ReadinessEnum
from medisort.models.reminder import (
    MedicineModel,
    ReminderDraftModel,
    ReminderModel,
    ReminderPatchModel,
    SourceKindEnum,
)
from medisort.models.session import IdentityModel
from medisort.persistence.errors import (
    BackendAuthError,
    BackendError,
    BackendMalformedError,
    BackendNetworkError,
    BackendNotFoundError,
)
from medisort.persistence.icredential import ICredentialIssuer
from medisort.persistence.ilinked import ILinkedBackend
from medisort.persistence.istandalone import IStandaloneBackend


class _HttpClient:
    """
    Shared JSON client for the remote API.

    Transient errors are retried, all writes are idempotent by identifier so this is safe.
    """

    _config: HttpModel

    def __init__(self, config: HttpModel):
        logger.info("Using HTTP backend %s", config.base_url)
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the remote API.

        Only checks the API answers, a 401 is an answer.
        """
        try:
            await self._request("GET", "/api/medicines/user/all")
            return ReadinessEnum.OK
        except BackendAuthError:
            return ReadinessEnum.OK
        except BackendError:
            logger.exception("Readiness test failed")
        return ReadinessEnum.FAIL

    @retry(
        reraise=True,
        retry=retry_if_exception_type(BackendNetworkError),
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.8, max=8),
    )
    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body, `None` if empty.

        Catch errors for a maximum of 3 times, then raise the error.
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        session = await aiohttp_session()
        try:
            async with session.request(
                headers=headers,
                json=body,
                method=method,
                timeout=ClientTimeout(total=self._config.timeout_sec),
                url=self._config.base_url.rstrip("/") + path,
            ) as res:
                self._raise_for_status(res)
                # Length is unknown for chunked or compressed answers, only the body tells
                raw = await res.read()
        except (ClientError, TimeoutError) as e:
            raise BackendNetworkError(f"{method} {path} failed") from e
        if not raw.strip():
            return None
        try:
            return from_json(raw)
        except ValueError as e:
            raise BackendMalformedError(f"{method} {path} answered invalid JSON") from e

    @staticmethod
    def _raise_for_status(res: ClientResponse) -> None:
        if res.status in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
            raise BackendAuthError(f"Refused with status {res.status}")
        if res.status == HTTPStatus.NOT_FOUND:
            raise BackendNotFoundError(f"Not found at {res.url.path}")
        if res.status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise BackendNetworkError(f"Server error {res.status}")
        if res.status >= HTTPStatus.BAD_REQUEST:
            raise BackendError(f"Request rejected with status {res.status}")


class HttpCredentialIssuer(_HttpClient, ICredentialIssuer):
    async def login(self, identity: IdentityModel) -> str:
        res = await self._request(
            body={
                "password": identity.password.get_secret_value(),
                "username": identity.username,
            },
            method="POST",
            path="/api/auth/login",
        )
        return self._token(res)

    async def refresh(self, token: str) -> str:
        res = await self._request(
            method="POST",
            path="/api/auth/refresh",
            token=token,
        )
        return self._token(res)

    @staticmethod
    def _token(res: Any) -> str:
        token = res.get("token") if isinstance(res, dict) else None
        if not token:
            raise BackendAuthError("No token in response")
        return token


class HttpLinkedBackend(_HttpClient, ILinkedBackend):
    async def medicine_list(self, token: str) -> list[MedicineModel]:
        res = await self._request(
            method="GET",
            path="/api/medicines/user/all",
            token=token,
        )
        return _parse_many(MedicineModel.model_validate, res, "medicine")

    async def reminder_list(
        self,
        token: str,
        medicine_id: str,
    ) -> list[ReminderModel]:
        res = await self._request(
            method="GET",
            path=f"/api/medicines/{medicine_id}/reminders",
            token=token,
        )
        return _parse_many(
            lambda raw: _linked_from_json(raw, medicine_id), res, "linked reminder"
        )

    async def reminder_create(
        self,
        token: str,
        draft: ReminderDraftModel,
    ) -> ReminderModel:
        assert draft.medicine_id, "Linked reminders need a medicine"
        res = await self._request(
            body={
                "daysOfWeek": sorted(draft.days_of_week),
                "frequency": draft.frequency.value,
                "isActive": draft.is_active,
                "reminderTime": draft.time_of_day.strftime("%H:%M"),
            },
            method="POST",
            path=f"/api/medicines/{draft.medicine_id}/reminders",
            token=token,
        )
        return _parse_one(
            lambda raw: _linked_from_json(raw, draft.medicine_id, draft.label), res
        )

    async def reminder_update(
        self,
        token: str,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        res = await self._request(
            body=_patch_to_json(patch, time_field="reminderTime"),
            method="PUT",
            path=f"/api/medicines/reminders/{reminder_id}",
            token=token,
        )
        return _parse_one(_linked_from_json, res)

    async def reminder_delete(
        self,
        token: str,
        reminder_id: str,
    ) -> None:
        await self._request(
            method="DELETE",
            path=f"/api/medicines/reminders/{reminder_id}",
            token=token,
        )

    async def reminder_toggle(
        self,
        token: str,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        return await self.reminder_update(
            patch=ReminderPatchModel(is_active=is_active),
            reminder_id=reminder_id,
            token=token,
        )


class HttpStandaloneBackend(_HttpClient, IStandaloneBackend):
    async def readiness(self) -> ReadinessEnum:
        try:
            await self._request("GET", "/api/custom-reminders")
            return ReadinessEnum.OK
        except BackendError:
            logger.exception("Readiness test failed")
        return ReadinessEnum.FAIL

    async def reminder_list(self) -> list[ReminderModel]:
        res = await self._request(
            method="GET",
            path="/api/custom-reminders",
        )
        return _parse_many(_standalone_from_json, res, "standalone reminder")

    async def reminder_create(self, draft: ReminderDraftModel) -> ReminderModel:
        res = await self._request(
            body={
                "daysOfWeek": sorted(draft.days_of_week),
                "frequency": draft.frequency.value,
                "isActive": draft.is_active,
                "isRecurring": True,
                "label": draft.category.value,
                "notes": draft.notes,
                "time": draft.time_of_day.strftime("%H:%M"),
                "title": draft.label,
            },
            method="POST",
            path="/api/custom-reminders",
        )
        return _parse_one(_standalone_from_json, res)

    async def reminder_update(
        self,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        res = await self._request(
            body=_patch_to_json(patch, time_field="time", label_field="title"),
            method="PUT",
            path=f"/api/custom-reminders/{reminder_id}",
        )
        return _parse_one(_standalone_from_json, res)

    async def reminder_delete(self, reminder_id: str) -> None:
        await self._request(
            method="DELETE",
            path=f"/api/custom-reminders/{reminder_id}",
        )

    async def reminder_toggle(
        self,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        # The remote toggle endpoint flips the flag, an explicit update stays idempotent on retry
        return await self.reminder_update(
            patch=ReminderPatchModel(is_active=is_active),
            reminder_id=reminder_id,
        )


_PARSE_ERRORS = (AttributeError, KeyError, TypeError, ValidationError)


def _parse_one(parse: Callable[[Any], Any], raw: Any) -> Any:
    try:
        return parse(raw)
    except _PARSE_ERRORS as e:
        raise BackendMalformedError("Record in answer cannot be read") from e


def _parse_many(parse: Callable[[Any], Any], raw: Any, name: str) -> list:
    """
    Parse a list of records, dropping the ones that cannot be read.

    Raises `BackendMalformedError` carrying the readable records if any was dropped, so the caller knows the list is incomplete.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise BackendMalformedError(f"Expected a list of {name}s")

    res = []
    dropped = 0
    for i, item in enumerate(raw):
        try:
            res.append(parse(item))
        except _PARSE_ERRORS:
            logger.exception("Cannot read %s at index %s, dropping it", name, i)
            dropped += 1
    if dropped:
        raise BackendMalformedError(f"{dropped} {name}s dropped", parsed=res)
    return res


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    # Let model defaults apply when the API omits a field
    return {k: v for k, v in data.items() if v is not None}


def _linked_from_json(
    raw: dict[str, Any],
    medicine_id: str | None = None,
    label: str | None = None,
) -> ReminderModel:
    return ReminderModel.model_validate(
        _drop_none(
            {
                "created_at": raw.get("createdAt"),
                "days_of_week": raw.get("daysOfWeek"),
                "frequency": raw.get("frequency"),
                "id": raw["id"],
                "is_active": raw.get("isActive"),
                "label": raw.get("medicineName") or label or "",
                "last_completed_at": raw.get("lastTakenAt"),
                "medicine_id": raw.get("medicineId") or medicine_id,
                "source_kind": SourceKindEnum.LINKED,
                "time_of_day": raw["reminderTime"],
                "updated_at": raw.get("updatedAt"),
            }
        )
    )


def _standalone_from_json(raw: dict[str, Any]) -> ReminderModel:
    return ReminderModel.model_validate(
        _drop_none(
            {
                "category": raw.get("label"),
                "created_at": raw.get("createdAt"),
                "days_of_week": raw.get("daysOfWeek"),
                "frequency": raw.get("frequency"),
                "id": raw["id"],
                "is_active": raw.get("isActive"),
                "label": raw.get("title") or "",
                "last_completed_at": raw.get("lastCompletedAt"),
                "last_skipped_at": raw.get("lastSkippedAt"),
                "notes": raw.get("notes"),
                "source_kind": SourceKindEnum.STANDALONE,
                "time_of_day": raw["time"],
                "updated_at": raw.get("updatedAt"),
            }
        )
    )


def _patch_to_json(
    patch: ReminderPatchModel,
    time_field: str,
    label_field: str | None = None,
) -> dict[str, Any]:
    data = patch.model_dump(exclude_unset=True, mode="json")
    res: dict[str, Any] = {}
    if "category" in data:
        res["label"] = data["category"]
    if "days_of_week" in data:
        res["daysOfWeek"] = sorted(data["days_of_week"] or [])
    if "frequency" in data:
        res["frequency"] = data["frequency"]
    if "is_active" in data:
        res["isActive"] = data["is_active"]
    if "label" in data and label_field:
        res[label_field] = data["label"]
    if "last_completed_at" in data:
        res["lastCompletedAt"] = data["last_completed_at"]
    if "last_skipped_at" in data:
        res["lastSkippedAt"] = data["last_skipped_at"]
    if "notes" in data:
        res["notes"] = data["notes"]
    if patch.time_of_day:
        res[time_field] = patch.time_of_day.strftime("%H:%M")
    return res
