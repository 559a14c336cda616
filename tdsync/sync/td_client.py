"""TimeDoctor API client - reads users, projects, tasks and worklogs page by page."""

import logging
import threading
from typing import Optional

import requests

from ..config import DEFAULT_API_URL, MAX_PAGINATION_LIMIT
from ..errors import PermanentProviderError, ValidationError
from .http_client import BaseApiClient
from .models import (
    EntityType,
    Page,
    PageCursor,
    RemoteProject,
    RemoteTask,
    RemoteUser,
    RemoteWorklog,
    SyncWindow,
)
from .protocols import CredentialProviderProtocol
from .retry import RetryConfig

__all__ = ["TimeDoctorClient"]

logger = logging.getLogger(__name__)

# Response keys holding the record list, per entity. The v1.1 projects
# endpoint returns its list under "count".
_ITEM_KEYS = {
    EntityType.USERS: ("users",),
    EntityType.PROJECTS: ("projects", "count"),
    EntityType.TASKS: ("tasks",),
    EntityType.WORKLOGS: ("worklogs",),
}


class TimeDoctorClient(BaseApiClient):
    """Client for the TimeDoctor v1.1 API."""

    def __init__(
        self,
        credentials: CredentialProviderProtocol,
        api_url: str = DEFAULT_API_URL,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        company_id: Optional[str] = None,
    ):
        super().__init__(
            api_url=api_url,
            credentials=credentials,
            timeout=timeout,
            retry_config=retry_config,
            session=session,
        )
        self._company_id = company_id
        self._company_lock = threading.Lock()

    def get_company_info(self) -> dict:
        """Get the account's company listing."""
        return self._request("GET", "companies")

    @property
    def company_id(self) -> str:
        """Company id of the connected account (fetched once)."""
        with self._company_lock:
            if self._company_id is None:
                info = self.get_company_info()
                try:
                    self._company_id = str(info["accounts"][0]["company_id"])
                except (KeyError, IndexError, TypeError):
                    raise PermanentProviderError(
                        "Could not retrieve company ID from TimeDoctor"
                    )
                logger.info(f"Using TimeDoctor company {self._company_id}")
            return self._company_id

    def fetch_page(
        self, entity_type: EntityType, window: SyncWindow, cursor: PageCursor
    ) -> Page:
        """Fetch one page of records for a window.

        A next cursor is returned only when the page came back full and the
        reported total (if any) is not yet reached.
        """
        limit = min(cursor.limit, MAX_PAGINATION_LIMIT)
        cursor = PageCursor(offset=cursor.offset, limit=limit)
        endpoint, params = self._endpoint_for(entity_type, window)
        params.update({"offset": cursor.offset, "limit": cursor.limit})

        body = self._request("GET", endpoint, params=params)
        items = _extract_items(body, entity_type)

        records = []
        skipped = 0
        for item in items:
            record = _parse(entity_type, item, window)
            if record is None:
                logger.warning(f"Skipping malformed {entity_type.value} record: {item}")
                skipped += 1
                continue
            records.append(record)

        next_cursor = None
        if len(items) >= cursor.limit:
            next_cursor = cursor.next()
            total = _parse_total(body)
            if total is not None and cursor.offset - 1 + len(items) >= total:
                next_cursor = None

        logger.debug(
            f"Fetched {len(records)} {entity_type.value} at offset {cursor.offset} "
            f"for {window} (more: {next_cursor is not None})"
        )
        return Page(records=records, next_cursor=next_cursor, skipped=skipped)

    def _endpoint_for(self, entity_type: EntityType, window: SyncWindow) -> tuple[str, dict]:
        if entity_type == EntityType.USERS:
            return f"companies/{self.company_id}/users", {}
        if entity_type == EntityType.PROJECTS:
            return "companies/projects", {"all": 1}
        if entity_type == EntityType.TASKS:
            if not window.user_id:
                raise ValidationError("Task windows need a user id")
            return (
                f"companies/{self.company_id}/users/{window.user_id}/tasks",
                {"status": "active"},
            )
        if entity_type == EntityType.WORKLOGS:
            if window.start_date is None or window.end_date is None:
                raise ValidationError("Worklog windows need a date range")
            return (
                f"companies/{self.company_id}/worklogs",
                {
                    "start_date": window.start_date.strftime("%Y-%m-%d"),
                    "end_date": window.end_date.strftime("%Y-%m-%d"),
                    "consolidated": 0,
                    "breaks_only": 0,
                },
            )
        raise ValidationError(f"Unknown entity type: {entity_type}")


def _extract_items(body, entity_type: EntityType) -> list:
    if not isinstance(body, dict):
        return []
    for key in _ITEM_KEYS[entity_type]:
        value = body.get(key)
        if isinstance(value, dict) and isinstance(value.get("items"), list):
            return value["items"]
        if isinstance(value, list):
            return value
    return []


def _parse_total(body) -> Optional[int]:
    """Server-reported total, or None when absent or not a number."""
    if not isinstance(body, dict) or body.get("total") is None:
        return None
    try:
        return int(body["total"])
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric total in response: {body['total']!r}")
        return None


def _parse(entity_type: EntityType, item, window: SyncWindow):
    if not isinstance(item, dict):
        return None
    if entity_type == EntityType.USERS:
        return RemoteUser.from_api(item)
    if entity_type == EntityType.PROJECTS:
        return RemoteProject.from_api(item)
    if entity_type == EntityType.TASKS:
        return RemoteTask.from_api(item, user_id=window.user_id)
    return RemoteWorklog.from_api(item)
