"""Domain types for TimeDoctor sync: entity variants, windows, cursors, pages."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Optional, Union

from ..errors import ValidationError


class EntityType(str, Enum):
    """Synced entity types, in their required sync order."""

    USERS = "users"
    PROJECTS = "projects"
    TASKS = "tasks"
    WORKLOGS = "worklogs"

    @classmethod
    def ordered(cls) -> list["EntityType"]:
        return [cls.USERS, cls.PROJECTS, cls.TASKS, cls.WORKLOGS]


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a provider timestamp ("2025-06-01 10:00:00" or ISO 8601) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SyncWindow:
    """A bounded unit of sync work.

    Date-less entities use a window without dates. Tasks are listed per
    provider user, so their windows carry ``user_id``.
    """

    entity_type: EntityType
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    user_id: Optional[str] = None

    @property
    def days(self) -> int:
        """Inclusive number of days covered."""
        if self.start_date is None or self.end_date is None:
            return 0
        return (self.end_date - self.start_date).days + 1

    def validate(self, max_date_range_days: int) -> None:
        """Raise ValidationError for malformed or oversize windows."""
        if (self.start_date is None) != (self.end_date is None):
            raise ValidationError("Window needs both a start and an end date")
        if self.entity_type == EntityType.WORKLOGS and self.start_date is None:
            raise ValidationError("Worklog windows need a date range")
        if self.entity_type == EntityType.TASKS and not self.user_id:
            raise ValidationError("Task windows need a user id")
        if self.start_date is None:
            return
        if self.end_date < self.start_date:
            raise ValidationError(
                f"End date {self.end_date} is before start date {self.start_date}"
            )
        if self.days > max_date_range_days:
            raise ValidationError(
                f"Date range cannot exceed {max_date_range_days} days "
                f"(got {self.days})"
            )

    @property
    def key(self) -> str:
        """Stable identifier used by the ledger."""
        parts = [self.entity_type.value]
        if self.start_date is not None:
            parts.append(f"{self.start_date.isoformat()}..{self.end_date.isoformat()}")
        if self.user_id:
            parts.append(f"user={self.user_id}")
        return ":".join(parts)

    def __str__(self) -> str:
        return self.key


def split_date_range(
    entity_type: EntityType, start: date, end: date, max_days: int
) -> list[SyncWindow]:
    """Partition [start, end] into consecutive windows of at most max_days."""
    if end < start:
        raise ValidationError(f"End date {end} is before start date {start}")
    windows = []
    current = start
    while current <= end:
        window_end = min(current + timedelta(days=max_days - 1), end)
        windows.append(SyncWindow(entity_type, current, window_end))
        current = window_end + timedelta(days=1)
    return windows


@dataclass(frozen=True)
class PageCursor:
    """Pagination position. The provider's offsets are 1-based."""

    offset: int = 1
    limit: int = 250

    def next(self) -> "PageCursor":
        return PageCursor(offset=self.offset + self.limit, limit=self.limit)


@dataclass
class RemoteEntity:
    """Common shape of a record pulled from the provider."""

    entity_type: ClassVar[EntityType]

    external_id: str
    modified_at: Optional[datetime] = None
    raw: dict = field(default_factory=dict, repr=False)

    def fields(self) -> dict:
        """Entity-specific fields stored alongside the external id."""
        return {}

    def to_record(self) -> dict:
        return {
            "external_id": self.external_id,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
            **self.fields(),
        }


@dataclass
class RemoteUser(RemoteEntity):
    entity_type: ClassVar[EntityType] = EntityType.USERS

    full_name: str = ""
    email: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> Optional["RemoteUser"]:
        if data.get("user_id") is None:
            return None
        return cls(
            external_id=str(data["user_id"]),
            modified_at=parse_timestamp(data.get("modified_at")),
            raw=data,
            full_name=data.get("full_name", ""),
            email=data.get("email") or None,
        )

    def fields(self) -> dict:
        return {"full_name": self.full_name, "email": self.email}


@dataclass
class RemoteProject(RemoteEntity):
    entity_type: ClassVar[EntityType] = EntityType.PROJECTS

    name: str = ""
    active: bool = True

    @classmethod
    def from_api(cls, data: dict) -> Optional["RemoteProject"]:
        if data.get("id") is None:
            return None
        return cls(
            external_id=str(data["id"]),
            modified_at=parse_timestamp(data.get("modified_at")),
            raw=data,
            name=data.get("name", ""),
            active=not data.get("deleted", False),
        )

    def fields(self) -> dict:
        return {"name": self.name, "active": self.active}


@dataclass
class RemoteTask(RemoteEntity):
    entity_type: ClassVar[EntityType] = EntityType.TASKS

    name: str = ""
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    active: bool = True

    @classmethod
    def from_api(cls, data: dict, user_id: Optional[str] = None) -> Optional["RemoteTask"]:
        if data.get("task_id") is None:
            return None
        project_id = data.get("project_id")
        owner = data.get("user_id") or user_id
        return cls(
            external_id=str(data["task_id"]),
            modified_at=parse_timestamp(data.get("modified_at")),
            raw=data,
            name=data.get("task_name", ""),
            project_id=str(project_id) if project_id is not None else None,
            user_id=str(owner) if owner else None,
            active=data.get("status") == "Active" or bool(data.get("active", False)),
        )

    def fields(self) -> dict:
        return {
            "name": self.name,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "active": self.active,
        }


@dataclass
class RemoteWorklog(RemoteEntity):
    entity_type: ClassVar[EntityType] = EntityType.WORKLOGS

    user_id: Optional[str] = None
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: int = 0  # seconds
    work_mode: str = "0"

    @classmethod
    def from_api(cls, data: dict) -> Optional["RemoteWorklog"]:
        start_time = parse_timestamp(data.get("start_time"))
        end_time = parse_timestamp(data.get("end_time"))
        if data.get("id") is None or start_time is None or end_time is None:
            return None

        if data.get("length") is not None:
            try:
                duration = int(data["length"])
            except (TypeError, ValueError):
                return None
        else:
            duration = int((end_time - start_time).total_seconds())

        def _opt(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value) if value is not None else None

        return cls(
            external_id=str(data["id"]),
            modified_at=parse_timestamp(data.get("modified_at")) or end_time,
            raw=data,
            user_id=_opt("user_id"),
            project_id=_opt("project_id"),
            task_id=_opt("task_id"),
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            work_mode=str(data.get("work_mode", "0")),
        )

    def fields(self) -> dict:
        return {
            "user_id": self.user_id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "work_mode": self.work_mode,
        }


AnyRemoteEntity = Union[RemoteUser, RemoteProject, RemoteTask, RemoteWorklog]

ENTITY_CLASSES = {
    EntityType.USERS: RemoteUser,
    EntityType.PROJECTS: RemoteProject,
    EntityType.TASKS: RemoteTask,
    EntityType.WORKLOGS: RemoteWorklog,
}


@dataclass
class Page:
    """One page of records and the cursor for the next one, if any."""

    records: list
    next_cursor: Optional[PageCursor] = None
    skipped: int = 0
