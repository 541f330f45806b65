"""
Job data model and its mapping to the persisted JSON document.

Field order in the ``to_payload`` methods is the on-disk key order.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

KIND_AT = "at"
KIND_EVERY = "every"
KIND_CRON = "cron"
SCHEDULE_KINDS = {KIND_AT, KIND_EVERY, KIND_CRON}

STATUS_OK = "ok"
STATUS_ERROR = "error"

DEFAULT_PAYLOAD_KIND = "agent_turn"
STORE_VERSION = 1


def _mapping(raw: Any, field_path: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"{field_path} must be an object.")
    return raw


def _opt_int(raw: Dict[str, Any], key: str, field_path: str) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_path}.{key} must be a number.")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{field_path}.{key} must be a finite number.")
    return int(value)


def _opt_str(raw: Dict[str, Any], key: str, field_path: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{field_path}.{key} must be a string.")
    return value


def _bool(raw: Dict[str, Any], key: str, field_path: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"{field_path}.{key} must be true or false.")
    return value


@dataclass
class Schedule:
    kind: str
    at_ms: Optional[int] = None
    every_ms: Optional[int] = None
    expr: Optional[str] = None
    tz: Optional[str] = None

    @staticmethod
    def at(at_ms: int) -> "Schedule":
        return Schedule(kind=KIND_AT, at_ms=at_ms)

    @staticmethod
    def every(every_ms: int) -> "Schedule":
        return Schedule(kind=KIND_EVERY, every_ms=every_ms)

    @staticmethod
    def cron(expr: str, tz: Optional[str] = None) -> "Schedule":
        return Schedule(kind=KIND_CRON, expr=expr, tz=tz)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind}
        if self.at_ms is not None:
            payload["atMs"] = self.at_ms
        if self.every_ms is not None:
            payload["everyMs"] = self.every_ms
        if self.expr:
            payload["expr"] = self.expr
        if self.tz:
            payload["tz"] = self.tz
        return payload

    @staticmethod
    def from_payload(raw: Any, field_path: str = "schedule") -> "Schedule":
        data = _mapping(raw, field_path)
        return Schedule(
            kind=_opt_str(data, "kind", field_path) or "",
            at_ms=_opt_int(data, "atMs", field_path),
            every_ms=_opt_int(data, "everyMs", field_path),
            expr=_opt_str(data, "expr", field_path),
            tz=_opt_str(data, "tz", field_path),
        )


@dataclass
class Payload:
    """What the handler receives; the scheduler only looks at ``kind``."""

    kind: str = DEFAULT_PAYLOAD_KIND
    message: str = ""
    deliver: bool = False
    channel: Optional[str] = None
    to: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "deliver": self.deliver,
        }
        if self.channel:
            payload["channel"] = self.channel
        if self.to:
            payload["to"] = self.to
        return payload

    @staticmethod
    def from_payload(raw: Any, field_path: str = "payload") -> "Payload":
        data = _mapping(raw, field_path)
        return Payload(
            kind=_opt_str(data, "kind", field_path) or DEFAULT_PAYLOAD_KIND,
            message=_opt_str(data, "message", field_path) or "",
            deliver=_bool(data, "deliver", field_path, False),
            channel=_opt_str(data, "channel", field_path),
            to=_opt_str(data, "to", field_path),
        )


@dataclass
class JobState:
    next_run_at_ms: Optional[int] = None
    last_run_at_ms: Optional[int] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.next_run_at_ms is not None:
            payload["nextRunAtMs"] = self.next_run_at_ms
        if self.last_run_at_ms is not None:
            payload["lastRunAtMs"] = self.last_run_at_ms
        if self.last_status:
            payload["lastStatus"] = self.last_status
        if self.last_error:
            payload["lastError"] = self.last_error
        return payload

    @staticmethod
    def from_payload(raw: Any, field_path: str = "state") -> "JobState":
        data = _mapping(raw, field_path)
        return JobState(
            next_run_at_ms=_opt_int(data, "nextRunAtMs", field_path),
            last_run_at_ms=_opt_int(data, "lastRunAtMs", field_path),
            last_status=_opt_str(data, "lastStatus", field_path) or None,
            last_error=_opt_str(data, "lastError", field_path) or None,
        )


@dataclass
class Job:
    id: str
    name: str
    schedule: Schedule
    payload: Payload = field(default_factory=Payload)
    enabled: bool = True
    state: JobState = field(default_factory=JobState)
    created_at_ms: int = 0
    updated_at_ms: int = 0
    delete_after_run: bool = False

    def snapshot(self) -> "Job":
        return copy.deepcopy(self)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "schedule": self.schedule.to_payload(),
            "payload": self.payload.to_payload(),
            "state": self.state.to_payload(),
            "createdAtMs": self.created_at_ms,
            "updatedAtMs": self.updated_at_ms,
            "deleteAfterRun": self.delete_after_run,
        }

    @staticmethod
    def from_payload(raw: Any, field_path: str = "job") -> "Job":
        data = _mapping(raw, field_path)
        return Job(
            id=_opt_str(data, "id", field_path) or "",
            name=_opt_str(data, "name", field_path) or "",
            enabled=_bool(data, "enabled", field_path, False),
            schedule=Schedule.from_payload(data.get("schedule"), f"{field_path}.schedule"),
            payload=Payload.from_payload(data.get("payload"), f"{field_path}.payload"),
            state=JobState.from_payload(data.get("state"), f"{field_path}.state"),
            created_at_ms=_opt_int(data, "createdAtMs", field_path) or 0,
            updated_at_ms=_opt_int(data, "updatedAtMs", field_path) or 0,
            delete_after_run=_bool(data, "deleteAfterRun", field_path, False),
        )


@dataclass
class StoreData:
    version: int = STORE_VERSION
    jobs: List[Job] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "jobs": [job.to_payload() for job in self.jobs],
        }

    @staticmethod
    def from_payload(raw: Any) -> "StoreData":
        if not isinstance(raw, dict):
            raise ValueError("Top-level store document must be an object.")
        jobs_raw = raw.get("jobs")
        if jobs_raw is None:
            jobs_raw = []
        if not isinstance(jobs_raw, list):
            raise ValueError("jobs must be a list.")
        version = _opt_int(raw, "version", "store")
        return StoreData(
            version=STORE_VERSION if version is None else version,
            jobs=[Job.from_payload(item, f"jobs[{idx}]") for idx, item in enumerate(jobs_raw)],
        )


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool
    job_count: int
    next_wake_at_ms: Optional[int]
