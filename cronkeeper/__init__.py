"""
cronkeeper: in-process job scheduler with at / every / cron schedules and a
JSON job store that other processes may edit.
"""

from cronkeeper.errors import ConfigError, CronKeeperError, LoadError, PersistError
from cronkeeper.models import Job, JobState, Payload, Schedule, SchedulerStatus, StoreData
from cronkeeper.schedule import compute_next_run, next_cron_time, parse_field
from cronkeeper.service import CronService
from cronkeeper.store import ChangeDetector, FileStatDetector, JobStore

__all__ = [
    "ChangeDetector",
    "ConfigError",
    "CronKeeperError",
    "CronService",
    "FileStatDetector",
    "Job",
    "JobState",
    "JobStore",
    "LoadError",
    "Payload",
    "PersistError",
    "Schedule",
    "SchedulerStatus",
    "StoreData",
    "compute_next_run",
    "next_cron_time",
    "parse_field",
]
