from __future__ import annotations


class CronKeeperError(Exception):
    """Base error for cronkeeper."""


class LoadError(CronKeeperError):
    """Job store file exists but could not be read or parsed."""


class PersistError(CronKeeperError):
    """Job store could not be written."""


class ConfigError(CronKeeperError):
    """Settings file validation error."""
