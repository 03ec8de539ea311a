"""Error taxonomy for the relay core.

Every error carries the HTTP status the API boundary maps it to and,
where known, the supervisor phase it was raised in.
"""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    status_code = 500

    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.phase = phase


class ConfigurationError(RelayError):
    status_code = 400


class InvalidSlotError(ConfigurationError):
    pass


class EmptyLayoutError(ConfigurationError):
    pass


class NoMappingsError(EmptyLayoutError):
    pass


class ResourceExhaustionError(RelayError):
    status_code = 503


class NoFreePortError(ResourceExhaustionError):
    pass


class ProcessLaunchError(RelayError):
    status_code = 502


class ProcessCrashError(RelayError):
    status_code = 502

    def __init__(self, message: str, *, returncode: Optional[int] = None, diagnostics: str = "",
                 phase: Optional[str] = "exit") -> None:
        super().__init__(message, phase=phase)
        self.returncode = returncode
        self.diagnostics = diagnostics


class NotFoundError(RelayError):
    status_code = 404


class AlreadyRunningError(RelayError):
    status_code = 409
