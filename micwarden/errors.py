"""Exception hierarchy shared by the supervision components."""

from __future__ import annotations


class MicwardenError(Exception):
    """Base class for errors raised by micwarden components."""


class UnresolvableDeviceError(MicwardenError):
    """A device's stable topology key could not be determined."""

    def __init__(self, card: str, detail: str) -> None:
        super().__init__(f"{card}: {detail}")
        self.card = card
        self.detail = detail


class InvalidConfigError(MicwardenError):
    """A rendered stream snapshot failed validation."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems) or "invalid configuration")
        self.problems = list(problems)


class LockContentionError(MicwardenError):
    """Another live supervisor already holds the instance lock."""

    def __init__(self, path: str, holder_pid: int | None) -> None:
        holder = holder_pid if holder_pid is not None else "unknown"
        super().__init__(f"lock {path} held by pid {holder}")
        self.path = path
        self.holder_pid = holder_pid


class ProcessSpawnError(MicwardenError):
    """A capture process could not be started."""

    def __init__(self, name: str, detail: str) -> None:
        super().__init__(f"{name}: {detail}")
        self.name = name
        self.detail = detail


class InvalidTransitionError(MicwardenError):
    """Raised for a stream state change the state machine does not allow."""


class MediaServerError(MicwardenError):
    """The media server API could not be reached or returned an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


__all__ = [
    "InvalidConfigError",
    "InvalidTransitionError",
    "LockContentionError",
    "MediaServerError",
    "MicwardenError",
    "ProcessSpawnError",
    "UnresolvableDeviceError",
]
