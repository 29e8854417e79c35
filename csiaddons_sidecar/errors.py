"""gRPC status codes and helpers for inspecting errors returned by drivers."""

from __future__ import annotations

import enum

import grpc


class StatusCode(enum.IntEnum):
    """Canonical gRPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @property
    def label(self) -> str:
        """The conventional CamelCase name of the code, e.g. ``InvalidArgument``."""
        if self is StatusCode.OK:
            return "OK"
        if self is StatusCode.CANCELLED:
            return "Canceled"
        return "".join(part.capitalize() for part in self.name.split("_"))

    @property
    def grpc_code(self) -> grpc.StatusCode:
        """The matching :class:`grpc.StatusCode`."""
        return grpc.StatusCode[self.name]

    @classmethod
    def from_grpc(cls, code: grpc.StatusCode) -> "StatusCode":
        """Convert a :class:`grpc.StatusCode` to a :class:`StatusCode`."""
        return cls[code.name]


class RpcError(Exception):
    """An error carrying a gRPC status code and message."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.label} desc = {self.message}"


def _status_of(err: BaseException) -> tuple[StatusCode, str] | None:
    """Return (code, message) if *err* carries a gRPC status, else None."""
    if isinstance(err, RpcError):
        return err.code, err.message
    if isinstance(err, grpc.RpcError):
        code = getattr(err, "code", None)
        details = getattr(err, "details", None)
        if callable(code) and callable(details):
            raw = code()
            status = StatusCode.from_grpc(raw) if isinstance(raw, grpc.StatusCode) else StatusCode.UNKNOWN
            return status, details() or ""
    return None


def get_error_message(err: BaseException | None) -> str:
    """Return the status message of a gRPC error, or ``str(err)`` otherwise."""
    if err is None:
        return ""
    status = _status_of(err)
    if status is None:
        return str(err)
    return status[1]


def is_unimplemented_error(err: BaseException | None) -> bool:
    """Return True when *err* is a gRPC error with code UNIMPLEMENTED."""
    if err is None:
        return False
    status = _status_of(err)
    if status is None:
        return False
    return status[0] is StatusCode.UNIMPLEMENTED