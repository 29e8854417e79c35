"""Connection to the CSI-Addons identity service of a CSI driver."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import grpc

from csiaddons_sidecar.errors import RpcError, StatusCode

log = logging.getLogger(__name__)

_GET_IDENTITY = "/identity.Identity/GetIdentity"
_GET_CAPABILITIES = "/identity.Identity/GetCapabilities"
_PROBE = "/identity.Identity/Probe"

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH = 2
_WIRE_FIXED32 = 5


class ServiceType(enum.IntEnum):
    """Service types a driver can advertise in its capabilities."""

    UNKNOWN = 0
    CONTROLLER_SERVICE = 1
    NODE_SERVICE = 2


@dataclass
class DriverIdentity:
    """Identity reported by a CSI driver."""

    name: str = ""
    vendor_version: str = ""
    manifest: dict[str, str] = field(default_factory=dict)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint in protobuf message")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint too long in protobuf message")


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield (field number, wire type, value) for each field of a message."""
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if wire_type == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
            yield number, wire_type, value
            continue
        if wire_type == _WIRE_LENGTH:
            size, pos = _read_varint(data, pos)
        elif wire_type == _WIRE_FIXED64:
            size = 8
        elif wire_type == _WIRE_FIXED32:
            size = 4
        else:
            raise ValueError(f"unsupported wire type {wire_type} in protobuf message")
        if pos + size > len(data):
            raise ValueError("truncated field in protobuf message")
        yield number, wire_type, data[pos:pos + size]
        pos += size


def _encode_empty(request: Any) -> bytes:
    """Encode an identity request, which is always an empty message."""
    if request is None or request == b"" or request == {}:
        return b""
    raise TypeError(f"identity requests carry no fields, got {request!r}")


def _decode_identity(data: bytes) -> DriverIdentity:
    identity = DriverIdentity()
    for number, wire_type, value in _fields(data):
        if wire_type != _WIRE_LENGTH:
            continue
        if number == 1:
            identity.name = value.decode("utf-8")
        elif number == 2:
            identity.vendor_version = value.decode("utf-8")
        elif number == 3:
            key = val = ""
            for entry_number, entry_type, entry in _fields(value):
                if entry_type != _WIRE_LENGTH:
                    continue
                if entry_number == 1:
                    key = entry.decode("utf-8")
                elif entry_number == 2:
                    val = entry.decode("utf-8")
            identity.manifest[key] = val
    return identity


def _service_type(raw: int) -> ServiceType:
    try:
        return ServiceType(raw)
    except ValueError:
        return ServiceType.UNKNOWN


def _decode_capabilities(data: bytes) -> list[ServiceType | None]:
    capabilities: list[ServiceType | None] = []
    for number, wire_type, value in _fields(data):
        if number != 1 or wire_type != _WIRE_LENGTH:
            continue
        service: ServiceType | None = None
        for cap_number, cap_type, cap_value in _fields(value):
            if cap_number == 1 and cap_type == _WIRE_LENGTH:
                raw = 0
                for svc_number, svc_type, svc_value in _fields(cap_value):
                    if svc_number == 1 and svc_type == _WIRE_VARINT:
                        raw = svc_value
                service = _service_type(raw)
        capabilities.append(service)
    return capabilities


def _decode_probe(data: bytes) -> bool | None:
    ready: bool | None = None
    for number, wire_type, value in _fields(data):
        if number == 1 and wire_type == _WIRE_LENGTH:
            flag = False
            for inner_number, inner_type, inner in _fields(value):
                if inner_number == 1 and inner_type == _WIRE_VARINT:
                    flag = bool(inner)
            ready = flag
    return ready


class IdentityStub:
    """Client of the CSI-Addons Identity service on a gRPC channel."""

    def __init__(self, channel: Any) -> None:
        self._get_identity = channel.unary_unary(
            _GET_IDENTITY,
            request_serializer=_encode_empty,
            response_deserializer=_decode_identity,
        )
        self._get_capabilities = channel.unary_unary(
            _GET_CAPABILITIES,
            request_serializer=_encode_empty,
            response_deserializer=_decode_capabilities,
        )
        self._probe = channel.unary_unary(
            _PROBE,
            request_serializer=_encode_empty,
            response_deserializer=_decode_probe,
        )

    def get_identity(self, timeout: float | None = None) -> DriverIdentity:
        """Return the identity of the driver."""
        return self._get_identity(None, timeout=timeout)

    def get_capabilities(self, timeout: float | None = None) -> list[ServiceType | None]:
        """Return one entry per capability: its service type, or None if not a service."""
        return self._get_capabilities(None, timeout=timeout)

    def probe(self, timeout: float | None = None) -> bool | None:
        """Return the readiness of the driver, or None when it reports none."""
        return self._probe(None, timeout=timeout)


def _status_code(err: BaseException) -> StatusCode | None:
    if isinstance(err, RpcError):
        return err.code
    if isinstance(err, grpc.RpcError):
        code = getattr(err, "code", None)
        if callable(code):
            raw = code()
            if isinstance(raw, grpc.StatusCode):
                return StatusCode.from_grpc(raw)
            return StatusCode.UNKNOWN
    return None


def _target(address: str) -> str:
    if address.startswith("unix:") or "://" in address:
        return address
    if address.startswith("/"):
        return "unix://" + address
    return address


class DriverClient:
    """Calls the identity service of a CSI driver with a per-call timeout."""

    def __init__(
        self,
        channel: Any,
        timeout: float = 180.0,
        *,
        probe_interval: float = 1.0,
        identity: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._channel = channel
        self.timeout = timeout
        self.probe_interval = probe_interval
        self._identity = identity if identity is not None else IdentityStub(channel)
        self._sleep = sleep

    @classmethod
    def connect(cls, address: str, timeout: float = 180.0, *, wait_ready: bool = True) -> "DriverClient":
        """Open a channel to *address* (a socket path or gRPC target)."""
        channel = grpc.insecure_channel(_target(address))
        if wait_ready:
            grpc.channel_ready_future(channel).result()
        return cls(channel, timeout)

    @property
    def grpc_client(self) -> Any:
        """The underlying gRPC channel."""
        return self._channel

    def _probe_once(self) -> bool:
        ready = self._identity.probe(timeout=self.timeout)
        # A missing readiness value means the plugin is ready.
        return True if ready is None else ready

    def probe(self) -> None:
        """Wait until the driver reports it is ready; raise on any error but a timeout."""
        while True:
            log.info("Probing CSI driver for readiness")
            try:
                ready = self._probe_once()
            except Exception as exc:
                code = _status_code(exc)
                if code is not StatusCode.DEADLINE_EXCEEDED:
                    raise RuntimeError(f"CSI driver probe failed: {exc}") from exc
                log.warning("CSI driver probe timed out")
            else:
                if ready:
                    return
                log.warning("CSI driver is not ready")
            self._sleep(self.probe_interval)

    def has_controller_service(self) -> bool:
        """Return True when the driver advertises the controller service."""
        capabilities = self._identity.get_capabilities(timeout=self.timeout)
        if not capabilities:
            raise RuntimeError("driver does not have any capabilities")
        return any(service is ServiceType.CONTROLLER_SERVICE for service in capabilities)

    def get_driver_name(self) -> str:
        """Return the name the driver reports in its identity."""
        identity = self._identity.get_identity(timeout=self.timeout)
        if not identity.name:
            raise RuntimeError("driver name is empty")
        return identity.name