"""Replication service: manages mirroring of volumes and volume groups."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import grpc

from csiaddons_sidecar.client import _WIRE_LENGTH, _WIRE_VARINT, _fields
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.identity import _abort
from csiaddons_sidecar.reclaimspace import _length_field, _varint
from csiaddons_sidecar.server import SidecarService

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.Replication"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ReplicationSource:
    """The volume or volume group a replication request applies to."""

    volume_id: str | None = None
    volume_group_id: str | None = None


@dataclass
class ReplicationRequest:
    """A request of any of the Replication operations."""

    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""
    force: bool = False
    replication_source: ReplicationSource | None = None


@dataclass
class ReplicationInfo:
    """Details of the last synchronisation of a replicated volume."""

    last_sync_time: datetime | None = None
    last_sync_duration: timedelta | None = None
    last_sync_bytes: int = 0


def to_replication_source(source: ReplicationSource | None) -> dict[str, Any]:
    """Convert *source* into the replication source the driver expects.

    A volume takes precedence over a volume group.
    """
    if source is None:
        raise ValueError("replication source is required")
    if source.volume_id is not None:
        return {"volume": {"volume_id": source.volume_id}}
    if source.volume_group_id is not None:
        return {"volumegroup": {"volume_group_id": source.volume_group_id}}
    raise ValueError("either volume or volume group is required")


# Field numbers of the request messages, per method.
_LAYOUTS: dict[str, dict[int, str]] = {
    "EnableVolumeReplication": {
        1: "replication_id", 2: "parameters", 3: "secret_name", 4: "secret_namespace",
        5: "replication_source",
    },
    "DisableVolumeReplication": {
        1: "replication_id", 2: "parameters", 3: "secret_name", 4: "secret_namespace",
        5: "replication_source",
    },
    "PromoteVolume": {
        1: "replication_id", 2: "force", 3: "parameters", 4: "secret_name",
        5: "secret_namespace", 6: "replication_source",
    },
    "DemoteVolume": {
        1: "replication_id", 2: "force", 3: "parameters", 4: "secret_name",
        5: "secret_namespace", 6: "replication_source",
    },
    "ResyncVolume": {
        1: "replication_id", 2: "force", 3: "parameters", 4: "secret_name",
        5: "secret_namespace", 6: "replication_source",
    },
    "GetVolumeReplicationInfo": {
        1: "replication_id", 2: "secret_name", 3: "secret_namespace", 4: "replication_source",
    },
}


def _single_string(data: bytes) -> str:
    result = ""
    for number, wire_type, value in _fields(data):
        if number == 1 and wire_type == _WIRE_LENGTH:
            result = value.decode("utf-8")
    return result


def _decode_source(data: bytes) -> ReplicationSource:
    source = ReplicationSource()
    for number, wire_type, value in _fields(data):
        if wire_type != _WIRE_LENGTH:
            continue
        if number == 1:
            source.volume_id = _single_string(value)
            source.volume_group_id = None
        elif number == 2:
            source.volume_group_id = _single_string(value)
            source.volume_id = None
    return source


def _decode_request(data: bytes, layout: Mapping[int, str]) -> ReplicationRequest:
    request = ReplicationRequest()
    for number, wire_type, value in _fields(data):
        attr = layout.get(number)
        if attr is None:
            continue
        if attr == "force":
            if wire_type == _WIRE_VARINT:
                request.force = bool(value)
            continue
        if wire_type != _WIRE_LENGTH:
            continue
        if attr == "parameters":
            key = val = ""
            for entry_number, entry_type, entry in _fields(value):
                if entry_type != _WIRE_LENGTH:
                    continue
                if entry_number == 1:
                    key = entry.decode("utf-8")
                elif entry_number == 2:
                    val = entry.decode("utf-8")
            request.parameters[key] = val
        elif attr == "replication_source":
            request.replication_source = _decode_source(value)
        else:
            setattr(request, attr, value.decode("utf-8"))
    return request


def _int_field(number: int, value: int) -> bytes:
    if not value:
        return b""
    return _varint(number << 3 | _WIRE_VARINT) + _varint(value)


def _seconds_nanos(microseconds: int) -> bytes:
    seconds, micros = divmod(microseconds, 1_000_000)
    return _int_field(1, seconds) + _int_field(2, micros * 1000)


def _encode_empty(result: Any) -> bytes:
    """Encode the response of an operation that returns nothing."""
    if result is not None:
        raise TypeError(f"unexpected result for an empty response: {result!r}")
    return b""


def _encode_ready(ready: bool) -> bytes:
    return _int_field(1, int(ready))


def _encode_info(info: ReplicationInfo) -> bytes:
    out = b""
    if info.last_sync_time is not None:
        moment = info.last_sync_time
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        out += _length_field(1, _seconds_nanos((moment - _EPOCH) // timedelta(microseconds=1)))
    if info.last_sync_duration is not None:
        out += _length_field(
            2, _seconds_nanos(info.last_sync_duration // timedelta(microseconds=1))
        )
    out += _int_field(3, info.last_sync_bytes)
    return out


class ReplicationServer(SidecarService):
    """Fetches the secrets for replication requests and passes them to the driver.

    *controller* must offer ``enable_volume_replication``,
    ``disable_volume_replication``, ``promote_volume``, ``demote_volume``,
    ``resync_volume`` and ``get_volume_replication_info``, each taking a request
    mapping. ``resync_volume`` returns a mapping with ``ready``;
    ``get_volume_replication_info`` one with ``last_sync_time``,
    ``last_sync_duration`` and ``last_sync_bytes``. *kube_client* must offer
    ``get_secret(name, namespace)``.
    """

    def __init__(self, controller: Any, kube_client: Any) -> None:
        self._controller = controller
        self._kube = kube_client

    def _driver_request(self, request: ReplicationRequest, *, with_force: bool,
                        with_parameters: bool = True) -> dict[str, Any]:
        try:
            secrets = self._kube.get_secret(request.secret_name, request.secret_namespace)
        except Exception as exc:
            log.error(
                "Failed to get secret %s in namespace %s: %s",
                request.secret_name,
                request.secret_namespace,
                exc,
            )
            raise RpcError(StatusCode.INTERNAL, str(exc)) from exc

        driver_request: dict[str, Any] = {"replication_id": request.replication_id}
        if with_parameters:
            driver_request["parameters"] = dict(request.parameters)
        if with_force:
            driver_request["force"] = request.force
        driver_request["secrets"] = secrets

        try:
            driver_request["replication_source"] = to_replication_source(
                request.replication_source
            )
        except ValueError as exc:
            log.error("Failed to set replication source: %s", exc)
            raise RpcError(StatusCode.INTERNAL, str(exc)) from exc
        return driver_request

    @staticmethod
    def _invoke(call: Callable[[dict[str, Any]], Any], driver_request: dict[str, Any],
                action: str) -> Any:
        try:
            return call(driver_request)
        except Exception as exc:
            log.error("Failed to %s: %s", action, exc)
            raise

    def enable_volume_replication(self, request: ReplicationRequest) -> None:
        """Enable replication of the volume or group of *request*."""
        driver_request = self._driver_request(request, with_force=False)
        self._invoke(
            self._controller.enable_volume_replication, driver_request,
            "enable volume replication",
        )

    def disable_volume_replication(self, request: ReplicationRequest) -> None:
        """Disable replication of the volume or group of *request*."""
        driver_request = self._driver_request(request, with_force=False)
        self._invoke(
            self._controller.disable_volume_replication, driver_request,
            "disable volume replication",
        )

    def promote_volume(self, request: ReplicationRequest) -> None:
        """Promote the volume or group to primary."""
        driver_request = self._driver_request(request, with_force=True)
        self._invoke(self._controller.promote_volume, driver_request, "promote volume")

    def demote_volume(self, request: ReplicationRequest) -> None:
        """Demote the volume or group to secondary."""
        driver_request = self._driver_request(request, with_force=True)
        self._invoke(self._controller.demote_volume, driver_request, "demote volume")

    def resync_volume(self, request: ReplicationRequest) -> bool:
        """Resynchronise the volume or group; return whether it is ready."""
        driver_request = self._driver_request(request, with_force=True)
        response = self._invoke(self._controller.resync_volume, driver_request, "resync volume")
        return bool((response or {}).get("ready", False))

    def get_volume_replication_info(self, request: ReplicationRequest) -> ReplicationInfo:
        """Return details of the last synchronisation."""
        driver_request = self._driver_request(request, with_force=False, with_parameters=False)
        response = self._invoke(
            self._controller.get_volume_replication_info, driver_request,
            "get volume replication info",
        ) or {}
        last_sync_time = response.get("last_sync_time")
        if last_sync_time is None:
            log.error("Failed to get last sync time: %s", last_sync_time)
        return ReplicationInfo(
            last_sync_time=last_sync_time,
            last_sync_duration=response.get("last_sync_duration"),
            last_sync_bytes=int(response.get("last_sync_bytes") or 0),
        )

    def register_service(self, server: Any) -> None:
        methods: dict[str, tuple[Callable[[ReplicationRequest], Any], Callable[[Any], bytes]]] = {
            "EnableVolumeReplication": (self.enable_volume_replication, _encode_empty),
            "DisableVolumeReplication": (self.disable_volume_replication, _encode_empty),
            "PromoteVolume": (self.promote_volume, _encode_empty),
            "DemoteVolume": (self.demote_volume, _encode_empty),
            "ResyncVolume": (self.resync_volume, _encode_ready),
            "GetVolumeReplicationInfo": (self.get_volume_replication_info, _encode_info),
        }

        def make_handler(name: str, method: Callable[[ReplicationRequest], Any],
                         encode: Callable[[Any], bytes]) -> grpc.RpcMethodHandler:
            layout = _LAYOUTS[name]

            def handle(data: bytes, context: Any) -> bytes:
                try:
                    result = method(_decode_request(data, layout))
                except (RpcError, grpc.RpcError) as exc:
                    _abort(context, exc)
                    raise
                return encode(result)

            return grpc.unary_unary_rpc_method_handler(handle)

        handlers = {
            name: make_handler(name, method, encode)
            for name, (method, encode) in methods.items()
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )