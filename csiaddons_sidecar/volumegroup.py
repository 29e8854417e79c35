"""VolumeGroup service: manages groups of volumes through the driver."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import grpc

from csiaddons_sidecar.client import _WIRE_LENGTH, _fields
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.identity import _abort
from csiaddons_sidecar.server import SidecarService

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.VolumeGroupController"


@dataclass
class VolumeGroup:
    """A volume group as reported by the driver."""

    volume_group_id: str = ""
    volume_group_context: dict[str, str] = field(default_factory=dict)
    volume_ids: list[str] = field(default_factory=list)


@dataclass
class VolumeGroupRequest:
    """A request of any of the VolumeGroup operations."""

    name: str = ""
    volume_group_id: str = ""
    volume_ids: list[str] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


_LAYOUTS = {
    "CreateVolumeGroup": {
        1: "name", 2: "volume_ids", 3: "parameters", 4: "secret_name", 5: "secret_namespace",
    },
    "ModifyVolumeGroupMembership": {
        1: "volume_group_id", 2: "volume_ids", 3: "secret_name", 4: "secret_namespace",
        5: "parameters",
    },
    "DeleteVolumeGroup": {1: "volume_group_id", 2: "secret_name", 3: "secret_namespace"},
    "ControllerGetVolumeGroup": {1: "volume_group_id", 2: "secret_name", 3: "secret_namespace"},
}


def _decode_request(data: bytes, layout: Mapping[int, str]) -> VolumeGroupRequest:
    request = VolumeGroupRequest()
    for number, wire_type, value in _fields(data):
        attr = layout.get(number)
        if attr is None or wire_type != _WIRE_LENGTH:
            continue
        current = getattr(request, attr)
        if isinstance(current, dict):
            key = val = ""
            for entry_number, entry_type, entry in _fields(value):
                if entry_type != _WIRE_LENGTH:
                    continue
                if entry_number == 1:
                    key = entry.decode("utf-8")
                elif entry_number == 2:
                    val = entry.decode("utf-8")
            current[key] = val
        elif isinstance(current, list):
            current.append(value.decode("utf-8"))
        else:
            setattr(request, attr, value.decode("utf-8"))
    return request


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _length_field(number: int, payload: bytes) -> bytes:
    return _varint(number << 3 | _WIRE_LENGTH) + _varint(len(payload)) + payload


def _encode_volume_group(group: VolumeGroup) -> bytes:
    out = b""
    if group.volume_group_id:
        out += _length_field(1, group.volume_group_id.encode("utf-8"))
    for key, value in group.volume_group_context.items():
        entry = _length_field(1, key.encode("utf-8")) + _length_field(2, value.encode("utf-8"))
        out += _length_field(2, entry)
    for volume_id in group.volume_ids:
        out += _length_field(3, volume_id.encode("utf-8"))
    return out


def _to_volume_group(driver_response: Mapping[str, Any] | None) -> VolumeGroup:
    group = (driver_response or {}).get("volume_group") or {}
    return VolumeGroup(
        volume_group_id=group.get("volume_group_id", ""),
        volume_group_context=dict(group.get("volume_group_context") or {}),
        volume_ids=[volume["volume_id"] for volume in group.get("volumes") or []],
    )


class VolumeGroupServer(SidecarService):
    """Fetches the secrets for volume group requests and passes them to the driver.

    *controller* must offer ``create_volume_group``, ``modify_volume_group_membership``,
    ``delete_volume_group`` and ``controller_get_volume_group``, each taking a request
    mapping; all but delete return a mapping whose ``volume_group`` holds
    ``volume_group_id``, ``volume_group_context`` and ``volumes`` (each with a
    ``volume_id``). *kube_client* must offer ``get_secret(name, namespace)``.
    """

    def __init__(self, controller: Any, kube_client: Any) -> None:
        self._controller = controller
        self._kube = kube_client

    def _secrets(self, request: VolumeGroupRequest) -> dict[str, str]:
        try:
            return self._kube.get_secret(request.secret_name, request.secret_namespace)
        except Exception as exc:
            log.error(
                "Failed to get secret %s in namespace %s: %s",
                request.secret_name,
                request.secret_namespace,
                exc,
            )
            raise RpcError(StatusCode.INTERNAL, str(exc)) from exc

    @staticmethod
    def _invoke(call: Callable[[dict[str, Any]], Any], driver_request: dict[str, Any], action: str) -> Any:
        try:
            return call(driver_request)
        except Exception as exc:
            log.error("Failed to %s volume group: %s", action, exc)
            raise

    def create_volume_group(self, request: VolumeGroupRequest) -> VolumeGroup:
        """Create a volume group holding the volumes of *request*."""
        driver_request = {
            "name": request.name,
            "volume_ids": list(request.volume_ids),
            "parameters": dict(request.parameters),
            "secrets": self._secrets(request),
        }
        response = self._invoke(self._controller.create_volume_group, driver_request, "create")
        return _to_volume_group(response)

    def modify_volume_group_membership(self, request: VolumeGroupRequest) -> VolumeGroup:
        """Set the members of an existing volume group."""
        driver_request = {
            "volume_group_id": request.volume_group_id,
            "volume_ids": list(request.volume_ids),
            "secrets": self._secrets(request),
            "parameters": dict(request.parameters),
        }
        response = self._invoke(
            self._controller.modify_volume_group_membership, driver_request, "modify"
        )
        return _to_volume_group(response)

    def delete_volume_group(self, request: VolumeGroupRequest) -> None:
        """Delete a volume group."""
        driver_request = {
            "volume_group_id": request.volume_group_id,
            "secrets": self._secrets(request),
        }
        self._invoke(self._controller.delete_volume_group, driver_request, "delete")

    def controller_get_volume_group(self, request: VolumeGroupRequest) -> VolumeGroup:
        """Return the current state of a volume group."""
        driver_request = {
            "volume_group_id": request.volume_group_id,
            "secrets": self._secrets(request),
        }
        response = self._invoke(self._controller.controller_get_volume_group, driver_request, "get")
        return _to_volume_group(response)

    def register_service(self, server: Any) -> None:
        methods: dict[str, Callable[[VolumeGroupRequest], VolumeGroup | None]] = {
            "CreateVolumeGroup": self.create_volume_group,
            "ModifyVolumeGroupMembership": self.modify_volume_group_membership,
            "DeleteVolumeGroup": self.delete_volume_group,
            "ControllerGetVolumeGroup": self.controller_get_volume_group,
        }

        def make_handler(name: str, method: Callable[[VolumeGroupRequest], VolumeGroup | None]):
            layout = _LAYOUTS[name]

            def handle(data: bytes, context: Any) -> bytes:
                try:
                    group = method(_decode_request(data, layout))
                except (RpcError, grpc.RpcError) as exc:
                    _abort(context, exc)
                    raise
                if group is None:
                    return b""
                return _length_field(1, _encode_volume_group(group))

            return grpc.unary_unary_rpc_method_handler(handle)

        handlers = {name: make_handler(name, method) for name, method in methods.items()}
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )