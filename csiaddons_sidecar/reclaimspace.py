"""ReclaimSpace service: frees unused space of a volume through the driver."""

from __future__ import annotations

import hashlib
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import grpc

from csiaddons_sidecar.client import _WIRE_LENGTH, _fields
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.identity import _abort
from csiaddons_sidecar.server import SidecarService
from csiaddons_sidecar.volumes import PersistentVolume, VolumeMode, to_csi_access_mode

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.ReclaimSpace"
DEFAULT_STAGING_PATH = "/var/lib/kubelet/plugins/kubernetes.io/csi/"


@dataclass
class ReclaimSpaceRequest:
    """A request to reclaim space of the volume backing a PersistentVolume."""

    pv_name: str = ""


@dataclass(frozen=True)
class StorageConsumption:
    """Number of bytes a volume uses."""

    usage_bytes: int = 0


@dataclass
class ReclaimSpaceResponse:
    """Usage of the volume before and after reclaiming space, when known."""

    pre_usage: StorageConsumption | None = None
    post_usage: StorageConsumption | None = None


def _decode_request(data: bytes) -> ReclaimSpaceRequest:
    request = ReclaimSpaceRequest()
    for number, wire_type, value in _fields(data):
        if number == 1 and wire_type == _WIRE_LENGTH:
            request.pv_name = value.decode("utf-8")
    return request


def _varint(value: int) -> bytes:
    value &= (1 << 64) - 1
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


def _encode_response(response: ReclaimSpaceResponse) -> bytes:
    out = b""
    for number, usage in ((1, response.pre_usage), (2, response.post_usage)):
        if usage is None:
            continue
        inner = _varint(1 << 3) + _varint(usage.usage_bytes) if usage.usage_bytes else b""
        out += _length_field(number, inner)
    return out


def _usage(value: Mapping[str, Any] | None) -> StorageConsumption | None:
    if value is None:
        return None
    return StorageConsumption(int(value.get("usage_bytes", 0)))


def _to_response(driver_response: Mapping[str, Any] | None, method: str) -> ReclaimSpaceResponse:
    if driver_response is None:
        raise RpcError(
            StatusCode.INVALID_ARGUMENT,
            f"no value returned as the response of {method}",
        )
    return ReclaimSpaceResponse(
        pre_usage=_usage(driver_response.get("pre_usage")),
        post_usage=_usage(driver_response.get("post_usage")),
    )


class ReclaimSpaceServer(SidecarService):
    """Looks up the PersistentVolume and asks the driver to reclaim its space.

    *controller* must offer ``controller_reclaim_space(request)`` and *node*
    ``node_reclaim_space(request)``; both return a mapping with optional
    ``pre_usage`` and ``post_usage`` entries holding ``usage_bytes``.
    *kube_client* must offer ``get_persistent_volume(name)`` and
    ``get_secret(name, namespace)``.
    """

    def __init__(
        self,
        controller: Any,
        node: Any,
        kube_client: Any,
        staging_path: str = DEFAULT_STAGING_PATH,
    ) -> None:
        self._controller = controller
        self._node = node
        self._kube = kube_client
        self.staging_path = staging_path

    def _get_csi_volume(self, pv_name: str) -> PersistentVolume:
        log.info(pv_name)
        try:
            pv = self._kube.get_persistent_volume(pv_name)
        except Exception as exc:
            log.error("Failed to get pv: %s", exc)
            raise RpcError(StatusCode.INVALID_ARGUMENT, f'failed to get pv "{pv_name}"') from exc
        if pv.csi is None:
            raise RpcError(StatusCode.INVALID_ARGUMENT, f'pv "{pv_name}" is not a CSI volume')
        return pv

    def _add_secrets(self, pv: PersistentVolume, driver_request: dict[str, Any]) -> None:
        ref = pv.csi.node_stage_secret_ref
        if ref is None:
            return
        try:
            driver_request["secrets"] = self._kube.get_secret(ref.name, ref.namespace)
        except Exception as exc:
            log.error("Failed to get secret: %s", exc)
            raise RpcError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc

    def controller_reclaim_space(self, request: ReclaimSpaceRequest) -> ReclaimSpaceResponse:
        """Reclaim space of the volume on the controller side."""
        pv = self._get_csi_volume(request.pv_name)
        driver_request: dict[str, Any] = {
            "volume_id": pv.csi.volume_handle,
            "parameters": dict(pv.csi.volume_attributes),
        }
        self._add_secrets(pv, driver_request)
        driver_response = self._controller.controller_reclaim_space(driver_request)
        return _to_response(driver_response, "ControllerReclaimSpace")

    def node_reclaim_space(self, request: ReclaimSpaceRequest) -> ReclaimSpaceResponse:
        """Reclaim space of the volume on the node where it is staged."""
        pv_name = request.pv_name
        pv = self._get_csi_volume(pv_name)
        try:
            mode = to_csi_access_mode(pv.access_modes, True)
        except ValueError as exc:
            log.error("Failed to map access mode: %s", exc)
            raise RpcError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc

        capability: dict[str, Any] = {"access_mode": {"mode": mode}, "access_type": {"mount": {}}}
        driver_request: dict[str, Any] = {
            "volume_id": pv.csi.volume_handle,
            "volume_path": "",
            "staging_target_path": self.staging_target_path(pv),
            "volume_capability": capability,
        }

        if pv.volume_mode is VolumeMode.BLOCK:
            driver_request["staging_target_path"] = posixpath.normpath(
                posixpath.join(self.staging_path, "volumeDevices", "staging", pv_name)
            )
            capability["access_type"] = {"block": {}}

        self._add_secrets(pv, driver_request)
        driver_response = self._node.node_reclaim_space(driver_request)
        return _to_response(driver_response, "NodeReclaimSpace")

    def staging_target_path(self, pv: PersistentVolume) -> str:
        """Return where the volume is expected to be staged on this node."""
        # the path holds a hash of the volume handle
        digest = hashlib.sha256(pv.csi.volume_handle.encode("utf-8")).hexdigest()
        return posixpath.normpath(
            posixpath.join(self.staging_path, pv.csi.driver, digest, "globalmount")
        )

    @staticmethod
    def _handler(
        method: Callable[[ReclaimSpaceRequest], ReclaimSpaceResponse],
    ) -> grpc.RpcMethodHandler:
        def handle(data: bytes, context: Any) -> bytes:
            try:
                return _encode_response(method(_decode_request(data)))
            except (RpcError, grpc.RpcError) as exc:
                _abort(context, exc)
                raise

        return grpc.unary_unary_rpc_method_handler(handle)

    def register_service(self, server: Any) -> None:
        handlers = {
            "ControllerReclaimSpace": self._handler(self.controller_reclaim_space),
            "NodeReclaimSpace": self._handler(self.node_reclaim_space),
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )