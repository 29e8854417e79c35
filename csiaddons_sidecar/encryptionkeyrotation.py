"""EncryptionKeyRotation service: rotates the encryption key of a volume."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import grpc

from csiaddons_sidecar.client import _WIRE_LENGTH, _fields
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.server import SidecarService
from csiaddons_sidecar.volumes import to_csi_access_mode

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.EncryptionKeyRotation"


@dataclass
class EncryptionKeyRotateRequest:
    """A request to rotate the key of the volume backing a PersistentVolume."""

    pv_name: str = ""


def _decode_request(data: bytes) -> EncryptionKeyRotateRequest:
    request = EncryptionKeyRotateRequest()
    for number, wire_type, value in _fields(data):
        if number == 1 and wire_type == _WIRE_LENGTH:
            request.pv_name = value.decode("utf-8")
    return request


def _abort(context: Any, exc: Exception) -> None:
    if isinstance(exc, RpcError):
        context.abort(exc.code.grpc_code, exc.message)
    code = getattr(exc, "code", None)
    details = getattr(exc, "details", None)
    status = code() if callable(code) else grpc.StatusCode.UNKNOWN
    message = details() if callable(details) else str(exc)
    context.abort(status, message or "")


class EncryptionKeyRotationServer(SidecarService):
    """Looks up the PersistentVolume and asks the driver to rotate its key.

    *controller* must offer ``encryption_key_rotate(request)``; *kube_client*
    must offer ``get_persistent_volume(name)`` and ``get_secret(name, namespace)``.
    """

    def __init__(self, controller: Any, kube_client: Any) -> None:
        self._controller = controller
        self._kube = kube_client

    def encryption_key_rotate(self, request: EncryptionKeyRotateRequest) -> None:
        """Rotate the encryption key of the volume named in *request*."""
        pv_name = request.pv_name
        if not pv_name:
            raise RpcError(StatusCode.INVALID_ARGUMENT, "pv name is missing from the request")

        try:
            pv = self._kube.get_persistent_volume(pv_name)
        except Exception as exc:
            raise RpcError(
                StatusCode.INVALID_ARGUMENT,
                f"failed to find a pv with name: {pv_name}. error: {exc}",
            ) from exc

        if pv.csi is None:
            raise RpcError(StatusCode.INVALID_ARGUMENT, f"{pv_name} is not a CSI volume")

        try:
            mode = to_csi_access_mode(pv.access_modes, True)
        except ValueError as exc:
            log.error("Failed to map access mode: %s", exc)
            raise RpcError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc

        driver_request: dict[str, Any] = {
            "volume_id": pv.csi.volume_handle,
            "parameters": dict(pv.csi.volume_attributes),
            "volume_capability": {"access_mode": {"mode": mode}},
        }

        ref = pv.csi.node_stage_secret_ref
        if ref is not None:
            try:
                driver_request["secrets"] = self._kube.get_secret(ref.name, ref.namespace)
            except Exception as exc:
                raise RpcError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc

        self._controller.encryption_key_rotate(driver_request)
        log.info("successfully rotated the key for pv: %s", pv_name)

    def register_service(self, server: Any) -> None:
        def handle(data: bytes, context: Any) -> bytes:
            try:
                self.encryption_key_rotate(_decode_request(data))
            except (RpcError, grpc.RpcError) as exc:
                _abort(context, exc)
                raise
            return b""

        handlers = {"EncryptionKeyRotate": grpc.unary_unary_rpc_method_handler(handle)}
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )