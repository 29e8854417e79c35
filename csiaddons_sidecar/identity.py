"""Identity service of the sidecar, forwarded to the CSI driver."""

from __future__ import annotations

import logging
from typing import Any, Callable

import grpc

from csiaddons_sidecar.errors import RpcError
from csiaddons_sidecar.server import SidecarService

log = logging.getLogger(__name__)

SERVICE_NAME = "identity.Identity"


def _abort(context: Any, exc: Exception) -> None:
    if isinstance(exc, RpcError):
        context.abort(exc.code.grpc_code, exc.message)
    code = getattr(exc, "code", None)
    details = getattr(exc, "details", None)
    status = code() if callable(code) else grpc.StatusCode.UNKNOWN
    message = details() if callable(details) else str(exc)
    context.abort(status, message or "")


class IdentityServer(SidecarService):
    """Passes Identity requests unchanged to the CSI driver.

    Requests and responses are the serialized protobuf messages.
    """

    def __init__(self, channel: Any) -> None:
        self._get_identity = channel.unary_unary(f"/{SERVICE_NAME}/GetIdentity")
        self._get_capabilities = channel.unary_unary(f"/{SERVICE_NAME}/GetCapabilities")
        self._probe = channel.unary_unary(f"/{SERVICE_NAME}/Probe")

    def get_identity(self, request: bytes) -> bytes:
        """Return the driver's identity."""
        return self._get_identity(request)

    def get_capabilities(self, request: bytes) -> bytes:
        """Return the driver's capabilities."""
        return self._get_capabilities(request)

    def probe(self, request: bytes) -> bytes:
        """Check that the driver is still healthy."""
        return self._probe(request)

    @staticmethod
    def _handler(method: Callable[[bytes], bytes]) -> grpc.RpcMethodHandler:
        def handle(request: bytes, context: Any) -> bytes:
            try:
                return method(request)
            except (RpcError, grpc.RpcError) as exc:
                _abort(context, exc)
                raise

        return grpc.unary_unary_rpc_method_handler(handle)

    def register_service(self, server: Any) -> None:
        handlers = {
            "GetIdentity": self._handler(self.get_identity),
            "GetCapabilities": self._handler(self.get_capabilities),
            "Probe": self._handler(self.probe),
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )