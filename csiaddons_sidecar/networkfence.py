"""NetworkFence service: fences or unfences cluster networks through the driver."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import grpc

from csiaddons_sidecar.client import _WIRE_LENGTH, _fields
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.server import SidecarService

log = logging.getLogger(__name__)

SERVICE_NAME = "proto.NetworkFence"


@dataclass
class NetworkFenceRequest:
    """A request to fence or unfence a set of CIDR blocks."""

    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""
    cidrs: list[str] = field(default_factory=list)


def _decode_request(data: bytes) -> NetworkFenceRequest:
    request = NetworkFenceRequest()
    for number, wire_type, value in _fields(data):
        if wire_type != _WIRE_LENGTH:
            continue
        if number == 1:
            key = val = ""
            for entry_number, entry_type, entry in _fields(value):
                if entry_type != _WIRE_LENGTH:
                    continue
                if entry_number == 1:
                    key = entry.decode("utf-8")
                elif entry_number == 2:
                    val = entry.decode("utf-8")
            request.parameters[key] = val
        elif number == 2:
            request.secret_name = value.decode("utf-8")
        elif number == 3:
            request.secret_namespace = value.decode("utf-8")
        elif number == 4:
            request.cidrs.append(value.decode("utf-8"))
    return request


def _abort(context: Any, exc: Exception) -> None:
    if isinstance(exc, RpcError):
        context.abort(exc.code.grpc_code, exc.message)
    code = getattr(exc, "code", None)
    details = getattr(exc, "details", None)
    status = code() if callable(code) else grpc.StatusCode.UNKNOWN
    message = details() if callable(details) else str(exc)
    context.abort(status, message or "")


def get_cidrs(cidrs: list[str]) -> list[dict[str, str]]:
    """Convert CIDR strings into the CIDR messages the driver expects."""
    return [{"cidr": cidr} for cidr in cidrs]


class NetworkFenceServer(SidecarService):
    """Fetches the secrets for a fence request and passes it on to the driver.

    *controller* must offer ``fence_cluster_network(request)`` and
    ``unfence_cluster_network(request)``; *kube_client* must offer
    ``get_secret(name, namespace)``.
    """

    def __init__(self, controller: Any, kube_client: Any) -> None:
        self._controller = controller
        self._kube = kube_client

    def _driver_request(self, request: NetworkFenceRequest) -> dict[str, Any]:
        try:
            secrets = self._kube.get_secret(request.secret_name, request.secret_namespace)
        except Exception as exc:
            log.error(
                "Failed to get secret %s in namespace %s: %s",
                request.secret_name,
                request.secret_namespace,
                exc,
            )
            raise RpcError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc
        return {
            "parameters": dict(request.parameters),
            "cidrs": get_cidrs(request.cidrs),
            "secrets": secrets,
        }

    def fence_cluster_network(self, request: NetworkFenceRequest) -> None:
        """Fence the CIDR blocks of *request*."""
        driver_request = self._driver_request(request)
        try:
            self._controller.fence_cluster_network(driver_request)
        except Exception as exc:
            log.error("Failed to fence cluster network: %s", exc)
            raise

    def unfence_cluster_network(self, request: NetworkFenceRequest) -> None:
        """Remove the fence from the CIDR blocks of *request*."""
        driver_request = self._driver_request(request)
        try:
            self._controller.unfence_cluster_network(driver_request)
        except Exception as exc:
            log.error("Failed to unfence cluster network: %s", exc)
            raise

    @staticmethod
    def _handler(method: Callable[[NetworkFenceRequest], None]) -> grpc.RpcMethodHandler:
        def handle(data: bytes, context: Any) -> bytes:
            try:
                method(_decode_request(data))
            except (RpcError, grpc.RpcError) as exc:
                _abort(context, exc)
                raise
            return b""

        return grpc.unary_unary_rpc_method_handler(handle)

    def register_service(self, server: Any) -> None:
        handlers = {
            "FenceClusterNetwork": self._handler(self.fence_cluster_network),
            "UnFenceClusterNetwork": self._handler(self.unfence_cluster_network),
        }
        server.add_generic_rpc_handlers(
            (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
        )