"""gRPC server on which the sidecar receives CSI-Addons requests."""

from __future__ import annotations

import abc
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import grpc

log = logging.getLogger(__name__)


class SidecarService(abc.ABC):
    """A service that can be added to the sidecar's gRPC server."""

    @abc.abstractmethod
    def register_service(self, server: Any) -> None:
        """Add this service's handlers to *server*."""


class SidecarServer:
    """Serves the registered services on a TCP address.

    An empty IP address listens on all addresses.
    """

    def __init__(self, ip: str, port: str, *, max_workers: int = 10, grace: float = 30.0) -> None:
        self.scheme = "tcp"
        self.endpoint = f"{ip}:{port}"
        self._host = ip if ip else "[::]"
        self._port = port
        self._max_workers = max_workers
        self._grace = grace
        self._services: list[SidecarService] = []
        self._server: Any = None
        self._lock = threading.Lock()
        self.listen_address: str | None = None

    def register_service(self, service: SidecarService) -> None:
        """Add *service*; call this before :meth:`start`."""
        self._services.append(service)

    def start(self) -> None:
        """Create the gRPC server, register the services and serve until stopped."""
        with self._lock:
            server = grpc.server(ThreadPoolExecutor(max_workers=self._max_workers))
            for service in self._services:
                service.register_service(server)
            try:
                bound = server.add_insecure_port(f"{self._host}:{self._port}")
            except RuntimeError:
                bound = 0
            if not bound:
                raise OSError(f"failed to listen on {self.endpoint} ({self.scheme})")
            self._server = server
            self.listen_address = f"{self._host}:{bound}"
            server.start()

        log.info("Listening for CSI-Addons requests on address: %s", self.listen_address)
        server.wait_for_termination()
        log.info("The CSI-Addons server at %r has been stopped", self.listen_address)

    def stop(self) -> None:
        """Stop the gRPC server, letting pending requests finish."""
        with self._lock:
            server = self._server
        if server is None:
            return
        server.stop(self._grace).wait()