"""Creation of the CSIAddonsNode resource that announces this sidecar."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

log = logging.getLogger(__name__)

NODE_CREATION_RETRY = 300.0
NODE_CREATION_TIMEOUT = 180.0


class InvalidConfigError(ValueError):
    """Raised when information needed for the CSIAddonsNode is missing."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"invalid configuration: {detail}")


class AlreadyExistsError(Exception):
    """Raised by a Kubernetes client when the object already exists."""


@dataclass
class OwnerReference:
    """Reference to the object that owns a CSIAddonsNode."""

    api_version: str
    kind: str
    name: str
    uid: str


@dataclass
class CSIAddonsNode:
    """The CSIAddonsNode resource of one sidecar."""

    name: str
    namespace: str
    driver_name: str
    endpoint: str
    node_id: str
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass
class NodeManager:
    """Builds and creates the CSIAddonsNode for the running sidecar.

    *client* must offer ``get_driver_name()``; *kube_client* must offer
    ``create_csiaddonsnode(node)`` and raise :class:`AlreadyExistsError` when the
    object exists already.
    """

    client: Any
    node: str
    endpoint: str
    pod_name: str
    pod_namespace: str
    pod_uid: str
    kube_client: Any = None
    retry_interval: float = NODE_CREATION_RETRY
    timeout: float = NODE_CREATION_TIMEOUT
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def build_node(self) -> CSIAddonsNode:
        """Return the CSIAddonsNode for this sidecar, validating the settings."""
        required = (
            (self.pod_name, "missing Pod name"),
            (self.pod_namespace, "missing Pod namespace"),
            (self.pod_uid, "missing Pod UID"),
            (self.endpoint, "missing endpoint"),
            (self.node, "missing node"),
        )
        for value, problem in required:
            if not value:
                raise InvalidConfigError(problem)

        try:
            driver = self.client.get_driver_name()
        except Exception as exc:
            raise RuntimeError(f"failed to get driver name: {exc}") from exc
        if not driver:
            raise InvalidConfigError("CSI-driver returned an empty driver name")

        return CSIAddonsNode(
            name=self.pod_name,
            namespace=self.pod_namespace,
            driver_name=driver,
            endpoint=self.endpoint,
            node_id=self.node,
            owner_references=[
                OwnerReference(api_version="v1", kind="Pod", name=self.pod_name, uid=self.pod_uid)
            ],
        )

    def _create(self, node: CSIAddonsNode) -> None:
        if self.kube_client is None:
            raise InvalidConfigError("missing Kubernetes client")
        try:
            self.kube_client.create_csiaddonsnode(node)
        except AlreadyExistsError:
            # an existing object is kept as-is
            pass

    def deploy(self) -> CSIAddonsNode:
        """Create the CSIAddonsNode, retrying until the timeout runs out."""
        node = self.build_node()
        deadline = self.clock() + self.timeout
        while True:
            try:
                self._create(node)
            except Exception as exc:
                log.error("failed to create CSIAddonsNode %s/%s: %s", node.namespace, node.name, exc)
            else:
                return node
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            if self.retry_interval >= remaining:
                self.sleep(remaining)
                break
            self.sleep(self.retry_interval)
        raise TimeoutError(f"timed out creating CSIAddonsNode {node.namespace}/{node.name}")