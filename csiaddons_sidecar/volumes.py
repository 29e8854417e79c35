"""Kubernetes PersistentVolume model and access-mode mapping to CSI."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Protocol, runtime_checkable


class AccessMode(str, enum.Enum):
    """Access modes of a Kubernetes PersistentVolume."""

    READ_WRITE_ONCE = "ReadWriteOnce"
    READ_ONLY_MANY = "ReadOnlyMany"
    READ_WRITE_MANY = "ReadWriteMany"
    READ_WRITE_ONCE_POD = "ReadWriteOncePod"


class CSIAccessMode(enum.IntEnum):
    """Access modes of a CSI volume capability."""

    UNKNOWN = 0
    SINGLE_NODE_WRITER = 1
    SINGLE_NODE_READER_ONLY = 2
    MULTI_NODE_READER_ONLY = 3
    MULTI_NODE_SINGLE_WRITER = 4
    MULTI_NODE_MULTI_WRITER = 5
    SINGLE_NODE_SINGLE_WRITER = 6
    SINGLE_NODE_MULTI_WRITER = 7


class VolumeMode(str, enum.Enum):
    """Whether a PersistentVolume is consumed as a filesystem or a block device."""

    FILESYSTEM = "Filesystem"
    BLOCK = "Block"


@dataclass(frozen=True)
class SecretReference:
    """Name and namespace of a Kubernetes Secret."""

    name: str
    namespace: str


@dataclass
class CSIVolume:
    """The CSI part of a PersistentVolume specification."""

    driver: str
    volume_handle: str
    volume_attributes: dict[str, str] = field(default_factory=dict)
    node_stage_secret_ref: SecretReference | None = None


@dataclass
class PersistentVolume:
    """The parts of a PersistentVolume the sidecar services use."""

    name: str
    access_modes: list[AccessMode] = field(default_factory=list)
    volume_mode: VolumeMode = VolumeMode.FILESYSTEM
    csi: CSIVolume | None = None


@runtime_checkable
class KubeClient(Protocol):
    """What the sidecar services need from a Kubernetes API client."""

    def get_persistent_volume(self, name: str) -> PersistentVolume:
        """Return the PersistentVolume *name*; raise when it cannot be fetched."""
        ...

    def get_secret(self, name: str, namespace: str) -> dict[str, str]:
        """Return the data of the Secret; raise when it cannot be fetched."""
        ...


def to_csi_access_mode(
    modes: Iterable[AccessMode | str], supports_single_node_multi_writer: bool
) -> CSIAccessMode:
    """Map the access modes of a PersistentVolume to a single CSI access mode."""
    modes = list(modes)
    unique = {AccessMode(mode) for mode in modes}

    if AccessMode.READ_WRITE_ONCE_POD in unique:
        if len(unique) > 1:
            raise ValueError(
                "Kubernetes does not support use of ReadWriteOncePod with other "
                "access modes on the same PersistentVolume"
            )
        if supports_single_node_multi_writer:
            return CSIAccessMode.SINGLE_NODE_SINGLE_WRITER
        return CSIAccessMode.SINGLE_NODE_WRITER

    if AccessMode.READ_WRITE_MANY in unique:
        # ReadWriteMany takes precedence over any other mode.
        return CSIAccessMode.MULTI_NODE_MULTI_WRITER

    if AccessMode.READ_ONLY_MANY in unique and AccessMode.READ_WRITE_ONCE in unique:
        raise ValueError(
            "CSI does not support ReadOnlyMany and ReadWriteOnce on the same PersistentVolume"
        )

    if AccessMode.READ_ONLY_MANY in unique:
        return CSIAccessMode.MULTI_NODE_READER_ONLY

    if AccessMode.READ_WRITE_ONCE in unique:
        if supports_single_node_multi_writer:
            return CSIAccessMode.SINGLE_NODE_MULTI_WRITER
        return CSIAccessMode.SINGLE_NODE_WRITER

    listed = [AccessMode(mode).value for mode in modes]
    raise ValueError(f"unsupported AccessMode combination: {listed}")