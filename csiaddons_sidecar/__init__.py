"""Building blocks for a sidecar that relays CSI-Addons operations from a Kubernetes controller to a CSI driver."""

__version__ = "0.1.0"