"""Validation and formatting of the controller endpoint of the sidecar."""

from __future__ import annotations

import ipaddress
import re

_PORT = re.compile(r"[0-9]+")
_MAX_PORT = 0xFFFF


class InvalidEndpointError(ValueError):
    """Raised when an IP address, port or pod reference is not usable."""


def _parse_port(raw_port: str) -> int:
    if not _PORT.fullmatch(raw_port):
        raise InvalidEndpointError(
            f'invalid endpoint: invalid controller port "{raw_port}": invalid syntax'
        )
    port = int(raw_port)
    if port > _MAX_PORT:
        raise InvalidEndpointError(
            f'invalid endpoint: invalid controller port "{raw_port}": value out of range'
        )
    return port


def _parse_ip(raw_ip: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    error = InvalidEndpointError(f'invalid endpoint: invalid controller ip address "{raw_ip}"')
    if "%" in raw_ip:
        raise error
    try:
        return ipaddress.ip_address(raw_ip)
    except ValueError:
        raise error from None


def validate_controller_endpoint(raw_ip: str, raw_port: str) -> str:
    """Validate an IP address and port and return ``ip:port`` (``[ip]:port`` for IPv6)."""
    ip = _parse_ip(raw_ip)
    port = _parse_port(raw_port)

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return f"{ip}:{port}"
    return f"[{ip}]:{port}"


def build_endpoint_url(raw_ip: str, raw_port: str, pod: str, namespace: str) -> str:
    """Return the address under which the controller can reach this sidecar.

    With an IP address the result is that of :func:`validate_controller_endpoint`;
    otherwise it is ``pod://<pod>:<port>`` or ``pod://<pod>.<namespace>:<port>``.
    """
    if raw_ip:
        return validate_controller_endpoint(raw_ip, raw_port)

    if not pod and not namespace:
        raise InvalidEndpointError("invalid endpoint: missing IP-address or Pod and Namespace")

    port = _parse_port(raw_port)

    endpoint = "pod://" + pod
    if namespace:
        endpoint += "." + namespace
    return f"{endpoint}:{port}"