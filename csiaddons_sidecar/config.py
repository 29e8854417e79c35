"""Configuration options that can be overridden through a ConfigMap."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from typing import Any, Mapping

CONFIG_MAP_NAME = "csi-addons-config"
RECLAIM_SPACE_TIMEOUT_KEY = "reclaim-space-timeout"
MAX_CONCURRENT_RECONCILES_KEY = "max-concurrent-reconciles"
DEFAULT_NAMESPACE = "csi-addons-system"
DEFAULT_MAX_CONCURRENT_RECONCILES = 100
DEFAULT_RECLAIM_SPACE_TIMEOUT = timedelta(minutes=3)

_MAX_NANOSECONDS = 2**63 - 1
_MAX_INT = 2**63 - 1
_MIN_INT = -(2**63)

_UNITS = {
    "ns": Fraction(1),
    "us": Fraction(1_000),
    "\u00b5s": Fraction(1_000),
    "\u03bcs": Fraction(1_000),
    "ms": Fraction(1_000_000),
    "s": Fraction(1_000_000_000),
    "m": Fraction(60_000_000_000),
    "h": Fraction(3_600_000_000_000),
}

_COMPONENT = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_INTEGER = re.compile(r"[+-]?[0-9]+")


class ConfigError(ValueError):
    """Raised when configuration data cannot be read or parsed."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"10s"`` or ``"-1.5m"``."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ConfigError(f'invalid duration "{text}"')

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, frac, unit = match.group(1), match.group(2) or "", match.group(3)
        if not whole and not frac:
            raise ConfigError(f'invalid duration "{text}"')
        if not unit:
            raise ConfigError(f'missing unit in duration "{text}"')
        if unit not in _UNITS:
            raise ConfigError(f'unknown unit "{unit}" in duration "{text}"')
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _UNITS[unit]
        pos = match.end()

    nanoseconds = int(total)
    limit = _MAX_NANOSECONDS + 1 if negative else _MAX_NANOSECONDS
    if nanoseconds > limit:
        raise ConfigError(f'invalid duration "{text}"')
    result = timedelta(microseconds=nanoseconds // 1000)
    return -result if negative else result


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ConfigError(f'invalid syntax: "{text}"')
    value = int(text)
    if not _MIN_INT <= value <= _MAX_INT:
        raise ConfigError(f'value out of range: "{text}"')
    return value


@dataclass
class Config:
    """Options of the CSI-Addons components, with their defaults."""

    namespace: str = DEFAULT_NAMESPACE
    reclaim_space_timeout: timedelta = DEFAULT_RECLAIM_SPACE_TIMEOUT
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    def read_config(self, data: Mapping[str, str] | None) -> None:
        """Update the options from the key/value pairs of a ConfigMap."""
        for key, value in (data or {}).items():
            if key == RECLAIM_SPACE_TIMEOUT_KEY:
                try:
                    self.reclaim_space_timeout = parse_duration(value)
                except ConfigError as exc:
                    raise ConfigError(
                        f'failed to parse key "{key}" value "{value}" as duration: {exc}'
                    ) from exc
            elif key == MAX_CONCURRENT_RECONCILES_KEY:
                try:
                    self.max_concurrent_reconciles = _parse_int(value)
                except ConfigError as exc:
                    raise ConfigError(
                        f'failed to parse key "{key}" value "{value}" as int: {exc}'
                    ) from exc
            else:
                raise ConfigError(f'unknown config key "{key}"')

    def read_config_map(self, kube_client: Any) -> None:
        """Fetch the CSI-Addons ConfigMap and apply its data.

        *kube_client* must offer ``get_config_map(namespace, name)`` returning the
        ConfigMap data, or ``None`` (or raising :class:`LookupError`) when the
        ConfigMap does not exist. A missing ConfigMap leaves the options as they are.
        """
        try:
            data = kube_client.get_config_map(self.namespace, CONFIG_MAP_NAME)
        except LookupError:
            return
        except Exception as exc:
            raise ConfigError(f'failed to get configmap "{CONFIG_MAP_NAME}": {exc}') from exc
        if data is None:
            return
        self.read_config(data)