from datetime import timedelta

import pytest

from csiaddons_sidecar.config import (
    DEFAULT_MAX_CONCURRENT_RECONCILES,
    DEFAULT_NAMESPACE,
    DEFAULT_RECLAIM_SPACE_TIMEOUT,
    Config,
    ConfigError,
    parse_duration,
)


def _expected(timeout=DEFAULT_RECLAIM_SPACE_TIMEOUT, reconciles=DEFAULT_MAX_CONCURRENT_RECONCILES):
    return Config(
        namespace=DEFAULT_NAMESPACE,
        reclaim_space_timeout=timeout,
        max_concurrent_reconciles=reconciles,
    )


@pytest.mark.parametrize(
    "data, expected, want_error",
    [
        (None, _expected(), False),
        ({}, _expected(), False),
        ({"reclaim-space-timeout": "10m"}, _expected(timeout=timedelta(minutes=10)), False),
        ({"reclaim-space-timeout": "hours"}, _expected(), True),
        ({"max-concurrent-reconciles": "1"}, _expected(reconciles=1), False),
        ({"max-concurrent-reconciles": "invalid"}, _expected(), True),
        (
            {"reclaim-space-timeout": "10m", "max-concurrent-reconciles": "5"},
            _expected(timeout=timedelta(minutes=10), reconciles=5),
            False,
        ),
        ({"network-fence-duration": "3m"}, _expected(), True),
    ],
)
def test_read_config(data, expected, want_error):
    cfg = Config()
    if want_error:
        with pytest.raises(ConfigError):
            cfg.read_config(data)
    else:
        cfg.read_config(data)
    assert cfg == expected


def test_defaults():
    cfg = Config()
    assert cfg.namespace == "csi-addons-system"
    assert cfg.reclaim_space_timeout == timedelta(minutes=3)
    assert cfg.max_concurrent_reconciles == 100


@pytest.mark.parametrize(
    "text, want",
    [
        ("10m", timedelta(minutes=10)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5s", timedelta(seconds=1.5)),
        ("-2m", -timedelta(minutes=2)),
        ("0", timedelta(0)),
        ("250ms", timedelta(milliseconds=250)),
        ("+3h", timedelta(hours=3)),
    ],
)
def test_parse_duration(text, want):
    assert parse_duration(text) == want


@pytest.mark.parametrize("text", ["", "hours", "10", "5x", ".s", "-", "1m.", "1_0s"])
def test_parse_duration_invalid(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


@pytest.mark.parametrize("value", ["+", "1.5", " 3", "1_000", "99999999999999999999"])
def test_max_concurrent_reconciles_invalid(value):
    cfg = Config()
    with pytest.raises(ConfigError):
        cfg.read_config({"max-concurrent-reconciles": value})
    assert cfg.max_concurrent_reconciles == DEFAULT_MAX_CONCURRENT_RECONCILES


class _FakeKubeClient:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.calls = []

    def get_config_map(self, namespace, name):
        self.calls.append((namespace, name))
        if self.error is not None:
            raise self.error
        return self.data


def test_read_config_map_applies_data():
    client = _FakeKubeClient(data={"max-concurrent-reconciles": "7"})
    cfg = Config()
    cfg.read_config_map(client)
    assert cfg.max_concurrent_reconciles == 7
    assert client.calls == [("csi-addons-system", "csi-addons-config")]


def test_read_config_map_missing_keeps_defaults():
    cfg = Config()
    cfg.read_config_map(_FakeKubeClient(data=None))
    assert cfg == _expected()
    cfg.read_config_map(_FakeKubeClient(error=KeyError("csi-addons-config")))
    assert cfg == _expected()


def test_read_config_map_other_error_is_wrapped():
    cfg = Config()
    with pytest.raises(ConfigError, match="failed to get configmap") as info:
        cfg.read_config_map(_FakeKubeClient(error=RuntimeError("boom")))
    assert isinstance(info.value.__cause__, RuntimeError)