import pytest

from csiaddons_sidecar.csiaddonsnode import (
    AlreadyExistsError,
    CSIAddonsNode,
    InvalidConfigError,
    NodeManager,
    OwnerReference,
)


class MockClient:
    def __init__(self, driver, error=None):
        self.driver = driver
        self.error = error

    def get_driver_name(self):
        if self.error is not None:
            raise self.error
        return self.driver


class FakeKube:
    def __init__(self, failures=0, exists=False):
        self.failures = failures
        self.exists = exists
        self.created = []
        self.attempts = 0

    def create_csiaddonsnode(self, node):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("apiserver unavailable")
        if self.exists:
            raise AlreadyExistsError(node.name)
        self.created.append(node)


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def manager(driver="example.com", endpoint="192.168.61.228:6060", node="123", **kwargs):
    return NodeManager(
        client=MockClient(driver),
        node=node,
        endpoint=endpoint,
        pod_name="pod",
        pod_namespace="default",
        pod_uid="123",
        **kwargs,
    )


@pytest.mark.parametrize(
    "driver, endpoint, node_id",
    [
        ("example.com", "192.168.61.228:6060", "123"),
        ("csi.example.com", "[2001:0db8:3c4d:0015:0000:0000:1a2f:1a2b]:8080", "32532-1312-435354"),
    ],
)
def test_build_node(driver, endpoint, node_id):
    got = manager(driver=driver, endpoint=endpoint, node=node_id).build_node()
    want = CSIAddonsNode(
        name="pod",
        namespace="default",
        driver_name=driver,
        endpoint=endpoint,
        node_id=node_id,
        owner_references=[OwnerReference(api_version="v1", kind="Pod", name="pod", uid="123")],
    )
    assert got == want


@pytest.mark.parametrize(
    "field, message",
    [
        ("pod_name", "missing Pod name"),
        ("pod_namespace", "missing Pod namespace"),
        ("pod_uid", "missing Pod UID"),
        ("endpoint", "missing endpoint"),
        ("node", "missing node"),
    ],
)
def test_build_node_missing_field(field, message):
    mgr = manager()
    setattr(mgr, field, "")
    with pytest.raises(InvalidConfigError, match=message):
        mgr.build_node()


def test_build_node_empty_driver_name():
    with pytest.raises(InvalidConfigError, match="empty driver name"):
        manager(driver="").build_node()


def test_build_node_driver_error():
    mgr = manager()
    mgr.client = MockClient("x", error=OSError("no socket"))
    with pytest.raises(RuntimeError, match="failed to get driver name: no socket"):
        mgr.build_node()


def test_deploy_creates_node():
    kube = FakeKube()
    node = manager(kube_client=kube).deploy()
    assert kube.created == [node]
    assert node.name == "pod"


def test_deploy_keeps_existing_node():
    kube = FakeKube(exists=True)
    node = manager(kube_client=kube).deploy()
    assert kube.attempts == 1
    assert node.namespace == "default"


def test_deploy_retries_until_created():
    kube = FakeKube(failures=1)
    fake = FakeTime()
    manager(kube_client=kube, retry_interval=1.0, timeout=3.0, sleep=fake.sleep, clock=fake.clock).deploy()
    assert kube.attempts == 2
    assert fake.sleeps == [1.0]


def test_deploy_times_out():
    kube = FakeKube(failures=100)
    fake = FakeTime()
    mgr = manager(kube_client=kube, retry_interval=300.0, timeout=180.0, sleep=fake.sleep, clock=fake.clock)
    with pytest.raises(TimeoutError):
        mgr.deploy()
    assert kube.attempts == 1
    assert fake.sleeps == [180.0]


def test_deploy_invalid_config_fails_immediately():
    kube = FakeKube()
    mgr = manager(kube_client=kube)
    mgr.pod_uid = ""
    with pytest.raises(InvalidConfigError):
        mgr.deploy()
    assert kube.attempts == 0