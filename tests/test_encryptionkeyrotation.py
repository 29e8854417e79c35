from types import SimpleNamespace

import grpc
import pytest

from csiaddons_sidecar.encryptionkeyrotation import (
    EncryptionKeyRotateRequest,
    EncryptionKeyRotationServer,
)
from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.volumes import (
    AccessMode,
    CSIAccessMode,
    CSIVolume,
    PersistentVolume,
    SecretReference,
)


class FakeKube:
    def __init__(self, volumes, secrets=None):
        self.volumes = {pv.name: pv for pv in volumes}
        self.secrets = secrets or {}

    def get_persistent_volume(self, name):
        try:
            return self.volumes[name]
        except KeyError:
            raise LookupError(f'persistentvolumes "{name}" not found') from None

    def get_secret(self, name, namespace):
        try:
            return dict(self.secrets[(name, namespace)])
        except KeyError:
            raise LookupError(f'secret "{name}" not found') from None


class FakeController:
    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def encryption_key_rotate(self, request):
        if self.error:
            raise self.error
        self.requests.append(request)


class FakeServer:
    def __init__(self):
        self.handlers = []

    def add_generic_rpc_handlers(self, handlers):
        self.handlers.extend(handlers)

    def lookup(self, method):
        for handler in self.handlers:
            found = handler.service(SimpleNamespace(method=method))
            if found is not None:
                return found
        return None


class Aborted(Exception):
    pass


class FakeContext:
    def abort(self, code, details):
        self.code = code
        self.details = details
        raise Aborted()


def csi_pv(name="pv1", modes=(AccessMode.READ_WRITE_ONCE,), secret_ref=None):
    return PersistentVolume(
        name=name,
        access_modes=list(modes),
        csi=CSIVolume(
            driver="csi.example.com",
            volume_handle="vol-" + name,
            volume_attributes={"pool": "fast"},
            node_stage_secret_ref=secret_ref,
        ),
    )


def test_missing_pv_name():
    server = EncryptionKeyRotationServer(FakeController(), FakeKube([]))
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest())
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert info.value.message == "pv name is missing from the request"


def test_unknown_pv():
    server = EncryptionKeyRotationServer(FakeController(), FakeKube([]))
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="ghost"))
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert info.value.message.startswith("failed to find a pv with name: ghost. error:")


def test_pv_without_csi():
    kube = FakeKube([PersistentVolume(name="plain", access_modes=[AccessMode.READ_WRITE_ONCE])])
    server = EncryptionKeyRotationServer(FakeController(), kube)
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="plain"))
    assert info.value.message == "plain is not a CSI volume"


def test_unsupported_access_modes():
    kube = FakeKube([csi_pv(modes=(AccessMode.READ_ONLY_MANY, AccessMode.READ_WRITE_ONCE))])
    controller = FakeController()
    server = EncryptionKeyRotationServer(controller, kube)
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="pv1"))
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert controller.requests == []


def test_rotate_without_secret():
    controller = FakeController()
    server = EncryptionKeyRotationServer(controller, FakeKube([csi_pv()]))
    server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="pv1"))
    assert controller.requests == [
        {
            "volume_id": "vol-pv1",
            "parameters": {"pool": "fast"},
            "volume_capability": {"access_mode": {"mode": CSIAccessMode.SINGLE_NODE_MULTI_WRITER}},
        }
    ]


def test_rotate_with_secret():
    ref = SecretReference(name="creds", namespace="storage")
    kube = FakeKube([csi_pv(secret_ref=ref)], {("creds", "storage"): {"key": "secret"}})
    controller = FakeController()
    EncryptionKeyRotationServer(controller, kube).encryption_key_rotate(
        EncryptionKeyRotateRequest(pv_name="pv1")
    )
    assert controller.requests[0]["secrets"] == {"key": "secret"}


def test_missing_secret_is_invalid_argument():
    ref = SecretReference(name="creds", namespace="storage")
    controller = FakeController()
    server = EncryptionKeyRotationServer(controller, FakeKube([csi_pv(secret_ref=ref)]))
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="pv1"))
    assert info.value.code is StatusCode.INVALID_ARGUMENT
    assert controller.requests == []


def test_driver_error_propagates():
    failure = RpcError(StatusCode.INTERNAL, "rotation failed")
    server = EncryptionKeyRotationServer(FakeController(error=failure), FakeKube([csi_pv()]))
    with pytest.raises(RpcError) as info:
        server.encryption_key_rotate(EncryptionKeyRotateRequest(pv_name="pv1"))
    assert info.value is failure


def test_registered_handler_decodes_pv_name():
    controller = FakeController()
    server = FakeServer()
    EncryptionKeyRotationServer(controller, FakeKube([csi_pv()])).register_service(server)
    handler = server.lookup("/proto.EncryptionKeyRotation/EncryptionKeyRotate")
    assert handler.unary_unary(b"\x0a\x03pv1", FakeContext()) == b""
    assert [request["volume_id"] for request in controller.requests] == ["vol-pv1"]


def test_registered_handler_aborts_on_empty_request():
    server = FakeServer()
    EncryptionKeyRotationServer(FakeController(), FakeKube([])).register_service(server)
    context = FakeContext()
    handler = server.lookup("/proto.EncryptionKeyRotation/EncryptionKeyRotate")
    with pytest.raises(Aborted):
        handler.unary_unary(b"", context)
    assert context.code == grpc.StatusCode.INVALID_ARGUMENT
    assert context.details == "pv name is missing from the request"