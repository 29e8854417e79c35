from types import SimpleNamespace

import grpc
import pytest

from csiaddons_sidecar.errors import RpcError, StatusCode
from csiaddons_sidecar.identity import IdentityServer

GET_IDENTITY = "/identity.Identity/GetIdentity"
GET_CAPABILITIES = "/identity.Identity/GetCapabilities"
PROBE = "/identity.Identity/Probe"


class FakeChannel:
    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    def unary_unary(self, path, request_serializer=None, response_deserializer=None):
        def call(request, timeout=None):
            self.calls.append((path, request))
            reply = self.replies[path]
            if isinstance(reply, Exception):
                raise reply
            return reply

        return call


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


class DriverFailure(grpc.RpcError):
    def code(self):
        return grpc.StatusCode.UNAVAILABLE

    def details(self):
        return "driver down"


def test_get_identity_forwards_request():
    channel = FakeChannel({GET_IDENTITY: b"\x0a\x03drv", GET_CAPABILITIES: b"", PROBE: b""})
    server = IdentityServer(channel)
    assert server.get_identity(b"") == b"\x0a\x03drv"
    assert channel.calls == [(GET_IDENTITY, b"")]


def test_get_capabilities_and_probe_forward():
    channel = FakeChannel({GET_IDENTITY: b"", GET_CAPABILITIES: b"caps", PROBE: b"ready"})
    server = IdentityServer(channel)
    assert server.get_capabilities(b"") == b"caps"
    assert server.probe(b"") == b"ready"
    assert [path for path, _ in channel.calls] == [GET_CAPABILITIES, PROBE]


def test_driver_error_propagates():
    channel = FakeChannel({GET_IDENTITY: DriverFailure(), GET_CAPABILITIES: b"", PROBE: b""})
    with pytest.raises(DriverFailure):
        IdentityServer(channel).get_identity(b"")


def test_registered_handlers_forward_requests():
    channel = FakeChannel({GET_IDENTITY: b"id", GET_CAPABILITIES: b"caps", PROBE: b"ok"})
    server = FakeServer()
    IdentityServer(channel).register_service(server)
    assert server.lookup(GET_IDENTITY).unary_unary(b"", FakeContext()) == b"id"
    assert server.lookup(GET_CAPABILITIES).unary_unary(b"", FakeContext()) == b"caps"
    assert server.lookup(PROBE).unary_unary(b"", FakeContext()) == b"ok"


def test_registered_handler_unknown_method():
    server = FakeServer()
    IdentityServer(FakeChannel({})).register_service(server)
    assert server.lookup("/identity.Identity/Unknown") is None


def test_handler_aborts_with_driver_status():
    channel = FakeChannel({GET_IDENTITY: DriverFailure(), GET_CAPABILITIES: b"", PROBE: b""})
    server = FakeServer()
    IdentityServer(channel).register_service(server)
    context = FakeContext()
    with pytest.raises(Aborted):
        server.lookup(GET_IDENTITY).unary_unary(b"", context)
    assert context.code == grpc.StatusCode.UNAVAILABLE
    assert context.details == "driver down"


def test_handler_aborts_with_rpc_error_status():
    failure = RpcError(StatusCode.NOT_FOUND, "missing")
    channel = FakeChannel({GET_IDENTITY: b"", GET_CAPABILITIES: b"", PROBE: failure})
    server = FakeServer()
    IdentityServer(channel).register_service(server)
    context = FakeContext()
    with pytest.raises(Aborted):
        server.lookup(PROBE).unary_unary(b"", context)
    assert context.code == grpc.StatusCode.NOT_FOUND
    assert context.details == "missing"