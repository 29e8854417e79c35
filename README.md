# csiaddons-sidecar

A library for the node-side half of CSI-Addons. A sidecar sits next to a CSI
driver, announces itself to the cluster with a `CSIAddonsNode` object, and
relays CSI-Addons requests from the controller to the driver. The operations
covered are identity queries, space reclamation, network fencing, encryption
key rotation, volume groups and volume replication.

## What is inside

| Module | Purpose |
| --- | --- |
| `csiaddons_sidecar.endpoint` | Validate the controller address and build the endpoint URL the sidecar advertises |
| `csiaddons_sidecar.config` | Runtime options (`Config`) read from a config map, with `parse_duration` for durations such as `"1h30m"` |
| `csiaddons_sidecar.names` | `normalize_lease_name` and `remove_from_slice` |
| `csiaddons_sidecar.errors` | gRPC status helpers: `StatusCode`, `RpcError`, `get_error_message`, `is_unimplemented_error` |
| `csiaddons_sidecar.version` | `version_lines` and `print_version` |
| `csiaddons_sidecar.client` | `DriverClient` and `IdentityStub`: probe the driver, ask for its name and its capabilities |
| `csiaddons_sidecar.csiaddonsnode` | `NodeManager`: builds and creates the `CSIAddonsNode` object for this sidecar |
| `csiaddons_sidecar.server` | `SidecarServer` and the `SidecarService` base class the services derive from |
| `csiaddons_sidecar.volumes` | `PersistentVolume` model, `KubeClient` protocol and `to_csi_access_mode` |
| `csiaddons_sidecar.identity` | `IdentityServer`, which passes Identity calls straight to the driver |
| `csiaddons_sidecar.reclaimspace` | `ReclaimSpaceServer` for controller and node space reclamation |
| `csiaddons_sidecar.networkfence` | `NetworkFenceServer` for fencing and unfencing CIDR blocks |
| `csiaddons_sidecar.encryptionkeyrotation` | `EncryptionKeyRotationServer` |
| `csiaddons_sidecar.volumegroup` | `VolumeGroupServer` |
| `csiaddons_sidecar.replication` | `ReplicationServer` for enable, disable, promote, demote, resync and replication info |

## Endpoints

The controller reaches the sidecar either at an IP address and port, or through
the Pod that runs it:

```python
from csiaddons_sidecar.endpoint import (
    InvalidEndpointError,
    build_endpoint_url,
    validate_controller_endpoint,
)

validate_controller_endpoint("192.168.61.228", "8080")
# '192.168.61.228:8080'

validate_controller_endpoint("2001:db8:3c4d:15:0:1:1a2f:1a2b", "8080")
# '[2001:db8:3c4d:15:0:1:1a2f:1a2b]:8080'

build_endpoint_url("", "8080", "pod", "default")
# 'pod://pod.default:8080'

try:
    validate_controller_endpoint("192.168.61", "8080")
except InvalidEndpointError as exc:
    print(exc)
```

A port above 65535, or one that is not made of digits only, raises
`InvalidEndpointError` as well.

## Configuration

`Config` starts from the defaults: namespace `csi-addons-system`, a reclaim-space
timeout of three minutes and 100 concurrent reconciles. `Config.read_config`
applies the keys `reclaim-space-timeout` (a duration such as `"10m"`) and
`max-concurrent-reconciles` (an integer). An unknown key or a value that cannot
be parsed raises `ConfigError`:

```python
from csiaddons_sidecar.config import Config, ConfigError, parse_duration

config = Config()
config.read_config({"reclaim-space-timeout": "10m", "max-concurrent-reconciles": "5"})

parse_duration("1h30m")   # datetime.timedelta(seconds=5400)

try:
    Config().read_config({"network-fence-duration": "3m"})
except ConfigError as exc:
    print(exc)
```

`Config.read_config_map(kube_client)` calls
`kube_client.get_config_map(namespace, "csi-addons-config")` and applies the
data it returns. When that returns `None` or raises `LookupError`, the options
stay as they are.

## Lease names

`normalize_lease_name` makes a driver name usable as the name of a Lease:

```python
from csiaddons_sidecar.names import normalize_lease_name

normalize_lease_name("some.csi.driver")     # 'some-csi-driver'
normalize_lease_name("some.csi.driver...")  # 'some-csi-driver---X'
```

## Talking to the driver

`DriverClient.connect(address, timeout)` opens a gRPC channel to a socket path
or gRPC target. `probe()` waits until the driver reports it is ready,
`get_driver_name()` returns the driver's name and `has_controller_service()`
tells whether it advertises the controller service.

`NodeManager` uses the driver name to build the `CSIAddonsNode` object
(`build_node()`) and, with `deploy()`, hands it to
`kube_client.create_csiaddonsnode(node)`, retrying until its timeout runs out.
An `AlreadyExistsError` from the client counts as success.

## Services

Each service derives from `SidecarService` and registers its handlers on a
`SidecarServer`:

```python
from csiaddons_sidecar.server import SidecarServer
from csiaddons_sidecar.reclaimspace import ReclaimSpaceServer

server = SidecarServer("", "9070")
server.register_service(ReclaimSpaceServer(controller, node, kube_client))
server.start()   # blocks until server.stop() is called from another thread
```

The services can also be called directly. They look up what they need through
`kube_client` (an object offering `get_persistent_volume(name)` and
`get_secret(name, namespace)`, see `volumes.KubeClient`) and pass a request
mapping to the driver object they were given. Failures are raised as
`RpcError` with a `StatusCode`.

```python
from csiaddons_sidecar.volumes import to_csi_access_mode, CSIAccessMode
from csiaddons_sidecar.replication import ReplicationSource, to_replication_source

to_csi_access_mode(["ReadWriteOnce"], True)   # CSIAccessMode.SINGLE_NODE_MULTI_WRITER
to_replication_source(ReplicationSource(volume_id="vol"))
# {'volume': {'volume_id': 'vol'}}
```

## Errors

```python
from csiaddons_sidecar.errors import RpcError, StatusCode, get_error_message, is_unimplemented_error

err = RpcError(StatusCode.UNIMPLEMENTED, "unimplemented")
is_unimplemented_error(err)   # True
get_error_message(err)        # 'unimplemented'
```

## What the package does not do

- It has no command to run; a sidecar process is assembled from these pieces
  by the caller.
- It brings no Kubernetes API client. The caller supplies the object that
  fetches PersistentVolumes, Secrets and the config map and creates the
  `CSIAddonsNode`.
- Apart from `IdentityServer` and `DriverClient`, the services do not open
  gRPC connections to the driver themselves; the caller supplies the driver
  objects they call.
- It does no leader election.

## Running the tests

Install the package with its `test` extra and run `pytest`.