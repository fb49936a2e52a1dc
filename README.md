# lvmlocal

`lvmlocal` holds the node-side logic of a local LVM storage driver: the
controllers that keep volume, snapshot and node resources in step with the
volume groups on a machine, a rate-limited work queue for them, builders for
the responses a CSI driver returns, and anonymous usage reporting.

It needs Python 3.10 or later and has no third-party dependencies.

## What is inside

| Module | Contents |
| --- | --- |
| `lvmlocal.response` | Builders for create/delete/expand volume and create snapshot responses |
| `lvmlocal.version` | Version, build metadata and git commit of the running driver |
| `lvmlocal.usage_config` | Usage constants, size parsing (`to_giga_units`), duration parsing (`parse_duration`) and the ping interval (`get_ping_period`) |
| `lvmlocal.versionset` | `ClusterSource` and `VersionSet`: cluster facts gathered once and cached in the environment |
| `lvmlocal.usage` | The `Usage` event builder, `send`, and the periodic `ping_check` loop |
| `lvmlocal.workqueue` | `RateLimitingQueue`, exponential and fast/slow rate limiters, `split_meta_namespace_key` |
| `lvmlocal.resources` | `LVMVolume`, `LVMSnapshot`, `LVMNode`, `VolumeGroup`, `VolumeError`, `ExecError` and related types |
| `lvmlocal.node_controller` | `NodeController`: publishes the node's volume groups |
| `lvmlocal.volume_controller` | `VolController`: provisions and removes logical volumes |
| `lvmlocal.snapshot_controller` | `SnapController`: creates and removes snapshots |

## Building responses

```python
from lvmlocal.response import (
    CreateVolumeResponseBuilder,
    CreateSnapshotResponseBuilder,
    ControllerExpandVolumeResponseBuilder,
)

response = (
    CreateVolumeResponseBuilder()
    .with_name("pvc-1234")
    .with_capacity(5 * 1024**3)
    .with_context({"openebs.io/volgroup": "lvmvg"})
    .with_topology({"kubernetes.io/hostname": "node-1"})
    .build()
)
response.volume.accessible_topology[0].segments  # {"kubernetes.io/hostname": "node-1"}

snapshot = (
    CreateSnapshotResponseBuilder()
    .with_snapshot_id("pvc-1234@snap-1")
    .with_source_volume_id("pvc-1234")
    .with_size(0)
    .with_creation_time(1_600_000_000, 0)
    .with_ready_to_use(True)
    .build()
)

expanded = (
    ControllerExpandVolumeResponseBuilder()
    .with_capacity_bytes(10 * 1024**3)
    .with_node_expansion_required(True)
    .build()
)
```

`with_creation_time` stores the nanoseconds as a signed 32-bit value.

## Version information

`lvmlocal.version.get()` returns the module's `VERSION` if set, otherwise the
contents of a `VERSION` file in the directory named by `LVMLOCAL_SOURCE_DIR`
(the current directory by default), or `""` if it cannot be read.
`get_git_commit()` returns `GIT_COMMIT` or asks `git rev-parse --verify HEAD`.
`verbose()` joins the version with the first seven characters of the commit,
and `get_version_details()` prefixes that with `lvm-`.

## Sizes and durations

```python
from lvmlocal.usage_config import to_giga_units, parse_duration, get_ping_period

to_giga_units("1 GiB")     # 1
to_giga_units("104.5 GB")  # 104
to_giga_units("1 MB")      # 0: less than a gigabyte rounds down
parse_duration("1h30m")    # timedelta(hours=1, minutes=30)
```

Size prefixes are decimal (1 GB = 1000 MB) whether or not an `i` follows
them. An unparsable size or duration raises `ValueError`.

`get_ping_period()` reads `OPENEBS_IO_ANALYTICS_PING_INTERVAL` (for example
`"2h"` or `"300h"`). A missing, unparsable, negative or shorter-than-one-hour
value falls back to the default of 24 hours.

## Work queue

```python
from lvmlocal.workqueue import (
    RateLimitingQueue,
    default_controller_rate_limiter,
    split_meta_namespace_key,
)

queue = RateLimitingQueue(default_controller_rate_limiter())
queue.add("openebs/node-1")
key = queue.get(1.0)
try:
    namespace, name = split_meta_namespace_key(key)
finally:
    queue.done(key)
    queue.forget(key)
queue.shut_down()
```

Each key is handed out to one worker at a time; a key added again while it
is being processed is queued once more when `done` is called. `get` raises
`TimeoutError` when its timeout passes and `ShutDown` once the queue is shut
down and empty. On failure, `add_rate_limited` requeues a key after the
delay its rate limiter gives: `ItemExponentialFailureRateLimiter` doubles the
delay with each retry up to a cap, `ItemFastSlowRateLimiter` uses a short
delay for a number of attempts and a long one after. `forget` resets an
item's count.

## Controllers

The three controllers share a pattern: event handlers (`add_*`, `update_*`,
`delete_*`) accept mappings or typed resources, keep only the objects that
belong to this node, and enqueue their `namespace/name` keys;
`run(threadiness, stop_event)` starts that many worker threads, each calling
`process_next_work_item`, until `stop_event` is set. A key whose sync raises
is requeued with back-off.

* `VolController.sync_vol` destroys volumes marked for deletion, skips those
  already `Ready` or `Failed`, and otherwise tries the requested volume group
  first, then every group whose name matches the volume's pattern and has
  enough free space (any size for thin-provisioned volumes), smallest free
  space first (`get_vg_priority_list`). When none works the volume is marked
  `Failed`, with an `INSUFFICIENT_CAPACITY` code where the `ExecError` output
  says "insufficient free space" (`transform_lvm_error`).
* `SnapController.sync_snap` creates pending snapshots and removes those
  marked for deletion. Its default queue retries every 5 seconds for 12
  attempts, then every 30 seconds.
* `NodeController.sync_node` creates or updates the node resource so its
  volume groups and owner reference match the machine; `run` also requeues
  the node every `poll_interval` seconds (60 by default).

## Usage reporting

`Usage` collects an event, the application details and the client details;
`build`, `application_builder` and `install_builder` fill them in from a
`ClusterSource` and a `VersionSet`. `payload()` returns the fields that would
be sent, and `send()` posts them in a background thread to the endpoint given
by `OPENEBS_IO_ANALYTICS_ENDPOINT` (or the `endpoint` argument), raising
`ValueError` when none is configured. `ping_check(source, stop_event)` sends
a ping every `get_ping_period()` until `stop_event` is set.

## What this package does not do

The package does not run LVM commands and does not talk to a Kubernetes API
server. The controllers are given their collaborators: a function returning
cached objects, an object carrying the LVM operations and status updates
(`VolumeOperations`, `SnapshotOperations`) or a client that writes node
objects (`NodeClient`). Cluster facts for usage reporting come from a
`ClusterSource` you fill in. There is no command-line program and no gRPC
server; the response builders only produce the response objects.