"""Typed custom resources handled by the LVM controllers."""

from __future__ import annotations

import enum
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

GROUP_OPENEBS_IO = "local.openebs.io"
VERSION_V1ALPHA1 = "v1alpha1"

NODE_CONTROLLER_AGENT = "lvmnode-controller"
VOLUME_CONTROLLER_AGENT = "lvmvolume-controller"
SNAPSHOT_CONTROLLER_AGENT = "lvmsnap-controller"

# Seconds between vg metadata syncs of the node controller.
NODE_POLL_INTERVAL = 60.0
# Resync period of the shared informers, in seconds.
INFORMER_RESYNC_PERIOD = 300.0
# Requeue delays of the snapshot controller.
SNAPSHOT_FAST_DELAY = 5.0
SNAPSHOT_SLOW_DELAY = 30.0
SNAPSHOT_MAX_FAST_ATTEMPTS = 12

STATUS_PENDING = "Pending"
STATUS_READY = "Ready"
STATUS_FAILED = "Failed"


@dataclass(frozen=True)
class GroupVersionResource:
    group: str
    version: str
    resource: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


NODE_RESOURCE = GroupVersionResource(GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmnodes")
VOLUME_RESOURCE = GroupVersionResource(GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmvolumes")
SNAPSHOT_RESOURCE = GroupVersionResource(GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmsnapshots")

_BINARY_SUFFIXES = {"Ki": 2**10, "Mi": 2**20, "Gi": 2**30, "Ti": 2**40, "Pi": 2**50, "Ei": 2**60}
_DECIMAL_SUFFIXES = {
    "": 1, "n": Decimal("1e-9"), "u": Decimal("1e-6"), "m": Decimal("1e-3"),
    "k": 10**3, "M": 10**6, "G": 10**9, "T": 10**12, "P": 10**15, "E": 10**18,
}
_QUANTITY_RE = re.compile(r"([+-]?(?:\d+\.?\d*|\.\d+))([a-zA-Z]*|[eE][+-]?\d+)")


def _parse_quantity(value: Any) -> int:
    """Parse a resource quantity such as '10Gi' into an integer, rounding up."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    match = _QUANTITY_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid quantity: {value!r}")
    try:
        number = Decimal(match.group(1))
    except InvalidOperation:
        raise ValueError(f"invalid quantity: {value!r}") from None
    suffix = match.group(2)
    if suffix in _BINARY_SUFFIXES:
        number *= _BINARY_SUFFIXES[suffix]
    elif suffix in _DECIMAL_SUFFIXES:
        number *= _DECIMAL_SUFFIXES[suffix]
    elif suffix[:1] in "eE" and suffix[1:].lstrip("+-").isdigit():
        number = number.scaleb(int(suffix[1:]))
    else:
        raise ValueError(f"invalid quantity suffix in {value!r}")
    return math.ceil(number)


def _require_mapping(data: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"cannot convert {data!r} to {kind}")
    return data


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OwnerReference:
        data = _require_mapping(data, "OwnerReference")
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=data.get("controller"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }
        if self.controller is not None:
            out["controller"] = self.controller
        return out


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    deletion_timestamp: str | None = None
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ObjectMeta:
        data = _require_mapping(data or {}, "ObjectMeta")
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            deletion_timestamp=data.get("deletionTimestamp"),
            owner_references=[
                OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []
            ],
            finalizers=list(data.get("finalizers") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.namespace:
            out["namespace"] = self.namespace
        if self.uid:
            out["uid"] = self.uid
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        if self.deletion_timestamp is not None:
            out["deletionTimestamp"] = self.deletion_timestamp
        if self.owner_references:
            out["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        if self.finalizers:
            out["finalizers"] = list(self.finalizers)
        return out


@dataclass
class VolumeGroup:
    """An LVM volume group; size and free are in bytes."""

    name: str = ""
    uuid: str = ""
    size: int = 0
    free: int = 0
    lv_count: int = 0
    pv_count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VolumeGroup:
        data = _require_mapping(data, "VolumeGroup")
        return cls(
            name=data.get("name", ""),
            uuid=data.get("uuid", ""),
            size=_parse_quantity(data.get("size", 0)),
            free=_parse_quantity(data.get("free", 0)),
            lv_count=int(data.get("lvCount", 0)),
            pv_count=int(data.get("pvCount", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "size": str(self.size),
            "free": str(self.free),
            "lvCount": self.lv_count,
            "pvCount": self.pv_count,
        }


class ErrorCode(str, enum.Enum):
    INTERNAL = "Internal"
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"


@dataclass
class VolumeError:
    code: ErrorCode = ErrorCode.INTERNAL
    message: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VolumeError:
        data = _require_mapping(data, "VolumeError")
        return cls(code=ErrorCode(data.get("code", "Internal")), message=data.get("message", ""))

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class ExecError(Exception):
    """A failed LVM command, carrying the command's output."""

    def __init__(self, message: str, output: bytes = b"") -> None:
        super().__init__(message)
        self.output = output


@dataclass
class _Resource:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    @property
    def deletion_timestamp(self) -> str | None:
        return self.metadata.deletion_timestamp


@dataclass
class LVMNode(_Resource):
    volume_groups: list[VolumeGroup] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LVMNode:
        data = _require_mapping(data, "LVMNode")
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            volume_groups=[VolumeGroup.from_dict(vg) for vg in data.get("volumeGroups") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": NODE_RESOURCE.api_version,
            "kind": "LVMNode",
            "metadata": self.metadata.to_dict(),
            "volumeGroups": [vg.to_dict() for vg in self.volume_groups],
        }


@dataclass
class LVMVolume(_Resource):
    owner_node_id: str = ""
    vol_group: str = ""
    vg_pattern: str = ""
    capacity: str = ""
    thin_provision: str = ""
    state: str = ""
    error: VolumeError | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LVMVolume:
        data = _require_mapping(data, "LVMVolume")
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        error = status.get("error")
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            owner_node_id=spec.get("ownerNodeID", ""),
            vol_group=spec.get("volGroup", ""),
            vg_pattern=spec.get("vgPattern", ""),
            capacity=str(spec.get("capacity", "")),
            thin_provision=spec.get("thinProvision", ""),
            state=status.get("state", ""),
            error=VolumeError.from_dict(error) if error else None,
        )

    def to_dict(self) -> dict[str, Any]:
        status: dict[str, Any] = {"state": self.state}
        if self.error is not None:
            status["error"] = self.error.to_dict()
        return {
            "apiVersion": VOLUME_RESOURCE.api_version,
            "kind": "LVMVolume",
            "metadata": self.metadata.to_dict(),
            "spec": {
                "ownerNodeID": self.owner_node_id,
                "volGroup": self.vol_group,
                "vgPattern": self.vg_pattern,
                "capacity": self.capacity,
                "thinProvision": self.thin_provision,
            },
            "status": status,
        }


@dataclass
class LVMSnapshot(_Resource):
    owner_node_id: str = ""
    vol_group: str = ""
    snap_size: str = ""
    state: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LVMSnapshot:
        data = _require_mapping(data, "LVMSnapshot")
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            owner_node_id=spec.get("ownerNodeID", ""),
            vol_group=spec.get("volGroup", ""),
            snap_size=str(spec.get("snapSize", "")),
            state=status.get("state", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": SNAPSHOT_RESOURCE.api_version,
            "kind": "LVMSnapshot",
            "metadata": self.metadata.to_dict(),
            "spec": {
                "ownerNodeID": self.owner_node_id,
                "volGroup": self.vol_group,
                "snapSize": self.snap_size,
            },
            "status": {"state": self.state},
        }


@dataclass
class DeletedFinalStateUnknown:
    """Tombstone for an object deleted while its watch was disconnected."""

    key: str
    obj: Any = None


def meta_namespace_key(obj: Any) -> str:
    """Return the 'namespace/name' key of an object, or just 'name' without namespace."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if not isinstance(metadata, Mapping):
            raise TypeError(f"object has no meta: {obj!r}")
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "")
    else:
        metadata = getattr(obj, "metadata", None)
        if not isinstance(metadata, ObjectMeta):
            raise TypeError(f"object has no meta: {obj!r}")
        name, namespace = metadata.name, metadata.namespace
    return f"{namespace}/{name}" if namespace else name