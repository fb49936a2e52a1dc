"""Fixed facts about the cluster environment, cached in the process environment."""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from dataclasses import dataclass, field

from lvmlocal import version

logger = logging.getLogger(__name__)

ENV_CLUSTER_UUID = "OPENEBS_IO_USAGE_UUID"
ENV_CLUSTER_VERSION = "OPENEBS_IO_K8S_VERSION"
ENV_CLUSTER_ARCH = "OPENEBS_IO_K8S_ARCH"
ENV_OPENEBS_VERSION = "OPENEBS_IO_VERSION_TAG"
ENV_NODE_TYPE = "OPENEBS_IO_NODE_TYPE"
ENV_INSTALLER_TYPE = "OPENEBS_IO_INSTALLER_TYPE"


@dataclass(frozen=True)
class ServerVersion:
    """Version details reported by the cluster API server."""

    git_version: str = ""
    platform: str = ""


@dataclass
class ClusterSource:
    """Known facts about a cluster.

    Each lookup raises LookupError when the fact is not known.
    """

    namespace_uids: dict[str, str] = field(default_factory=dict)
    server: ServerVersion | None = None
    node_os: str | None = None
    nodes: int | None = None

    def namespace_uid(self, namespace: str) -> str:
        """Return the UID of a namespace."""
        try:
            return self.namespace_uids[namespace]
        except KeyError:
            raise LookupError(f'namespace "{namespace}" not found') from None

    def server_version(self) -> ServerVersion:
        """Return the API server's version details."""
        if self.server is None:
            raise LookupError("server version unknown")
        return self.server

    def os_and_kernel_version(self) -> str:
        """Return the operating system and kernel version of the nodes."""
        if self.node_os is None:
            raise LookupError("node OS and kernel version unknown")
        return self.node_os

    def number_of_nodes(self) -> int:
        """Return the number of nodes in the cluster."""
        if self.nodes is None:
            raise LookupError("number of nodes unknown")
        return self.nodes


@dataclass
class VersionSet:
    """Mostly fixed information about the cluster the driver runs in."""

    source: ClusterSource = field(default_factory=ClusterSource)
    environ: MutableMapping[str, str] = field(
        default_factory=lambda: os.environ, repr=False
    )
    uuid: str = ""
    k8s_version: str = ""
    k8s_arch: str = ""
    openebs_version: str = ""
    node_type: str = ""
    installer_type: str = ""

    def fetch_and_set_version(self) -> None:
        """Query the cluster and record the results in the environment."""
        self.uuid = self.source.namespace_uid("default")
        self.environ[ENV_CLUSTER_UUID] = self.uuid

        server = self.source.server_version()
        self.k8s_arch = server.platform
        self.k8s_version = server.git_version
        self.environ[ENV_CLUSTER_ARCH] = self.k8s_arch
        self.environ[ENV_CLUSTER_VERSION] = self.k8s_version

        try:
            self.node_type = self.source.os_and_kernel_version()
        except Exception:
            self.node_type = ""
            self.environ[ENV_NODE_TYPE] = ""
            raise
        self.environ[ENV_NODE_TYPE] = self.node_type

        self.openebs_version = version.get_version_details()
        self.environ[ENV_OPENEBS_VERSION] = self.openebs_version

    def get_version(self, override: bool) -> None:
        """Load the version set, querying the cluster if not cached or if overridden."""
        if ENV_OPENEBS_VERSION not in self.environ or override:
            try:
                self.fetch_and_set_version()
            except Exception as exc:
                logger.error("%s", exc)
                raise
        self.uuid = self.environ.get(ENV_CLUSTER_UUID, "")
        self.k8s_arch = self.environ.get(ENV_CLUSTER_ARCH, "")
        self.k8s_version = self.environ.get(ENV_CLUSTER_VERSION, "")
        self.node_type = self.environ.get(ENV_NODE_TYPE, "")
        self.openebs_version = self.environ.get(ENV_OPENEBS_VERSION, "")
        self.installer_type = self.environ.get(ENV_INSTALLER_TYPE, "")