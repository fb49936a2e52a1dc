"""Anonymous usage events sent to an analytics collector."""

from __future__ import annotations

import logging
import os
import threading
import urllib.request
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from urllib.parse import urlencode

from lvmlocal.usage_config import (
    APP_NAME,
    DEFAULT_CAS_TYPE,
    DEFAULT_REPLICA_COUNT,
    EVENT_LABEL_NODE,
    GA_CLIENT_ID,
    INSTALL_EVENT,
    PING,
    REPLICA,
    RUNNING_STATUS,
    VOLUME_PROVISION,
    get_ping_period,
    to_giga_units,
)
from lvmlocal.versionset import ClusterSource, VersionSet

logger = logging.getLogger(__name__)

ENDPOINT_ENV = "OPENEBS_IO_ANALYTICS_ENDPOINT"
SEND_TIMEOUT = 10.0


@dataclass
class Usage:
    """One usage metric: an event, the application and the client sending it."""

    source: ClusterSource = field(default_factory=ClusterSource, repr=False)
    environ: MutableMapping[str, str] = field(
        default_factory=lambda: os.environ, repr=False
    )
    endpoint: str | None = None

    # Event
    category: str = ""
    action: str = ""
    label: str = ""
    value: int = 0

    # Application
    app_version: str = ""
    app_installer_id: str = ""
    app_id: str = ""
    app_name: str = ""

    # Client
    track_id: str = ""
    client_id: str = ""
    campaign_source: str = ""
    campaign_name: str = ""
    data_source: str = ""
    document_title: str = ""

    def __post_init__(self) -> None:
        if self.endpoint is None:
            self.endpoint = self.environ.get(ENDPOINT_ENV) or None

    def _versions(self, override: bool) -> VersionSet:
        versions = VersionSet(source=self.source, environ=self.environ)
        try:
            versions.get_version(override)
        except Exception:  # already logged; partial data is still usable
            pass
        return versions

    def new_event(self, category: str, action: str, label: str, value: int) -> Usage:
        """Set the event category, action, label and value."""
        self.category = category
        self.action = action
        self.label = label
        self.value = value
        return self

    def build(self) -> Usage:
        """Fill in the application id, tracking id and client details."""
        versions = self._versions(False)
        self.app_id = APP_NAME
        self.track_id = GA_CLIENT_ID
        self.client_id = versions.uuid
        self.campaign_source = versions.installer_type
        return self

    def application_builder(self) -> Usage:
        """Fill in cluster and driver details for non-install events."""
        versions = self._versions(False)
        self.app_version = versions.openebs_version
        self.app_name = versions.k8s_arch
        self.app_installer_id = versions.k8s_version
        self.data_source = versions.node_type
        return self

    def set_volume_capacity(self, size: str) -> Usage:
        """Set the event value to the volume size in whole gigabytes (0 if unparsable)."""
        try:
            self.value = to_giga_units(size)
        except ValueError:
            self.value = 0
        return self

    def set_volume_type(self, vol_type: str, method: str) -> Usage:
        """Set the storage engine, defaulting it for provisioning events."""
        if method == VOLUME_PROVISION and vol_type == "":
            self.app_name = DEFAULT_CAS_TYPE
        else:
            self.app_name = vol_type
        return self

    def set_replica_count(self, count: str, method: str) -> Usage:
        """Set the replica count as the event action."""
        if method == VOLUME_PROVISION and count == "":
            self.action = DEFAULT_REPLICA_COUNT
        else:
            self.action = REPLICA + count
        return self

    def install_builder(self, override: bool) -> Usage:
        """Fill in an install event carrying the cluster size."""
        try:
            cluster_size = self.source.number_of_nodes()
        except Exception:
            cluster_size = 0
        versions = self._versions(override)
        self.app_version = versions.openebs_version
        self.app_name = versions.k8s_arch
        self.app_installer_id = versions.k8s_version
        self.data_source = versions.node_type
        self.document_title = versions.uuid
        self.app_id = APP_NAME
        return self.new_event(INSTALL_EVENT, RUNNING_STATUS, EVENT_LABEL_NODE, cluster_size)

    def payload(self) -> dict[str, str]:
        """Return the measurement-protocol parameters of this event hit."""
        return {
            "v": "1",
            "tid": self.track_id,
            "cid": self.client_id,
            "t": "event",
            "ec": self.category,
            "ea": self.action,
            "el": self.label,
            "ev": str(self.value),
            "cs": self.campaign_source,
            "cc": self.client_id,
            "cn": self.campaign_name,
            "aid": self.app_id,
            "av": self.app_version,
            "ds": self.data_source,
            "an": self.app_name,
            "aiid": self.app_installer_id,
            "dt": self.document_title,
        }

    def send(self) -> threading.Thread:
        """Post the event in the background and return the sending thread."""
        if not self.endpoint:
            raise ValueError("analytics endpoint is not configured")
        request = urllib.request.Request(
            self.endpoint,
            data=urlencode(self.payload()).encode(),
            method="POST",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        def _post() -> None:
            try:
                with urllib.request.urlopen(request, timeout=SEND_TIMEOUT) as response:
                    response.read()
            except (OSError, ValueError) as exc:
                logger.error("%s", exc)

        thread = threading.Thread(target=_post, daemon=True)
        thread.start()
        return thread


def ping_check(source: ClusterSource, stop_event: threading.Event) -> None:
    """Send a ping event every ping period until stop_event is set."""
    usage = Usage(source=source)
    period = get_ping_period().total_seconds()
    while not stop_event.wait(period):
        usage.build().install_builder(True)
        usage.category = PING
        try:
            usage.send()
        except ValueError as exc:
            logger.error("%s", exc)