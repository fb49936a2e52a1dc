import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs

import pytest

from lvmlocal import usage_config, version
from lvmlocal.usage import ENDPOINT_ENV, Usage, ping_check
from lvmlocal.versionset import (
    ENV_CLUSTER_ARCH,
    ENV_CLUSTER_UUID,
    ENV_CLUSTER_VERSION,
    ENV_INSTALLER_TYPE,
    ENV_NODE_TYPE,
    ENV_OPENEBS_VERSION,
    ClusterSource,
    ServerVersion,
)


@pytest.fixture(autouse=True)
def fixed_build(monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.2.3")
    monkeypatch.setattr(version, "GIT_COMMIT", "abcdef0123456")


class _Recorder(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers["Content-Length"])
        self.server.bodies.append(self.rfile.read(length).decode())
        self.send_response(200)
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def collector():
    server = HTTPServer(("127.0.0.1", 0), _Recorder)
    server.bodies = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _source():
    return ClusterSource(
        namespace_uids={"default": "uid-default"},
        server=ServerVersion(git_version="v1.20.2", platform="linux/amd64"),
        node_os="Ubuntu 20.04, 5.4.0",
        nodes=3,
    )


def test_set_volume_type_defaults_for_provision():
    u = Usage(environ={})
    assert u.set_volume_type("", usage_config.VOLUME_PROVISION).app_name == "lvm-localpv"
    assert u.set_volume_type("", usage_config.VOLUME_DEPROVISION).app_name == ""
    assert u.set_volume_type("zfs", usage_config.VOLUME_PROVISION).app_name == "zfs"


def test_set_replica_count():
    u = Usage(environ={})
    assert u.set_replica_count("", usage_config.VOLUME_PROVISION).action == "replica:1"
    assert u.set_replica_count("3", usage_config.VOLUME_PROVISION).action == "replica:3"
    assert u.set_replica_count("", usage_config.VOLUME_DEPROVISION).action == "replica:"


def test_set_volume_capacity():
    u = Usage(environ={})
    assert u.set_volume_capacity("104.5 GB").value == 104
    assert u.set_volume_capacity("1 GiB").value == 1
    assert u.set_volume_capacity("not a size").value == 0


def test_new_event_sets_all_fields():
    u = Usage(environ={}).new_event("cat", "act", "lab", 7)
    assert (u.category, u.action, u.label, u.value) == ("cat", "act", "lab", 7)


def test_build_uses_cached_environment():
    env = {
        ENV_OPENEBS_VERSION: "lvm-cached",
        ENV_CLUSTER_UUID: "cached-uid",
        ENV_INSTALLER_TYPE: "helm",
    }
    u = Usage(source=ClusterSource(), environ=env).build()
    assert u.app_id == usage_config.APP_NAME
    assert u.track_id == usage_config.GA_CLIENT_ID
    assert u.client_id == "cached-uid"
    assert u.campaign_source == "helm"


def test_application_builder_fetches_when_not_cached():
    env = {}
    u = Usage(source=_source(), environ=env).application_builder()
    assert u.app_name == "linux/amd64"
    assert u.app_installer_id == "v1.20.2"
    assert u.data_source == "Ubuntu 20.04, 5.4.0"
    assert u.app_version == version.get_version_details()
    assert env[ENV_CLUSTER_ARCH] == "linux/amd64"


def test_install_builder():
    env = {}
    u = Usage(source=_source(), environ=env).install_builder(True)
    assert u.category == usage_config.INSTALL_EVENT
    assert u.action == usage_config.RUNNING_STATUS
    assert u.label == usage_config.EVENT_LABEL_NODE
    assert u.value == 3
    assert u.document_title == "uid-default"
    assert u.app_id == "OpenEBS"
    assert u.app_installer_id == env[ENV_CLUSTER_VERSION]
    assert u.data_source == env[ENV_NODE_TYPE]


def test_install_builder_with_unreachable_cluster():
    u = Usage(source=ClusterSource(), environ={}).install_builder(False)
    assert u.value == 0
    assert u.category == usage_config.INSTALL_EVENT
    assert u.document_title == ""


def test_payload_carries_event_fields():
    u = Usage(environ={}).new_event("cat", "act", "lab", 5)
    u.client_id = "client"
    payload = u.payload()
    assert payload["ec"] == "cat"
    assert payload["ea"] == "act"
    assert payload["el"] == "lab"
    assert payload["ev"] == "5"
    assert payload["cid"] == payload["cc"] == "client"
    assert payload["t"] == "event"


def test_send_without_endpoint_raises():
    with pytest.raises(ValueError):
        Usage(environ={}).send()


def test_endpoint_from_environment():
    u = Usage(environ={ENDPOINT_ENV: "http://localhost:9/collect"})
    assert u.endpoint == "http://localhost:9/collect"


def test_send_posts_payload(collector):
    endpoint = f"http://127.0.0.1:{collector.server_port}/collect"
    u = Usage(source=_source(), environ={}, endpoint=endpoint).build().install_builder(True)
    sender = u.send()
    sender.join(5)
    assert sender.is_alive() is False
    assert len(collector.bodies) == 1
    fields = parse_qs(collector.bodies[0])
    payload = u.payload()
    assert fields["ec"] == [payload["ec"]] == ["install"]
    assert fields["tid"] == [payload["tid"]] == [usage_config.GA_CLIENT_ID]
    assert fields["ev"] == [payload["ev"]] == ["3"]


class _OneShot(threading.Event):
    def __init__(self):
        super().__init__()
        self.timeouts = []

    def wait(self, timeout=None):
        self.timeouts.append(timeout)
        return len(self.timeouts) > 1


def test_ping_check_sends_one_ping_then_stops(collector, monkeypatch):
    for key in (
        ENV_CLUSTER_UUID,
        ENV_CLUSTER_ARCH,
        ENV_CLUSTER_VERSION,
        ENV_NODE_TYPE,
        ENV_OPENEBS_VERSION,
        ENV_INSTALLER_TYPE,
    ):
        monkeypatch.setenv(key, "")
    monkeypatch.delenv(usage_config.PING_PERIOD_ENV, raising=False)
    monkeypatch.setenv(ENDPOINT_ENV, f"http://127.0.0.1:{collector.server_port}/collect")

    stop = _OneShot()
    ping_check(_source(), stop)

    deadline = time.monotonic() + 5
    while not collector.bodies and time.monotonic() < deadline:
        time.sleep(0.01)
    assert stop.timeouts == [usage_config.DEFAULT_PING_PERIOD.total_seconds()] * 2
    assert len(collector.bodies) == 1
    assert parse_qs(collector.bodies[0])["ec"] == ["lvm-ping"]