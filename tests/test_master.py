import re
import threading
import time
from types import SimpleNamespace

import pytest

from nodefeat.config import Args, ConfigOverrides
from nodefeat.features import (
    ANNOTATION_NS,
    EXTENDED_RESOURCE_ANNOTATION,
    FEATURE_LABEL_NS,
    FEATURE_LABELS_ANNOTATION,
    NODE_TAINTS_ANNOTATION,
    PROFILE_LABEL_NS,
    WORKER_VERSION_ANNOTATION,
    Taint,
)
from nodefeat.master import NfdMaster
from nodefeat.patches import new_json_patch

NODE = "mock-node"


def new_node(name=NODE):
    return SimpleNamespace(name=name, labels={}, annotations={}, capacity={}, taints=[])


class FakeHelper:
    def __init__(self, node=None):
        self.client = object()
        self.node = node or new_node()
        self.client_error = None
        self.node_error = None
        self.patch_error = None
        self.patch_calls = []
        self.status_calls = []
        self.taint_calls = []

    def get_client(self):
        if self.client_error:
            raise self.client_error
        return self.client

    def get_node(self, cli, name):
        if self.node_error:
            raise self.node_error
        return self.node

    def get_nodes(self, cli):
        return [self.node]

    def patch_node(self, cli, name, patches):
        if self.patch_error:
            raise self.patch_error
        self.patch_calls.append(list(patches))

    def patch_node_status(self, cli, name, patches):
        self.status_calls.append(list(patches))

    def update_node(self, cli, node):
        self.node = node

    def patch_node_taints(self, cli, name, taints):
        self.taint_calls.append(list(taints))


def srt(patches):
    return sorted(patches, key=lambda p: (p.path, p.op))


def make_master(helper=None):
    return NfdMaster(Args(), apihelper=helper, node_name=NODE, namespace="nfd", version="v-test")


LABELS = {
    FEATURE_LABEL_NS + "/source-feature.1": "1",
    FEATURE_LABEL_NS + "/source-feature.2": "2",
    FEATURE_LABEL_NS + "/source-feature.3": "val3",
    PROFILE_LABEL_NS + "/profile-a": "val4",
}
EXT = {FEATURE_LABEL_NS + "/source-feature.1": "1", FEATURE_LABEL_NS + "/source-feature.2": "2"}


def test_update_node_object_success():
    helper = FakeHelper()
    helper.node.labels[FEATURE_LABEL_NS + "/old-feature"] = "old-value"
    helper.node.annotations[ANNOTATION_NS + "/feature-labels"] = "old-feature"
    m = make_master(helper)
    m.update_node_object(helper.client, NODE, LABELS, {"my-annotation": "my-val"}, EXT, None)
    expected = [
        new_json_patch("replace", "/metadata/annotations", FEATURE_LABELS_ANNOTATION,
                       PROFILE_LABEL_NS + "/profile-a,source-feature.1,source-feature.2,source-feature.3"),
        new_json_patch("add", "/metadata/annotations", EXTENDED_RESOURCE_ANNOTATION,
                       "source-feature.1,source-feature.2"),
        new_json_patch("remove", "/metadata/labels", FEATURE_LABEL_NS + "/old-feature", ""),
        new_json_patch("add", "/metadata/annotations", "my-annotation", "my-val"),
    ] + [new_json_patch("add", "/metadata/labels", k, v) for k, v in LABELS.items()]
    assert srt(helper.patch_calls[0]) == srt(expected)
    status = [new_json_patch("add", "/status/capacity", k, v) for k, v in EXT.items()]
    assert srt(helper.status_calls[0]) == srt(status)


def test_update_node_object_without_client():
    m = make_master(FakeHelper())
    with pytest.raises(ValueError, match="no client is passed"):
        m.update_node_object(None, NODE, LABELS, {}, EXT, None)


def test_update_node_object_get_node_fails():
    helper = FakeHelper()
    helper.node_error = KeyError("fake error")
    with pytest.raises(KeyError):
        make_master(helper).update_node_object(helper.client, NODE, LABELS, {}, EXT, None)


def test_update_node_object_patch_fails():
    helper = FakeHelper()
    helper.patch_error = RuntimeError("fake error")
    with pytest.raises(RuntimeError, match="fake error$"):
        make_master(helper).update_node_object(helper.client, NODE, LABELS, {}, EXT, None)


def test_update_master_node():
    helper = FakeHelper()
    make_master(helper).update_master_node()
    assert helper.patch_calls == [
        [new_json_patch("add", "/metadata/annotations", ANNOTATION_NS + "/master.version", "v-test")]
    ]


def test_update_master_node_errors():
    helper = FakeHelper()
    helper.client_error = ConnectionError("mock-error")
    with pytest.raises(ConnectionError):
        make_master(helper).update_master_node()
    helper = FakeHelper()
    helper.patch_error = RuntimeError("mock-error")
    with pytest.raises(RuntimeError, match="mock-error$"):
        make_master(helper).update_master_node()


def test_adding_ext_resources():
    m = make_master()
    assert m.create_extended_resource_patches(new_node(), {}) == []
    patches = m.create_extended_resource_patches(new_node(), {"feature-1": "1", "feature-2": "2"})
    assert srt(patches) == srt([
        new_json_patch("add", "/status/capacity", "feature-1", "1"),
        new_json_patch("add", "/status/capacity", "feature-2", "2"),
    ])
    node = new_node()
    node.capacity[FEATURE_LABEL_NS + "/feature-1"] = "1"
    assert m.create_extended_resource_patches(node, {FEATURE_LABEL_NS + "/feature-1": "1"}) == []
    node = new_node()
    node.capacity["feature-1"] = "2"
    assert srt(m.create_extended_resource_patches(node, {"feature-1": "1"})) == srt([
        new_json_patch("replace", "/status/capacity", "feature-1", "1"),
        new_json_patch("replace", "/status/allocatable", "feature-1", "1"),
    ])


def test_removing_ext_resources():
    m = make_master()
    node = new_node()
    node.annotations[ANNOTATION_NS + "/extended-resources"] = "feature-1,feature-2"
    node.capacity[FEATURE_LABEL_NS + "/feature-1"] = "1"
    node.capacity[FEATURE_LABEL_NS + "/feature-2"] = "2"
    wanted = {FEATURE_LABEL_NS + "/feature-1": "1", FEATURE_LABEL_NS + "/feature-2": "2"}
    assert m.create_extended_resource_patches(node, wanted) == []
    patches = m.create_extended_resource_patches(node, {FEATURE_LABEL_NS + "/feature-2": "2"})
    assert srt(patches) == srt([
        new_json_patch("remove", "/status/capacity", FEATURE_LABEL_NS + "/feature-1", ""),
        new_json_patch("remove", "/status/allocatable", FEATURE_LABEL_NS + "/feature-1", ""),
    ])


MOCK_LABELS = {"feature-1": "1", "feature-2": "val-2", "feature-3": "3"}


def test_set_labels_success():
    helper = FakeHelper()
    make_master(helper).set_labels(NODE, "0.1-test", MOCK_LABELS)
    expected = [
        new_json_patch("add", "/metadata/annotations", WORKER_VERSION_ANNOTATION, "0.1-test"),
        new_json_patch("add", "/metadata/annotations", FEATURE_LABELS_ANNOTATION,
                       "feature-1,feature-2,feature-3"),
    ] + [new_json_patch("add", "/metadata/labels", FEATURE_LABEL_NS + "/" + k, v)
         for k, v in MOCK_LABELS.items()]
    assert srt(helper.patch_calls[0]) == srt(expected)
    assert helper.status_calls == [[]]


def test_set_labels_whitelist():
    helper = FakeHelper()
    m = make_master(helper)
    m.config.label_white_list = re.compile("^f.*2$")
    m.set_labels(NODE, "0.1-test", MOCK_LABELS)
    assert srt(helper.patch_calls[0]) == srt([
        new_json_patch("add", "/metadata/annotations", WORKER_VERSION_ANNOTATION, "0.1-test"),
        new_json_patch("add", "/metadata/annotations", FEATURE_LABELS_ANNOTATION, "feature-2"),
        new_json_patch("add", "/metadata/labels", FEATURE_LABEL_NS + "/feature-2", "val-2"),
    ])


def test_set_labels_extra_deny_instance():
    helper = FakeHelper()
    m = make_master(helper)
    vendor_feature = "vendor." + FEATURE_LABEL_NS + "/feature-4"
    vendor_profile = "vendor." + PROFILE_LABEL_NS + "/feature-5"
    labels = {
        "feature-1": "val-1",
        "valid.ns/feature-2": "val-2",
        "random.denied.ns/feature-3": "val-3",
        "kubernetes.io/feature-4": "val-4",
        "sub.ns.kubernetes.io/feature-5": "val-5",
        vendor_feature: "val-6",
        vendor_profile: "val-7",
        "--invalid-name--": "valid-val",
        "valid-name": "--invalid-val--",
    }
    m.denied.normal = {"random.denied.ns"}
    m.denied.wildcard = {"kubernetes.io"}
    m.config.extra_label_ns = {"valid.ns"}
    m.args.instance = "foo"
    m.set_labels(NODE, "0.1-test", labels)
    assert srt(helper.patch_calls[0]) == srt([
        new_json_patch("add", "/metadata/annotations", "foo." + WORKER_VERSION_ANNOTATION, "0.1-test"),
        new_json_patch("add", "/metadata/annotations", "foo." + FEATURE_LABELS_ANNOTATION,
                       "feature-1,valid.ns/feature-2," + vendor_feature + "," + vendor_profile),
        new_json_patch("add", "/metadata/labels", FEATURE_LABEL_NS + "/feature-1", "val-1"),
        new_json_patch("add", "/metadata/labels", "valid.ns/feature-2", "val-2"),
        new_json_patch("add", "/metadata/labels", vendor_feature, "val-6"),
        new_json_patch("add", "/metadata/labels", vendor_profile, "val-7"),
    ])


def test_set_labels_resource_labels():
    helper = FakeHelper()
    m = make_master(helper)
    m.config.resource_labels = {"feature-3", "feature-1"}
    m.set_labels(NODE, "0.1-test", MOCK_LABELS)
    assert srt(helper.patch_calls[0]) == srt([
        new_json_patch("add", "/metadata/annotations", WORKER_VERSION_ANNOTATION, "0.1-test"),
        new_json_patch("add", "/metadata/annotations", FEATURE_LABELS_ANNOTATION, "feature-2"),
        new_json_patch("add", "/metadata/annotations", EXTENDED_RESOURCE_ANNOTATION, "feature-1,feature-3"),
        new_json_patch("add", "/metadata/labels", FEATURE_LABEL_NS + "/feature-2", "val-2"),
    ])
    assert srt(helper.status_calls[0]) == srt([
        new_json_patch("add", "/status/capacity", FEATURE_LABEL_NS + "/feature-1", "1"),
        new_json_patch("add", "/status/capacity", FEATURE_LABEL_NS + "/feature-3", "3"),
    ])
    assert m.metrics.updated_nodes.value == 1


def test_set_labels_client_error_and_no_publish():
    helper = FakeHelper()
    helper.client_error = ConnectionError("mock-error")
    m = make_master(helper)
    with pytest.raises(ConnectionError):
        m.set_labels(NODE, "0.1-test", MOCK_LABELS)
    m.config.no_publish = True
    m.set_labels(NODE, "0.1-test", MOCK_LABELS)
    assert helper.patch_calls == []


def test_set_taints_adds_taint_and_annotation():
    helper = FakeHelper()
    m = make_master(helper)
    taint = Taint(FEATURE_LABEL_NS + "/t", "v", "NoSchedule")
    m.set_taints(helper.client, [taint], NODE)
    assert helper.taint_calls == [[taint]]
    assert helper.patch_calls == [[new_json_patch(
        "add", "/metadata/annotations", NODE_TAINTS_ANNOTATION, FEATURE_LABEL_NS + "/t=v:NoSchedule")]]


def test_instance_annotation():
    m = make_master()
    assert m.instance_annotation("a/b") == "a/b"
    m.args.instance = "inst"
    assert m.instance_annotation("a/b") == "inst.a/b"


OVERRIDES = ('{"noPublish": true, "enableTaints": true, "extraLabelNs": ["added.ns.io","added.kubernetes.io"], '
             '"denyLabelNs": ["denied.ns.io","denied.kubernetes.io"], '
             '"resourceLabels": ["vendor-1.com/feature-1","vendor-2.io/feature-2"], "labelWhiteList": "foo"}')


def test_configure_overrides():
    m = make_master()
    m.configure("non-existing-file", OVERRIDES)
    assert m.config.no_publish is True
    assert m.config.enable_taints is True
    assert m.config.extra_label_ns == {"added.ns.io", "added.kubernetes.io"}
    assert m.config.deny_label_ns == {"denied.ns.io", "denied.kubernetes.io"}
    assert m.config.resource_labels == {"vendor-1.com/feature-1", "vendor-2.io/feature-2"}
    assert m.config.label_white_list.pattern == "foo"
    assert "kubernetes.io" in m.denied.normal and ".kubernetes.io" in m.denied.wildcard


def test_configure_cmdline_overrides():
    m = make_master()
    m.args = Args(overrides=ConfigOverrides(
        extra_label_ns={"override.added.ns.io"}, deny_label_ns={"override.denied.ns.io"}))
    m.configure("non-existing-file", OVERRIDES)
    assert m.config.extra_label_ns == {"override.added.ns.io"}
    assert m.config.deny_label_ns == {"override.denied.ns.io"}
    assert m.config.no_publish is True


def test_configure_file(tmp_path):
    path = tmp_path / "nfd.conf"
    path.write_text(
        "noPublish: true\n"
        'denyLabelNs: ["denied.ns.io","denied.kubernetes.io"]\n'
        'resourceLabels: ["vendor-1.com/feature-1","vendor-2.io/feature-2"]\n'
        "enableTaints: false\n"
        'labelWhiteList: "foo"\n'
        "leaderElection:\n  leaseDuration: 20s\n  renewDeadline: 4s\n  retryPeriod: 30s\n"
    )
    m = make_master()
    m.args = Args(overrides=ConfigOverrides(extra_label_ns={"override.added.ns.io"}))
    m.configure(str(path), "")
    assert m.config.no_publish is True
    assert m.config.enable_taints is False
    assert m.config.extra_label_ns == {"override.added.ns.io"}
    assert m.config.label_white_list.pattern == "foo"
    assert m.config.leader_election.lease_duration.total_seconds() == 20
    assert m.config.leader_election.renew_deadline.total_seconds() == 4
    assert m.config.leader_election.retry_period.total_seconds() == 30

    m.args = Args(overrides=ConfigOverrides(deny_label_ns={"denied.ns.io"}))
    m.configure(str(path), '{"extraLabelNs": ["added.ns.io"], "noPublish": true}')
    assert m.config.extra_label_ns == {"added.ns.io"}
    assert m.config.deny_label_ns == {"denied.ns.io"}


@pytest.mark.parametrize("args", [
    Args(cert_file="crt", key_file="key"),
    Args(key_file="key", ca_file="ca"),
    Args(cert_file="crt", ca_file="ca"),
])
def test_new_master_tls_args_missing(args):
    with pytest.raises(ValueError):
        NfdMaster(args)


def test_new_master_with_config():
    m = NfdMaster(Args(cert_file="crt", key_file="key", ca_file="ca", config_file="master-config.yaml"))
    assert m.config_file_path == "master-config.yaml"


def _wait_for(getter, expected, timeout=3.0):
    end = time.time() + timeout
    while time.time() < end:
        if getter() == expected:
            return True
        time.sleep(0.02)
    return getter() == expected


def test_dynamic_config(tmp_path):
    conf = tmp_path / "master.conf"
    conf.write_text('extraLabelNs: ["added.ns.io"]\n')
    m = NfdMaster(
        Args(config_file=str(conf), overrides=ConfigOverrides(no_publish=True)),
        node_name=NODE, config_poll_interval=0.05,
    )
    thread = threading.Thread(target=m.run, daemon=True)
    thread.start()
    try:
        assert m.wait_for_ready(5)
        assert _wait_for(lambda: m.config.extra_label_ns, {"added.ns.io"})
        conf.write_text('extraLabelNs: ["override.ns.io"]\nresyncPeriod: "2h"\nnfdApiParallelism: 300\n')
        assert _wait_for(lambda: m.config.extra_label_ns, {"override.ns.io"})
        assert _wait_for(lambda: m.config.resync_period.total_seconds(), 7200)
        assert _wait_for(lambda: m.config.nfd_api_parallelism, 300)
        conf.unlink()
        assert _wait_for(lambda: m.config.extra_label_ns, set())
        assert _wait_for(lambda: m.config.nfd_api_parallelism, 10)
    finally:
        m.stop()
        thread.join(5)
    assert not thread.is_alive()