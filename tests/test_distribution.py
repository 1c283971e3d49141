import pytest

from kubepki.connectivity import ConnectivityCache, ConnectivityChecker
from kubepki.distribution import Distributor, resolve_routes
from kubepki.errors import DistributionError
from kubepki.path_utils import PkiLayout
from kubepki.runner import SshTarget
from kubepki.tracker import CertTracker

from _util import FakeRunner, failing

TARGET = SshTarget(user="ops", key_path="/keys/id_rsa")


def _layout(tmp_path):
    layout = PkiLayout.at(tmp_path)
    for name in ("kube-apiserver", "node-1"):
        crt, key = layout.component_pair(name)
        crt.parent.mkdir(parents=True, exist_ok=True)
        crt.write_text("crt")
        key.write_text("key")
    layout.kubernetes_ca.mkdir(parents=True)
    for f in ("ca.crt", "ca.key", "ca-chain.crt"):
        (layout.kubernetes_ca / f).write_text(f)
    return layout


def _reachable(runner, hosts=("10.0.0.1", "10.0.0.2")):
    cache = ConnectivityCache(ttl_seconds=300)
    for h in hosts:
        cache.update_status(h, True)
    return ConnectivityChecker(cache, runner, TARGET)


def test_kubernetes_ca_routes_three_files(tmp_path):
    layout = PkiLayout.at(tmp_path)
    routes = resolve_routes("kubernetes-ca", layout)
    assert [(r.local.name, r.remote, r.mode) for r in routes] == [
        ("ca-chain.crt", "/etc/kubernetes/pki/ca-chain.crt", "644"),
        ("ca.key", "/etc/kubernetes/pki/kubernetes-ca.key", "600"),
        ("ca.crt", "/etc/kubernetes/pki/kubernetes-ca.crt", "644"),
    ]


def test_other_routes(tmp_path):
    layout = PkiLayout.at(tmp_path)
    assert resolve_routes("unknown-thing", layout) == []
    assert resolve_routes("root-ca", layout) == []
    assert [r.remote for r in resolve_routes("node-3", layout, "/srv/pki")] == ["/srv/pki/node-3.crt", "/srv/pki/node-3.key"]
    assert [r.remote for r in resolve_routes("service-account", layout)] == [
        "/etc/kubernetes/pki/sa.key", "/etc/kubernetes/pki/sa.pub",
    ]
    (conf,) = resolve_routes("kubeconfig/admin", layout)
    assert conf.local == layout.kubeconfig_dir / "admin.conf"
    assert conf.remote == "/etc/kubernetes/admin.conf"
    assert conf.mode == "600"
    (enc,) = resolve_routes("encryption-config", layout)
    assert enc.remote.endswith("/encryption-config.yaml")


def test_copy_uses_temp_name_then_privileged_move(tmp_path):
    layout = _layout(tmp_path)
    runner = FakeRunner()
    d = Distributor(runner, TARGET, layout, checker=_reachable(runner))

    written = d.copy_to_remote("kube-apiserver", "10.0.0.1")

    assert written == ["/etc/kubernetes/pki/kube-apiserver.crt", "/etc/kubernetes/pki/kube-apiserver.key"]
    ssh = runner.commands("ssh")
    scp = runner.commands("scp")
    assert ssh[0][-1] == "sudo mkdir -p /etc/kubernetes/pki"
    assert "BatchMode=yes" in ssh[0] and "ConnectTimeout=5" in ssh[0]
    assert len(scp) == 2
    tmp_remote = scp[0][-1].split(":", 1)[1]
    assert tmp_remote.startswith("/tmp/kubepki-") and tmp_remote.endswith("-kube-apiserver.crt")
    place = ssh[1][-1]
    assert f"sudo mv {tmp_remote} /etc/kubernetes/pki/kube-apiserver.crt" in place
    assert "sudo chown root:root /etc/kubernetes/pki/kube-apiserver.crt" in place
    assert "sudo chmod 644" in place
    assert f"rm -f {tmp_remote}" in place
    assert "sudo chmod 600 /etc/kubernetes/pki/kube-apiserver.key" in ssh[2][-1]


def test_scp_failure_raises_with_stderr(tmp_path):
    layout = _layout(tmp_path)
    runner = FakeRunner(fail=failing(lambda a: a[0] == "scp", stderr="Permission denied (publickey)"))
    d = Distributor(runner, TARGET, layout, checker=_reachable(runner))

    with pytest.raises(DistributionError) as ei:
        d.copy_to_remote("node-1", "10.0.0.1")
    assert ei.value.host == "10.0.0.1"
    assert "Permission denied" in ei.value.stderr


def test_missing_local_file_fails_before_remote_calls(tmp_path):
    layout = PkiLayout.at(tmp_path)
    runner = FakeRunner()
    d = Distributor(runner, TARGET, layout, checker=_reachable(runner))
    with pytest.raises(DistributionError):
        d.copy_to_remote("scheduler", "10.0.0.1")
    assert runner.calls == []


def test_unreachable_host_gets_no_copy_attempt(tmp_path):
    layout = _layout(tmp_path)
    runner = FakeRunner(fail=failing(lambda a: "echo 'Connected successfully'" in a, stderr="timeout", rc=255))
    checker = ConnectivityChecker(ConnectivityCache(ttl_seconds=300), runner, TARGET)
    tracker = CertTracker()
    tracker.upsert("node-1", "crt", ["10.0.0.9"])
    d = Distributor(runner, TARGET, layout, checker=checker, tracker=tracker)

    outcomes = d.distribute("node-1", ["10.0.0.9"])

    assert outcomes["10.0.0.9"].ok is False
    assert runner.commands("scp") == []
    assert tracker.get("node-1").distributed is None
    assert checker.cache.needs_recheck("10.0.0.9") is False


def test_distributed_only_when_every_host_succeeds(tmp_path):
    layout = _layout(tmp_path)
    tracker = CertTracker()
    tracker.upsert("kubernetes-ca", "ca.crt", ["10.0.0.1", "10.0.0.2"])
    tracker.upsert("kube-apiserver", "crt", ["10.0.0.1"])
    runner = FakeRunner(fail=failing(lambda a: a[0] == "scp" and a[-1].startswith("ops@10.0.0.2:")))
    d = Distributor(runner, TARGET, layout, checker=_reachable(runner), tracker=tracker)

    results = d.distribute_pending()

    assert results["kubernetes-ca"]["10.0.0.1"].ok is True
    assert results["kubernetes-ca"]["10.0.0.2"].ok is False
    assert tracker.get("kubernetes-ca").distributed is None
    assert tracker.get("kube-apiserver").distributed is not None
    assert [e.cert_type for e in tracker.pending_distribution()] == ["kubernetes-ca"]


def test_unknown_entries_stay_pending(tmp_path):
    tracker = CertTracker()
    tracker.upsert("ca-mystery", "x.crt", ["10.0.0.1"])
    runner = FakeRunner()
    d = Distributor(runner, TARGET, PkiLayout.at(tmp_path), checker=_reachable(runner), tracker=tracker)

    assert d.distribute("ca-mystery", ["10.0.0.1"]) == {}
    assert runner.calls == []
    assert tracker.get("ca-mystery").distributed is None


def test_subset_of_hosts_leaves_entry_pending(tmp_path):
    layout = _layout(tmp_path)
    tracker = CertTracker()
    tracker.upsert("kubernetes-ca", "ca.crt", ["10.0.0.1", "10.0.0.2"])
    runner = FakeRunner()
    d = Distributor(runner, TARGET, layout, checker=_reachable(runner), tracker=tracker)

    outcomes = d.distribute("kubernetes-ca", ["10.0.0.1"])

    assert outcomes["10.0.0.1"].ok is True
    assert tracker.get("kubernetes-ca").distributed is None
    assert [e.cert_type for e in tracker.pending_distribution()] == ["kubernetes-ca"]

    d.distribute("kubernetes-ca", ["10.0.0.1", "10.0.0.2"])
    assert tracker.get("kubernetes-ca").distributed is not None
