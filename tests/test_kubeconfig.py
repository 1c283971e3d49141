import base64

import pytest
import yaml

from kubepki.cluster import ClusterConfig
from kubepki.errors import CertGenerationError, CertIOError
from kubepki.kubeconfig import (
    generate_encryption_config,
    generate_kubeconfig,
    generate_kubeconfigs,
    import_kubeconfig,
    kubeconfig_specs,
)
from kubepki.path_utils import PkiLayout
from kubepki.tracker import CertTracker

from _util import FakeRunner

CLUSTER = ClusterConfig(control_plane="10.0.0.1", worker_nodes=["10.0.0.11"])


def _material(layout, names):
    layout.kubernetes_ca.mkdir(parents=True, exist_ok=True)
    layout.ca_chain.write_text("chain")
    for n in names:
        crt, key = layout.component_pair(n)
        crt.parent.mkdir(parents=True, exist_ok=True)
        crt.write_text("crt")
        key.write_text("key")


def test_specs_cover_components_and_nodes():
    specs = {s.name: s for s in kubeconfig_specs(CLUSTER)}
    assert specs["admin"].credential == "default-admin"
    assert specs["controller-manager"].credential == "system:kube-controller-manager"
    assert specs["scheduler"].host == "10.0.0.1"
    assert specs["node-1"].credential == "system:node:node-1"
    assert specs["node-1"].host == "10.0.0.11"
    assert specs["node-1"].ledger_key == "kubeconfig/node-1"


def test_kubectl_sequence(tmp_path):
    layout = PkiLayout.at(tmp_path)
    _material(layout, ["admin"])
    runner = FakeRunner()
    tracker = CertTracker()
    spec = kubeconfig_specs(CLUSTER)[0]

    conf = generate_kubeconfig(runner, layout, CLUSTER, spec, tracker)

    steps = [c[2] for c in runner.calls]
    assert steps == ["set-cluster", "set-credentials", "set-context", "use-context"]
    assert "--server=https://10.0.0.1:6443" in runner.calls[0]
    assert f"--certificate-authority={layout.ca_chain}" in runner.calls[0]
    assert "--user=default-admin" in runner.calls[2]
    assert conf == layout.kubeconfig_dir / "admin.conf"
    assert conf.stat().st_mode & 0o777 == 0o600
    assert tracker.get("kubeconfig/admin").hosts == ["10.0.0.1"]


def test_missing_client_certificate(tmp_path):
    layout = PkiLayout.at(tmp_path)
    _material(layout, [])
    runner = FakeRunner()
    with pytest.raises(CertGenerationError):
        generate_kubeconfig(runner, layout, CLUSTER, kubeconfig_specs(CLUSTER)[0])
    assert runner.calls == []


def test_batch_reports_failures(tmp_path):
    layout = PkiLayout.at(tmp_path)
    _material(layout, ["admin", "controller-manager", "scheduler"])
    done, failed = generate_kubeconfigs(FakeRunner(), layout, CLUSTER)
    assert len(done) == 3
    assert [n for n, _ in failed] == ["node-1"]


def test_encryption_config(tmp_path):
    layout = PkiLayout.at(tmp_path)
    tracker = CertTracker()
    path = generate_encryption_config(layout, CLUSTER, tracker)

    doc = yaml.safe_load(path.read_text())
    assert doc["kind"] == "EncryptionConfig"
    assert doc["apiVersion"] == "v1"
    res = doc["resources"][0]
    assert res["resources"] == ["secrets"]
    key = res["providers"][0]["aescbc"]["keys"][0]
    assert key["name"] == "key1"
    assert len(base64.b64decode(key["secret"])) == 32
    assert res["providers"][1] == {"identity": {}}
    assert path.stat().st_mode & 0o777 == 0o600
    assert tracker.get("encryption-config").hosts == ["10.0.0.1"]


def test_import_kubeconfig(tmp_path):
    path = tmp_path / "admin.conf"
    path.write_text(yaml.safe_dump({
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "kubernetes", "cluster": {"server": "https://10.0.0.1:6443",
                                                         "certificate-authority-data": "AAAA"}}],
        "users": [{"name": "default-admin", "user": {}}],
        "contexts": [{"name": "default", "context": {"cluster": "kubernetes", "user": "default-admin"}}],
        "current-context": "default",
    }))

    imported = import_kubeconfig(path)

    assert imported.clusters == {"kubernetes": {"server": "https://10.0.0.1:6443", "embedded_ca": True}}
    assert imported.users == ["default-admin"]
    assert imported.contexts["default"] == {"cluster": "kubernetes", "user": "default-admin"}
    assert imported.current_context == "default"


def test_import_rejects_non_mapping(tmp_path):
    path = tmp_path / "bad.conf"
    path.write_text("- just\n- a list\n")
    with pytest.raises(CertIOError):
        import_kubeconfig(path)
