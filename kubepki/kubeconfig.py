import base64
import logging
import os
import pathlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from .cluster import ClusterConfig
from .errors import CertGenerationError, CertIOError
from .path_utils import PkiLayout
from .runner import CommandRunner

log = logging.getLogger(__name__)

API_PORT = 6443


@dataclass(frozen=True)
class KubeconfigSpec:
    name: str
    credential: str
    host: str

    @property
    def ledger_key(self) -> str:
        return f"kubeconfig/{self.name}"


def kubeconfig_specs(cluster: ClusterConfig) -> List[KubeconfigSpec]:
    cp = cluster.control_plane
    specs = [
        KubeconfigSpec("admin", "default-admin", cp),
        KubeconfigSpec("controller-manager", "system:kube-controller-manager", cp),
        KubeconfigSpec("scheduler", "system:kube-scheduler", cp),
    ]
    for node_name, addr in cluster.node_hosts().items():
        specs.append(KubeconfigSpec(node_name, f"system:node:{node_name}", addr))
    return specs


def _kubectl_steps(layout: PkiLayout, cluster: ClusterConfig, spec: KubeconfigSpec) -> List[List[str]]:
    conf = str(layout.kubeconfig(spec.name))
    crt, key = layout.component_pair(spec.name)
    return [
        [
            "config", "set-cluster", "kubernetes",
            f"--certificate-authority={layout.ca_chain}",
            "--embed-certs=true",
            f"--server=https://{cluster.control_plane}:{API_PORT}",
            f"--kubeconfig={conf}",
        ],
        [
            "config", "set-credentials", spec.credential,
            f"--client-certificate={crt}",
            f"--client-key={key}",
            "--embed-certs=true",
            f"--kubeconfig={conf}",
        ],
        [
            "config", "set-context", "default",
            "--cluster=kubernetes",
            f"--user={spec.credential}",
            f"--kubeconfig={conf}",
        ],
        ["config", "use-context", "default", f"--kubeconfig={conf}"],
    ]


def generate_kubeconfig(
    runner: CommandRunner,
    layout: PkiLayout,
    cluster: ClusterConfig,
    spec: KubeconfigSpec,
    tracker=None,
    kubectl: str = "kubectl",
) -> pathlib.Path:
    crt, key = layout.component_pair(spec.name)
    for p in (layout.ca_chain, crt, key):
        if not p.is_file():
            raise CertGenerationError("kubeconfig", f"{spec.name} needs {p}")
    layout.kubeconfig_dir.mkdir(parents=True, exist_ok=True)
    for args in _kubectl_steps(layout, cluster, spec):
        res = runner.run([kubectl, *args])
        if not res.ok:
            raise CertGenerationError("kubeconfig", f"kubectl {args[1]} failed for {spec.name}", res.stderr)
    conf = layout.kubeconfig(spec.name)
    os.chmod(conf, 0o600)
    log.info("Generated kubeconfig %s", conf)
    if tracker is not None:
        tracker.upsert(spec.ledger_key, str(conf), [spec.host])
    return conf


def generate_kubeconfigs(runner, layout, cluster, tracker=None) -> tuple[List[pathlib.Path], List[tuple[str, Exception]]]:
    done: List[pathlib.Path] = []
    failed: List[tuple[str, Exception]] = []
    for spec in kubeconfig_specs(cluster):
        try:
            done.append(generate_kubeconfig(runner, layout, cluster, spec, tracker))
        except (CertGenerationError, CertIOError) as e:
            log.error("Kubeconfig %s failed: %s", spec.name, e)
            failed.append((spec.name, e))
    return done, failed


def encryption_config_document(secret: bytes | None = None) -> Dict[str, Any]:
    secret = secret or secrets.token_bytes(32)
    return {
        "kind": "EncryptionConfig",
        "apiVersion": "v1",
        "resources": [
            {
                "resources": ["secrets"],
                "providers": [
                    {"aescbc": {"keys": [{"name": "key1", "secret": base64.b64encode(secret).decode("ascii")}]}},
                    {"identity": {}},
                ],
            }
        ],
    }


def generate_encryption_config(layout: PkiLayout, cluster: ClusterConfig, tracker=None) -> pathlib.Path:
    path = layout.encryption_config
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump(encryption_config_document(), f, sort_keys=False)
    os.chmod(path, 0o600)
    log.info("Generated encryption config %s", path)
    if tracker is not None:
        tracker.upsert("encryption-config", str(path), [cluster.control_plane] if cluster.control_plane else [])
    return path


@dataclass(frozen=True)
class ImportedKubeconfig:
    path: str
    clusters: Dict[str, Dict[str, Any]]
    users: List[str]
    contexts: Dict[str, Dict[str, Any]]
    current_context: str | None


def import_kubeconfig(path: pathlib.Path) -> ImportedKubeconfig:
    """Read clusters, users and contexts out of an existing kubeconfig."""
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise CertIOError(f"cannot read kubeconfig {path}", str(e)) from e
    if not isinstance(doc, dict):
        raise CertIOError(f"kubeconfig {path} is not a mapping")

    clusters = {
        c.get("name", ""): {
            "server": (c.get("cluster") or {}).get("server"),
            "embedded_ca": "certificate-authority-data" in (c.get("cluster") or {}),
        }
        for c in doc.get("clusters") or []
    }
    users = [u.get("name", "") for u in doc.get("users") or []]
    contexts = {
        c.get("name", ""): {
            "cluster": (c.get("context") or {}).get("cluster"),
            "user": (c.get("context") or {}).get("user"),
        }
        for c in doc.get("contexts") or []
    }
    return ImportedKubeconfig(str(path), clusters, users, contexts, doc.get("current-context"))
