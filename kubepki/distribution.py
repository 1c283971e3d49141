import logging
import pathlib
import posixpath
import shlex
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .cluster import DEFAULT_REMOTE_DIR
from .connectivity import ConnectivityChecker
from .errors import CertIOError, DistributionError
from .path_utils import PkiLayout
from .runner import CommandRunner, SshTarget

log = logging.getLogger(__name__)

CERT_MODE = "644"
KEY_MODE = "600"
KUBECONFIG_REMOTE_DIR = "/etc/kubernetes"

COMPONENT_NAMES = (
    "kube-apiserver",
    "controller-manager",
    "scheduler",
    "kube-apiserver-kubelet-client",
    "admin",
)


@dataclass(frozen=True)
class RemoteFile:
    local: pathlib.Path
    remote: str
    mode: str


def resolve_routes(name: str, layout: PkiLayout, remote_dir: str = DEFAULT_REMOTE_DIR) -> List[RemoteFile]:
    """Map a ledger name to the files it places on a host. Unknown names map to nothing."""
    if name == "kubernetes-ca":
        k8s = layout.kubernetes_ca
        return [
            RemoteFile(k8s / "ca-chain.crt", f"{remote_dir}/ca-chain.crt", CERT_MODE),
            RemoteFile(k8s / "ca.key", f"{remote_dir}/kubernetes-ca.key", KEY_MODE),
            RemoteFile(k8s / "ca.crt", f"{remote_dir}/kubernetes-ca.crt", CERT_MODE),
        ]
    if name == "ca-chain":
        return [RemoteFile(layout.ca_chain, f"{remote_dir}/ca-chain.crt", CERT_MODE)]
    if name == "service-account":
        sa = layout.service_account
        return [
            RemoteFile(sa / "sa.key", f"{remote_dir}/sa.key", KEY_MODE),
            RemoteFile(sa / "sa.pub", f"{remote_dir}/sa.pub", CERT_MODE),
        ]
    if name in COMPONENT_NAMES or (name.startswith("node-") and name[5:].isdigit()):
        crt, key = layout.component_pair(name)
        return [
            RemoteFile(crt, f"{remote_dir}/{name}.crt", CERT_MODE),
            RemoteFile(key, f"{remote_dir}/{name}.key", KEY_MODE),
        ]
    if name.startswith("kubeconfig/"):
        conf = layout.kubeconfig(name[len("kubeconfig/"):])
        return [RemoteFile(conf, f"{KUBECONFIG_REMOTE_DIR}/{conf.name}", KEY_MODE)]
    if name == "encryption-config":
        return [RemoteFile(layout.encryption_config, f"{remote_dir}/encryption-config.yaml", KEY_MODE)]
    if "root-ca" in name:
        log.debug("%s stays local", name)
    else:
        log.warning("No distribution route for %s, skipping", name)
    return []


@dataclass
class HostOutcome:
    host: str
    ok: bool
    files: List[str] = field(default_factory=list)
    error: Optional[str] = None


class Distributor:
    """Copy files to hosts: unprivileged scp into /tmp, then one privileged ssh placement."""

    def __init__(
        self,
        runner: CommandRunner,
        target: SshTarget,
        layout: PkiLayout,
        remote_dir: str = DEFAULT_REMOTE_DIR,
        checker: Optional[ConnectivityChecker] = None,
        tracker=None,
    ) -> None:
        self.runner = runner
        self.target = target
        self.layout = layout
        self.remote_dir = remote_dir
        self.checker = checker
        self.tracker = tracker

    def _ssh(self, host: str, command: str, what: str) -> None:
        res = self.runner.run(self.target.ssh_argv(host, command))
        if not res.ok:
            raise DistributionError(host, f"{what} failed (rc={res.returncode})", res.stderr)

    def ensure_remote_dir(self, host: str, directory: Optional[str] = None) -> None:
        self._ssh(host, f"sudo mkdir -p {shlex.quote(directory or self.remote_dir)}", "mkdir")

    def place_file(self, host: str, item: RemoteFile) -> None:
        if not item.local.is_file():
            raise DistributionError(host, f"local file missing: {item.local}")
        tmp = f"/tmp/kubepki-{uuid.uuid4().hex}-{item.local.name}"
        res = self.runner.run(self.target.scp_argv(str(item.local), host, tmp))
        if not res.ok:
            raise DistributionError(host, f"scp of {item.local.name} failed (rc={res.returncode})", res.stderr)
        t = shlex.quote(item.remote)
        q = shlex.quote(tmp)
        parent = shlex.quote(posixpath.dirname(item.remote) or "/")
        command = (
            f"sudo mkdir -p {parent} && sudo mv {q} {t} && sudo chown root:root {t} "
            f"&& sudo chmod {item.mode} {t}; rc=$?; rm -f {q}; exit $rc"
        )
        self._ssh(host, command, f"placing {item.remote}")
        log.info("Placed %s on %s:%s (mode %s)", item.local.name, host, item.remote, item.mode)

    def _check_host(self, host: str) -> None:
        if self.checker is not None and not self.checker.ensure_reachable(host):
            raise DistributionError(host, "host is not reachable over SSH")

    def copy_to_remote(self, name: str, host: str) -> List[str]:
        """Place every file routed for ``name`` on ``host``. Returns the remote paths written."""
        routes = resolve_routes(name, self.layout, self.remote_dir)
        if not routes:
            return []
        self._check_host(host)
        missing = [str(r.local) for r in routes if not r.local.is_file()]
        if missing:
            raise DistributionError(host, f"local file missing: {', '.join(missing)}")
        self.ensure_remote_dir(host)
        written: List[str] = []
        for item in routes:
            self.place_file(host, item)
            written.append(item.remote)
        return written

    def distribute(self, name: str, hosts: Sequence[str]) -> Dict[str, HostOutcome]:
        """Copy ``name`` to each host.

        The ledger entry is marked distributed only once every host it targets
        has succeeded; a run over a subset of those hosts leaves it pending.
        """
        outcomes: Dict[str, HostOutcome] = {}
        if not resolve_routes(name, self.layout, self.remote_dir):
            return outcomes
        for host in hosts:
            try:
                files = self.copy_to_remote(name, host)
                outcomes[host] = HostOutcome(host, True, files)
            except (DistributionError, CertIOError) as e:
                log.error("Distribution of %s to %s failed: %s", name, host, e)
                outcomes[host] = HostOutcome(host, False, error=str(e))
        if outcomes and all(o.ok for o in outcomes.values()) and self.tracker is not None:
            entry = self.tracker.get(name)
            missing = sorted(set(entry.hosts) - set(outcomes)) if entry is not None else []
            if missing:
                log.info("%s still pending for %s", name, ", ".join(missing))
            else:
                self.tracker.mark_distributed(name)
        return outcomes

    def distribute_pending(self) -> Dict[str, Dict[str, HostOutcome]]:
        if self.tracker is None:
            return {}
        results: Dict[str, Dict[str, HostOutcome]] = {}
        for entry in self.tracker.pending_distribution():
            if not entry.hosts:
                log.warning("%s has no target hosts, leaving it pending", entry.cert_type)
                continue
            results[entry.cert_type] = self.distribute(entry.cert_type, entry.hosts)
        return results
