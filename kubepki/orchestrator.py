import asyncio
import logging
import pathlib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .cluster import ClusterConfig
from .connectivity import ConnectivityCache, ConnectivityChecker, ConnectivityMonitor
from .discovery import TrustStore, TrustValidator, certificates_by_host, import_existing_certificates
from .distribution import COMPONENT_NAMES, Distributor
from .errors import CertOperationError, ControlPlaneUnreachable
from .kubeconfig import generate_encryption_config, generate_kubeconfigs
from .path_utils import PkiLayout
from .pki.ca import setup_ca_chain
from .pki.components import GenContext, generate_component, generate_control_plane_certs, generate_worker_certs
from .pki.openssl import OpenSSL
from .pki.service_account import generate_service_account
from .runner import CommandRunner, SshTarget
from .settings import Settings
from .tracker import CertTracker
from .verification import verify_local, verify_remote

log = logging.getLogger(__name__)

CLEANUP_SUFFIXES = (".pem", ".key", ".crt", ".csr", ".srl", ".pub", ".partial")


@dataclass
class RunReport:
    steps: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class Orchestrator:
    """Owns the shared state and runs generation/distribution jobs one at a time."""

    def __init__(
        self,
        settings: Settings,
        cluster: Optional[ClusterConfig] = None,
        runner: Optional[CommandRunner] = None,
        cache_now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.layout = PkiLayout.at(settings.BASE_DIR)
        self.cluster = cluster or ClusterConfig.load(self.layout.cluster_file)
        self.runner = runner or CommandRunner(timeout=settings.COMMAND_TIMEOUT_SEC)
        self.openssl = OpenSSL(self.runner)
        self.tracker = CertTracker()
        self.trust = TrustValidator(self.runner, TrustStore())
        self.target = SshTarget(
            user=self.cluster.remote_user,
            key_path=str(pathlib.Path(self.cluster.ssh_key_path).expanduser()),
        )
        self.cache = ConnectivityCache(self.layout.ssh_cache_file, settings.SSH_CACHE_TTL_SEC, now_fn=cache_now_fn)
        self.checker = ConnectivityChecker(self.cache, self.runner, self.target)
        self.distributor = Distributor(
            self.runner, self.target, self.layout, self.cluster.remote_dir, self.checker, self.tracker
        )
        self._jobs = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kubepki-job")
        self._monitor: Optional[ConnectivityMonitor] = None
        self._trust_stop: Optional[asyncio.Event] = None
        self._trust_task: Optional[asyncio.Task] = None

    # state

    def load_state(self) -> None:
        self.tracker.load(self.layout.status_file)
        self.cache.load()

    def save_state(self) -> None:
        self.tracker.save(self.layout.status_file)
        self.cache.save()

    def startup_check(self) -> Dict[str, bool]:
        """Probe every host. Only an unreachable control plane is fatal."""
        results: Dict[str, bool] = {}
        for host in self.cluster.all_hosts():
            results[host] = self.checker.ensure_reachable(host)
            if not results[host]:
                if host == self.cluster.control_plane:
                    raise ControlPlaneUnreachable(host)
                log.warning("Worker %s is not reachable, continuing", host)
        self.cache.save()
        return results

    # jobs

    def submit(self, name: str, fn: Callable[[], Any]) -> Future:
        def _job():
            log.info("Starting %s", name)
            try:
                result = fn()
            except CertOperationError as e:
                log.error("%s failed: %s", name, e)
                raise
            finally:
                self.tracker.save(self.layout.status_file)
            log.info("Finished %s", name)
            return result

        return self._jobs.submit(_job)

    def shutdown(self) -> None:
        self._jobs.shutdown(wait=True)

    # workflows

    def _ctx(self) -> GenContext:
        return GenContext(
            openssl=self.openssl,
            layout=self.layout,
            tracker=self.tracker,
            key_size=self.settings.KEY_SIZE,
            keep_partial=self.settings.KEEP_PARTIAL,
        )

    def clean_up(self) -> int:
        """Remove generated key material and reset the root CA bookkeeping."""
        removed = 0
        if self.layout.certs.is_dir():
            for p in sorted(self.layout.certs.rglob("*")):
                if p.is_file() and (p.suffix in CLEANUP_SUFFIXES or p.name == "csr"):
                    p.unlink()
                    removed += 1
        if self.layout.root_ca.is_dir():
            (self.layout.root_ca / "serial").write_text("01\n", encoding="utf-8")
            (self.layout.root_ca / "index.txt").write_text("", encoding="utf-8")
        self.tracker.clear()
        log.info("Clean up removed %d files", removed)
        return removed

    def generate_ca_chain(self) -> None:
        setup_ca_chain(
            self.openssl,
            self.layout,
            self.tracker,
            self.cluster.all_hosts(),
            self.settings.KEY_SIZE,
            self.settings.KEEP_PARTIAL,
        )

    def generate_control_plane(self) -> None:
        generate_control_plane_certs(self._ctx(), self.cluster)

    def generate_workers(self) -> List[str]:
        _, failed = generate_worker_certs(self._ctx(), self.cluster)
        return [name for name, _ in failed]

    def generate_service_account(self) -> None:
        cp = [self.cluster.control_plane] if self.cluster.control_plane else []
        generate_service_account(self.openssl, self.layout, self.tracker, cp, self.settings.KEY_SIZE)

    def generate_kubeconfigs(self) -> List[str]:
        _, failed = generate_kubeconfigs(self.runner, self.layout, self.cluster, self.tracker)
        return [name for name, _ in failed]

    def generate_encryption_config(self) -> None:
        generate_encryption_config(self.layout, self.cluster, self.tracker)

    def automate_all(self) -> RunReport:
        """Full pipeline from a clean tree. Stops at the first step that cannot proceed."""
        report = RunReport()
        steps: List[tuple[str, Callable[[], Any]]] = [
            ("clean-up", self.clean_up),
            ("ca-chain", self.generate_ca_chain),
            ("control-plane", self.generate_control_plane),
            ("workers", self.generate_workers),
            ("service-account", self.generate_service_account),
            ("kubeconfigs", self.generate_kubeconfigs),
            ("encryption-config", self.generate_encryption_config),
        ]
        for name, step in steps:
            try:
                partial = step()
            except CertOperationError as e:
                log.error("automate_all stopped at %s: %s", name, e)
                report.failures[name] = str(e)
                break
            if isinstance(partial, list) and partial:
                report.failures[name] = "failed: " + ", ".join(partial)
            report.steps.append(name)
        self.tracker.save(self.layout.status_file)
        return report

    def distribute_pending(self):
        results = self.distributor.distribute_pending()
        self.save_state()
        return results

    def distribute(self, name: str, hosts: Optional[List[str]] = None):
        entry = self.tracker.get(name)
        targets = hosts or (entry.hosts if entry else [])
        results = self.distributor.distribute(name, targets)
        self.save_state()
        return results

    def verify(self):
        return verify_local(self.openssl, self.layout, self.tracker)

    def verify_remote(self, host: str):
        """Check the certificates the ledger targets at ``host`` against the chain placed there."""
        names = [
            e.cert_type
            for e in self.tracker.entries()
            if host in e.hosts and (e.cert_type in COMPONENT_NAMES or e.cert_type.startswith("node-"))
        ]
        return verify_remote(self.openssl, self.target, host, names, self.cluster.remote_dir)

    def regenerate(self, name: str) -> bool:
        return generate_component(self._ctx(), self.cluster, name) is not None

    def import_existing(self) -> List[str]:
        imported = import_existing_certificates(self.tracker, self.layout)
        self.tracker.save(self.layout.status_file)
        return imported

    def refresh_trust(self) -> Dict[str, bool]:
        by_host = certificates_by_host(self.tracker.entries())
        out: Dict[str, bool] = {}
        for host, certs in by_host.items():
            out[host] = self.trust.validate_node_trust(host, certs).trust_chain_valid
        return out

    # background

    async def start_background(self) -> None:
        self._monitor = ConnectivityMonitor(self.checker, self.cluster.all_hosts, self.settings.SSH_RECHECK_SEC)
        self._monitor.start()
        self._trust_stop = asyncio.Event()
        self._trust_task = asyncio.create_task(
            self.trust.run_periodic(self.settings.TRUST_INTERVAL_SEC, self._trust_stop),
            name="kubepki-trust-validation",
        )

    async def stop_background(self) -> None:
        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None
        if self._trust_stop is not None and self._trust_task is not None:
            self._trust_stop.set()
            await self._trust_task
            self._trust_task = None
