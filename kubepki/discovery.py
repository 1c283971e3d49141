import asyncio
import copy
import datetime as dt
import json
import logging
import os
import pathlib
import re
import stat
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .common import iso_utc, utc_now
from .path_utils import PkiLayout
from .runner import CommandRunner
from .x509meta import CertificateInfo, read_certificate

log = logging.getLogger(__name__)

CERT_PATTERNS = ("*.crt", "*.pem", "*.cert")
EXPIRY_WARNING_DAYS = 30
MAX_CHAIN_DEPTH = 8
SYSTEM_PKI_DIR = pathlib.Path("/etc/kubernetes/pki")


def discover(path: pathlib.Path) -> List[CertificateInfo]:
    """Parse every certificate file under ``path``. Unparseable files are skipped."""
    path = pathlib.Path(path)
    if not path.is_dir():
        log.info("Discovery skipped, %s is not a directory", path)
        return []
    files = sorted({p for pattern in CERT_PATTERNS for p in path.rglob(pattern) if p.is_file()})
    out: List[CertificateInfo] = []
    for f in files:
        try:
            out.append(read_certificate(f))
        except (ValueError, OSError) as e:
            log.warning("Skipping %s: %s", f, e)
    return out


def discover_candidates(layout: PkiLayout, extra: Iterable[pathlib.Path] = ()) -> List[CertificateInfo]:
    seen: set[str] = set()
    out: List[CertificateInfo] = []
    for d in (layout.certs, layout.kubeconfig_dir, SYSTEM_PKI_DIR, *extra):
        for info in discover(d):
            if info.fingerprint + str(info.path) in seen:
                continue
            seen.add(info.fingerprint + str(info.path))
            out.append(info)
    return out


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "unnamed"


def _fname(info: CertificateInfo) -> str:
    return info.path.name.lower()


def _subject(info: CertificateInfo) -> str:
    return info.subject.lower()


def _ca_dir(info: CertificateInfo) -> str:
    # the kubeadm layout keeps the cluster CA directly in /etc/kubernetes/pki
    if info.path.parent == SYSTEM_PKI_DIR:
        return "kubernetes-ca"
    return info.path.parent.name


Rule = Tuple[Callable[[CertificateInfo], bool], Callable[[CertificateInfo], str]]

CLASSIFICATION_RULES: List[Rule] = [
    (lambda c: "ca-chain" in _fname(c), lambda c: "ca-chain"),
    (lambda c: _fname(c) == "sa.pub", lambda c: "service-account-public"),
    (lambda c: _fname(c) == "sa.key", lambda c: "service-account-private"),
    (lambda c: "encryption-config" in _fname(c), lambda c: "encryption-config"),
    (lambda c: _fname(c) == "ca.crt", _ca_dir),
    (lambda c: _fname(c) == "ca.key", lambda c: f"{_ca_dir(c)}-key"),
    (lambda c: "root" in _subject(c), lambda c: "root-ca"),
    (lambda c: "service account" in _subject(c), lambda c: "service-account"),
    (lambda c: "controller-manager" in _subject(c), lambda c: "controller-manager"),
    (lambda c: c.is_ca, lambda c: f"ca-{_slug(c.common_name or c.subject)}"),
    (lambda c: c.path.stem == c.path.parent.name, lambda c: c.path.stem),
]


def determine_cert_type(info: CertificateInfo) -> str:
    """Best-effort tag for a discovered file; the first matching rule wins."""
    for predicate, tag in CLASSIFICATION_RULES:
        if predicate(info):
            return tag(info)
    return f"cert-{info.fingerprint[:8]}"


@dataclass
class NodeTrustInfo:
    node_ip: str
    certificates: List[CertificateInfo] = field(default_factory=list)
    trust_chain_valid: bool = True
    permissions_valid: bool = True
    expiring_soon: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    last_checked: dt.datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict:
        return {
            "node_ip": self.node_ip,
            "certificates": [c.as_dict() for c in self.certificates],
            "trust_chain_valid": self.trust_chain_valid,
            "permissions_valid": self.permissions_valid,
            "expiring_soon": list(self.expiring_soon),
            "expired": list(self.expired),
            "last_checked": iso_utc(self.last_checked),
        }


class TrustStore:
    def __init__(self) -> None:
        self._by_node: Dict[str, NodeTrustInfo] = {}
        self._lock = threading.Lock()

    def replace(self, info: NodeTrustInfo) -> None:
        with self._lock:
            self._by_node[info.node_ip] = info

    def get(self, node_ip: str) -> Optional[NodeTrustInfo]:
        with self._lock:
            info = self._by_node.get(node_ip)
            return copy.deepcopy(info) if info else None

    def snapshot(self) -> Dict[str, NodeTrustInfo]:
        with self._lock:
            return copy.deepcopy(self._by_node)

    def ca_certificates(self) -> List[CertificateInfo]:
        with self._lock:
            out: List[CertificateInfo] = []
            for info in self._by_node.values():
                out.extend(c for c in info.certificates if c.is_ca)
            return out

    def export(self, path: pathlib.Path) -> None:
        doc = {node: info.as_dict() for node, info in self.snapshot().items()}
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(doc, indent=2), encoding="utf-8")


def find_issuing_ca(cert: CertificateInfo, cas: Sequence[CertificateInfo]) -> Optional[CertificateInfo]:
    for ca in cas:
        if ca.is_ca and ca.subject == cert.issuer:
            return ca
    return None


def issuer_chain(cert: CertificateInfo, cas: Sequence[CertificateInfo]) -> List[CertificateInfo]:
    """Issuers of ``cert`` up to a self-signed root, nearest first."""
    chain: List[CertificateInfo] = []
    current = cert
    for _ in range(MAX_CHAIN_DEPTH):
        issuer = find_issuing_ca(current, cas)
        if issuer is None or any(c.fingerprint == issuer.fingerprint for c in chain):
            break
        chain.append(issuer)
        if issuer.self_signed:
            break
        current = issuer
    return chain


def key_permissions_ok(cert_path: pathlib.Path) -> bool:
    key = cert_path.with_suffix(".key")
    if not key.exists():
        return True
    return stat.S_IMODE(os.stat(key).st_mode) & 0o077 == 0


class TrustValidator:
    """Chain, expiry and key-permission checks per node, results kept in a TrustStore."""

    def __init__(
        self,
        runner: CommandRunner,
        store: Optional[TrustStore] = None,
        openssl: str = "openssl",
        now_fn: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.runner = runner
        self.store = store or TrustStore()
        self.openssl = openssl
        self._now = now_fn or utc_now

    def _verify_against(self, cert: CertificateInfo, chain: List[CertificateInfo]) -> Optional[str]:
        fd, bundle = tempfile.mkstemp(suffix=".pem", prefix="kubepki-bundle-")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as f:
                for ca in chain:
                    f.write(ca.pem())
            res = self.runner.run([self.openssl, "verify", "-CAfile", bundle, str(cert.path)])
        finally:
            os.unlink(bundle)
        if res.ok:
            return None
        return (res.stderr or res.stdout).strip() or f"openssl verify rc={res.returncode}"

    def validate_node_trust(self, node_ip: str, certs: Sequence[CertificateInfo]) -> NodeTrustInfo:
        now = self._now()
        certs = list(certs)
        cas = [c for c in certs if c.is_ca] + self.store.ca_certificates()
        info = NodeTrustInfo(node_ip=node_ip, certificates=certs, last_checked=now)

        for cert in certs:
            if cert.self_signed:
                continue
            chain = issuer_chain(cert, cas)
            if not chain:
                cert.verification_error = f"issuer not found: {cert.issuer}"
            else:
                cert.verification_error = self._verify_against(cert, chain)
            cert.last_verified = now
            if cert.verification_error:
                log.warning("Trust check failed on %s for %s: %s", node_ip, cert.path, cert.verification_error)
                info.trust_chain_valid = False

        for cert in certs:
            if cert.expired(now):
                info.expired.append(cert.subject)
            elif cert.expiring_within(EXPIRY_WARNING_DAYS, now):
                info.expiring_soon.append(cert.subject)
            if not key_permissions_ok(cert.path):
                log.warning("Private key next to %s is group/other accessible", cert.path)
                info.permissions_valid = False

        self.store.replace(info)
        return info

    def revalidate_node(self, node_ip: str, paths: Sequence[pathlib.Path]) -> NodeTrustInfo:
        certs: List[CertificateInfo] = []
        unreadable: List[str] = []
        for p in paths:
            try:
                certs.append(read_certificate(p))
            except (ValueError, OSError) as e:
                log.warning("Cannot re-read %s for %s: %s", p, node_ip, e)
                unreadable.append(str(p))
        info = self.validate_node_trust(node_ip, certs)
        if unreadable:
            info.trust_chain_valid = False
            self.store.replace(info)
        return info

    def revalidate_all(self) -> Dict[str, NodeTrustInfo]:
        plan = {node: [c.path for c in info.certificates] for node, info in self.store.snapshot().items()}
        return {node: self.revalidate_node(node, paths) for node, paths in plan.items()}

    async def run_periodic(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.revalidate_all)
            except Exception:
                log.exception("Periodic trust validation failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


def certificates_by_host(entries) -> Dict[str, List[CertificateInfo]]:
    """Group the certificates named in ledger entries under each target host."""
    parsed: Dict[str, Optional[CertificateInfo]] = {}
    out: Dict[str, List[CertificateInfo]] = {}
    for entry in entries:
        path = entry.path
        if not path or not path.endswith((".crt", ".pem", ".cert")):
            continue
        if path not in parsed:
            try:
                parsed[path] = read_certificate(pathlib.Path(path))
            except (ValueError, OSError) as e:
                log.warning("Ledger entry %s points at unreadable %s: %s", entry.cert_type, path, e)
                parsed[path] = None
        info = parsed[path]
        if info is None:
            continue
        for host in entry.hosts:
            out.setdefault(host, []).append(copy.deepcopy(info))
    return out


def import_existing_certificates(tracker, layout: PkiLayout, extra: Iterable[pathlib.Path] = ()) -> List[str]:
    """Discover certificates on disk and record them in the ledger."""
    imported: List[str] = []
    for info in discover_candidates(layout, extra):
        cert_type = determine_cert_type(info)
        if cert_type in tracker:
            continue
        local_only = cert_type == "root-ca"
        tracker.upsert(cert_type, str(info.path), [], local_only=local_only)
        if info.is_ca:
            tracker.mark_verified(cert_type, True)
        imported.append(cert_type)
    log.info("Imported %d existing certificates", len(imported))
    return imported
