import logging
import pathlib
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import VerificationError
from .path_utils import PkiLayout
from .pki.openssl import OpenSSL
from .pki.service_account import ServiceAccountKeys, verify_keypair
from .runner import SshTarget

log = logging.getLogger(__name__)


@dataclass
class VerifyOutcome:
    cert_type: str
    ok: bool
    error: Optional[str] = None


def _issuer_file(layout: PkiLayout, cert_type: str) -> pathlib.Path:
    if cert_type == "kubernetes-ca":
        return layout.root_ca / "ca.crt"
    return layout.ca_chain


def verify_local(openssl: OpenSSL, layout: PkiLayout, tracker) -> Dict[str, VerifyOutcome]:
    """Check every ledger certificate on disk and record the result in the ledger."""
    results: Dict[str, VerifyOutcome] = {}
    for entry in tracker.entries():
        name = entry.cert_type
        if name == "service-account":
            try:
                verify_keypair(openssl, ServiceAccountKeys(layout.service_account / "sa.key", layout.service_account / "sa.pub"))
                results[name] = VerifyOutcome(name, True)
            except VerificationError as e:
                results[name] = VerifyOutcome(name, False, str(e))
        elif "root-ca" in name or name == "ca-chain" or not entry.path.endswith(".crt"):
            continue
        else:
            cert = pathlib.Path(entry.path)
            parsed = openssl.inspect(cert)
            if not parsed.ok:
                results[name] = VerifyOutcome(name, False, parsed.stderr.strip() or "unreadable certificate")
            else:
                res = openssl.verify(_issuer_file(layout, name), cert)
                results[name] = VerifyOutcome(name, res.ok, None if res.ok else res.stderr.strip())
        outcome = results[name]
        tracker.mark_verified(name, outcome.ok)
        if not outcome.ok:
            log.error("Verification of %s failed: %s", name, outcome.error)
    return results


def verify_remote(openssl: OpenSSL, target: SshTarget, host: str, names: List[str], remote_dir: str) -> Dict[str, VerifyOutcome]:
    """Run ``openssl verify`` on ``host`` against the distributed chain."""
    results: Dict[str, VerifyOutcome] = {}
    chain = shlex.quote(f"{remote_dir}/ca-chain.crt")
    for name in names:
        cert = shlex.quote(f"{remote_dir}/{name}.crt")
        res = openssl.runner.run(target.ssh_argv(host, f"sudo openssl verify -CAfile {chain} {cert}"))
        results[name] = VerifyOutcome(name, res.ok, None if res.ok else (res.stderr or res.stdout).strip())
        if not res.ok:
            log.warning("Remote verification of %s on %s failed", name, host)
    return results
