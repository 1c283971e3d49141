import logging
from dataclasses import dataclass
from typing import Sequence

from ..errors import CAPrerequisiteMissing, VerificationError
from ..path_utils import PkiLayout
from .generator import generate_cert
from .openssl import OpenSSL
from .types import CA_KEY_USAGE, CertificateConfig, CertificateKind

log = logging.getLogger(__name__)

CA_VALIDITY_DAYS = 3650


def root_ca_config(layout: PkiLayout, key_size: int = 2048) -> CertificateConfig:
    return CertificateConfig(
        kind=CertificateKind.ROOT_CA,
        common_name="Kubernetes Root CA",
        output_dir=layout.root_ca,
        validity_days=CA_VALIDITY_DAYS,
        key_size=key_size,
        key_usage=CA_KEY_USAGE,
    )


def intermediate_ca_config(layout: PkiLayout, key_size: int = 2048) -> CertificateConfig:
    return CertificateConfig(
        kind=CertificateKind.INTERMEDIATE_CA,
        common_name="kubernetes-ca",
        output_dir=layout.kubernetes_ca,
        validity_days=CA_VALIDITY_DAYS,
        key_size=key_size,
        key_usage=CA_KEY_USAGE,
    )


@dataclass(frozen=True)
class CAChainResult:
    root_created: bool
    chain_verified: bool


def _root_exists(layout: PkiLayout) -> bool:
    return (layout.root_ca / "ca.crt").is_file() and (layout.root_ca / "ca.key").is_file()


def setup_root_ca(openssl: OpenSSL, layout: PkiLayout, key_size: int = 2048, keep_partial: bool = False) -> bool:
    """Create the self-signed root CA unless one already exists. Returns True if created."""
    if _root_exists(layout):
        log.info("Root CA already present in %s, skipping", layout.root_ca)
        return False
    layout.root_ca.mkdir(parents=True, exist_ok=True)
    (layout.root_ca / "index.txt").write_text("", encoding="utf-8")
    (layout.root_ca / "serial").write_text(openssl.rand_hex(16) + "\n", encoding="utf-8")
    generate_cert(openssl, "ca", root_ca_config(layout, key_size), keep_partial=keep_partial)
    return True


def write_chain(layout: PkiLayout) -> None:
    root_pem = (layout.root_ca / "ca.crt").read_text(encoding="utf-8")
    inter_pem = (layout.kubernetes_ca / "ca.crt").read_text(encoding="utf-8")
    layout.ca_chain.write_text(root_pem.rstrip("\n") + "\n" + inter_pem, encoding="utf-8")


def setup_ca_chain(
    openssl: OpenSSL,
    layout: PkiLayout,
    tracker=None,
    hosts: Sequence[str] = (),
    key_size: int = 2048,
    keep_partial: bool = False,
) -> CAChainResult:
    """Root CA, then the kubernetes intermediate CA, then the verified chain file."""
    root_created = setup_root_ca(openssl, layout, key_size, keep_partial)

    if not (layout.root_ca / "ca.crt").is_file():
        raise CAPrerequisiteMissing(str(layout.root_ca / "ca.crt"))
    generate_cert(
        openssl,
        "ca",
        intermediate_ca_config(layout, key_size),
        ca_dir=layout.root_ca,
        keep_partial=keep_partial,
    )

    write_chain(layout)
    res = openssl.verify(layout.root_ca / "ca.crt", layout.kubernetes_ca / "ca.crt")
    if not res.ok:
        layout.ca_chain.unlink(missing_ok=True)
        log.error("CA chain verification failed: %s", res.stderr.strip())
        raise VerificationError("kubernetes CA does not verify against the root CA", res.stderr)
    log.info("CA chain written to %s", layout.ca_chain)

    if tracker is not None:
        hosts = list(hosts)
        if root_created or "root-ca" not in tracker:
            tracker.upsert("root-ca", str(layout.root_ca / "ca.crt"), hosts, local_only=True)
        tracker.upsert("kubernetes-ca", str(layout.kubernetes_ca / "ca.crt"), hosts)
        tracker.upsert("ca-chain", str(layout.ca_chain), hosts)
        for name in ("root-ca", "kubernetes-ca", "ca-chain"):
            tracker.mark_verified(name, True)
    return CAChainResult(root_created=root_created, chain_verified=True)
