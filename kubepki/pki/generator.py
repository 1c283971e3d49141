import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import CAPrerequisiteMissing
from .openssl import OpenSSL
from .types import CertificateConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedCert:
    name: str
    cert: pathlib.Path
    key: pathlib.Path
    csr: pathlib.Path


class PartialArtifacts:
    """Stage outputs under temporary names and move them into place on ``commit``.

    A failed call never touches the existing key/certificate pair; staged
    files are removed unless ``keep`` is set.
    """

    def __init__(self, paths: Sequence[pathlib.Path], keep: bool = False) -> None:
        self._staged = {p: p.with_name(f".{p.name}.partial") for p in paths}
        self.keep = keep
        self.committed = False

    def __enter__(self) -> "PartialArtifacts":
        return self

    def staged(self, final: pathlib.Path) -> pathlib.Path:
        return self._staged[final]

    def commit(self) -> None:
        for final, tmp in self._staged.items():
            if tmp.exists():
                os.replace(tmp, final)
        self.committed = True

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.committed:
            return
        left = [p for p in self._staged.values() if p.exists()]
        if self.keep:
            if left:
                log.warning("Keeping partial artifacts for manual recovery: %s", ", ".join(map(str, left)))
            return
        for p in left:
            log.debug("removing partial artifact %s", p)
            p.unlink(missing_ok=True)


def require_ca(ca_dir: pathlib.Path) -> None:
    for fname in ("ca.crt", "ca.key"):
        if not (ca_dir / fname).is_file():
            raise CAPrerequisiteMissing(str(ca_dir / fname))


def generate_cert(
    openssl: OpenSSL,
    name: str,
    config: CertificateConfig,
    ca_dir: Optional[pathlib.Path] = None,
    tracker=None,
    hosts: Sequence[str] = (),
    keep_partial: bool = False,
) -> GeneratedCert:
    """Create ``{name}.key``, ``csr`` and ``{name}.crt`` under ``config.output_dir``.

    Root CAs are self-signed; every other kind is signed by the CA found in
    ``ca_dir``. When a tracker is given the ledger entry ``name`` is upserted
    on success only.
    """
    out = config.output_dir
    key = out / f"{name}.key"
    csr = out / "csr"
    cert = out / f"{name}.crt"

    if not config.kind.self_signed:
        if ca_dir is None:
            raise CAPrerequisiteMissing(f"no signing CA configured for {name}")
        require_ca(ca_dir)

    out.mkdir(parents=True, exist_ok=True)
    with PartialArtifacts([key, csr, cert], keep=keep_partial) as guard:
        openssl.genrsa(guard.staged(key), config.key_size)
        openssl.request(config, guard.staged(key), guard.staged(csr))
        openssl.sign(config, guard.staged(csr), guard.staged(cert), guard.staged(key), ca_dir)
        guard.commit()

    log.info("Generated %s (%s)", name, cert)
    if tracker is not None:
        tracker.upsert(name, str(cert), list(hosts), local_only=config.kind.self_signed)
    return GeneratedCert(name=name, cert=cert, key=key, csr=csr)
