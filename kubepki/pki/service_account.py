import logging
import os
import pathlib
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization

from ..errors import CertGenerationError, VerificationError
from ..path_utils import PkiLayout
from .openssl import OpenSSL

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceAccountKeys:
    private: pathlib.Path
    public: pathlib.Path


def generate_service_account(
    openssl: OpenSSL, layout: PkiLayout, tracker=None, hosts=(), key_size: int = 2048
) -> ServiceAccountKeys:
    """RSA keypair used to sign service-account tokens. No certificate involved."""
    out = layout.service_account
    out.mkdir(parents=True, exist_ok=True)
    key = out / "sa.key"
    pub = out / "sa.pub"

    res = openssl.runner.run([
        openssl.binary, "genpkey", "-algorithm", "RSA",
        "-out", str(key), "-pkeyopt", f"rsa_keygen_bits:{key_size}",
    ])
    if not res.ok:
        raise CertGenerationError("key", "service-account key generation failed", res.stderr)
    os.chmod(key, 0o600)

    res = openssl.runner.run([openssl.binary, "rsa", "-in", str(key), "-pubout", "-out", str(pub)])
    if not res.ok:
        key.unlink(missing_ok=True)
        raise CertGenerationError("pubkey", "service-account public key extraction failed", res.stderr)

    log.info("Generated service-account keypair in %s", out)
    if tracker is not None:
        tracker.upsert("service-account", str(key), list(hosts))
        tracker.mark_verified("service-account", True)
        tracker.mark_distributed("service-account")
    return ServiceAccountKeys(private=key, public=pub)


def verify_keypair(openssl: OpenSSL, keys: ServiceAccountKeys) -> None:
    """Raise VerificationError unless sa.key is a valid RSA key matching sa.pub."""
    res = openssl.runner.run([openssl.binary, "rsa", "-in", str(keys.private), "-check", "-noout"])
    if not res.ok:
        raise VerificationError("service-account private key failed the RSA check", res.stderr)
    try:
        priv = serialization.load_pem_private_key(keys.private.read_bytes(), password=None)
        pub = serialization.load_pem_public_key(keys.public.read_bytes())
    except (ValueError, TypeError, OSError) as e:
        raise VerificationError("service-account keys could not be parsed", str(e)) from e
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    if priv.public_key().public_bytes(*fmt) != pub.public_bytes(*fmt):
        raise VerificationError("sa.pub does not match sa.key")
