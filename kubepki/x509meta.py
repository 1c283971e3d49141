import datetime as dt
import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from .common import days_until, iso_utc, utc_now

_PEM_CERT = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s+.*?-----END CERTIFICATE-----",
    re.DOTALL,
)


def _name_to_cn(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return cast(str, attrs[0].value) if attrs else None


def _rfc4514(name: x509.Name) -> str:
    return name.rfc4514_string()


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        ext = cert.extensions.get_extension_for_oid(x509.oid.ExtensionOID.BASIC_CONSTRAINTS)
        return bool(cast(x509.BasicConstraints, ext.value).ca)
    except x509.ExtensionNotFound:
        return False


def _san_list(cert: x509.Certificate) -> List[str]:
    try:
        ext = cert.extensions.get_extension_for_oid(x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        san = cast(x509.SubjectAlternativeName, ext.value)
    except x509.ExtensionNotFound:
        return []
    out: List[str] = []
    for g in san:
        if isinstance(g, x509.DNSName):
            out.append(g.value)
        elif isinstance(g, x509.IPAddress):
            out.append(str(g.value))
    return out


def load_certificate(data: bytes) -> x509.Certificate:
    """First certificate in a PEM bundle, or a DER certificate."""
    m = _PEM_CERT.search(data)
    if m:
        return x509.load_pem_x509_certificate(m.group(0))
    return x509.load_der_x509_certificate(data)


@dataclass
class CertificateInfo:
    path: pathlib.Path
    subject: str
    issuer: str
    not_before: dt.datetime
    not_after: dt.datetime
    serial: str
    fingerprint: str
    is_ca: bool
    common_name: Optional[str] = None
    san: List[str] = field(default_factory=list)
    last_verified: Optional[dt.datetime] = None
    verification_error: Optional[str] = None
    der: bytes = field(default=b"", repr=False)

    @property
    def self_signed(self) -> bool:
        return self.subject == self.issuer

    def expired(self, now: Optional[dt.datetime] = None) -> bool:
        return self.not_after <= (now or utc_now())

    def expiring_within(self, days: int, now: Optional[dt.datetime] = None) -> bool:
        now = now or utc_now()
        remaining = self.not_after - now
        return dt.timedelta(0) < remaining < dt.timedelta(days=days)

    def pem(self) -> str:
        cert = x509.load_der_x509_certificate(self.der)
        return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "subject": self.subject,
            "issuer": self.issuer,
            "common_name": self.common_name,
            "not_before": iso_utc(self.not_before),
            "not_after": iso_utc(self.not_after),
            "days_until_expiry": days_until(self.not_after),
            "serial": self.serial,
            "fingerprint": self.fingerprint,
            "is_ca": self.is_ca,
            "san": list(self.san),
            "last_verified": iso_utc(self.last_verified) if self.last_verified else None,
            "verification_error": self.verification_error,
        }


def cert_to_info(cert: x509.Certificate, path: pathlib.Path) -> CertificateInfo:
    return CertificateInfo(
        path=path,
        subject=_rfc4514(cert.subject),
        issuer=_rfc4514(cert.issuer),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        serial=format(cert.serial_number, "x"),
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        is_ca=_is_ca(cert),
        common_name=_name_to_cn(cert.subject),
        san=_san_list(cert),
        der=cert.public_bytes(serialization.Encoding.DER),
    )


def read_certificate(path: pathlib.Path) -> CertificateInfo:
    """Parse ``path``. Raises ValueError for content that is not a certificate."""
    return cert_to_info(load_certificate(path.read_bytes()), path)
