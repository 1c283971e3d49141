import copy
import datetime as dt
import json
import logging
import pathlib
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .common import from_epoch, to_epoch, utc_now
from .errors import LedgerError

log = logging.getLogger(__name__)


@dataclass
class CertificateStatus:
    cert_type: str
    generated: dt.datetime
    path: str
    hosts: List[str] = field(default_factory=list)
    distributed: Optional[dt.datetime] = None
    verified: Optional[bool] = None
    last_verified: Optional[dt.datetime] = None
    local_only: bool = False

    @property
    def pending(self) -> bool:
        return self.distributed is None and not self.local_only and "root-ca" not in self.cert_type

    def as_dict(self) -> dict:
        return {
            "cert_type": self.cert_type,
            "generated": to_epoch(self.generated),
            "distributed": to_epoch(self.distributed),
            "path": self.path,
            "hosts": list(self.hosts),
            "verified": self.verified,
            "last_verified": to_epoch(self.last_verified),
            "local_only": self.local_only,
        }

    @staticmethod
    def from_dict(d: dict) -> "CertificateStatus":
        return CertificateStatus(
            cert_type=str(d["cert_type"]),
            generated=from_epoch(d.get("generated")) or utc_now(),
            path=str(d.get("path", "")),
            hosts=_dedupe(d.get("hosts") or []),
            distributed=from_epoch(d.get("distributed")),
            verified=d.get("verified"),
            last_verified=from_epoch(d.get("last_verified")),
            local_only=bool(d.get("local_only", False)),
        )


def _dedupe(hosts) -> List[str]:
    out: List[str] = []
    for h in hosts:
        if h and h not in out:
            out.append(str(h))
    return out


class CertTracker:
    """Ledger of generated certificates keyed by ``cert_type``.

    All methods are thread-safe; the lock only covers in-memory work, never
    file or subprocess I/O.
    """

    def __init__(self, now_fn: Callable[[], dt.datetime] | None = None) -> None:
        self._now = now_fn or utc_now
        self._by_type: Dict[str, CertificateStatus] = {}
        self._lock = threading.Lock()

    def upsert(self, cert_type: str, path: str, hosts: List[str], local_only: bool = False) -> CertificateStatus:
        hosts = _dedupe(hosts)
        now = self._now()
        with self._lock:
            entry = self._by_type.get(cert_type)
            if entry is None:
                entry = CertificateStatus(
                    cert_type=cert_type, generated=now, path=path, hosts=hosts, local_only=local_only
                )
                self._by_type[cert_type] = entry
            else:
                entry.path = path
                entry.hosts = hosts
                entry.generated = now
                entry.distributed = None
                entry.local_only = entry.local_only or local_only
            return copy.deepcopy(entry)

    def mark_verified(self, cert_type: str, ok: bool = True) -> None:
        with self._lock:
            entry = self._by_type.get(cert_type)
            if entry is None:
                return
            entry.verified = ok
            entry.last_verified = self._now()

    def mark_distributed(self, cert_type: str) -> None:
        with self._lock:
            entry = self._by_type.get(cert_type)
            if entry is None:
                return
            entry.distributed = self._now()

    def get(self, cert_type: str) -> Optional[CertificateStatus]:
        with self._lock:
            entry = self._by_type.get(cert_type)
            return copy.deepcopy(entry) if entry else None

    def entries(self) -> List[CertificateStatus]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._by_type.values()]

    def pending_distribution(self) -> List[CertificateStatus]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._by_type.values() if e.pending]

    def clear(self) -> None:
        with self._lock:
            self._by_type.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_type)

    def __contains__(self, cert_type: object) -> bool:
        with self._lock:
            return cert_type in self._by_type

    def to_document(self) -> dict:
        with self._lock:
            return {"certificates": [e.as_dict() for e in self._by_type.values()]}

    def save(self, path: pathlib.Path) -> None:
        doc = self.to_document()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        tmp.replace(path)

    def load(self, path: pathlib.Path) -> int:
        """Replace the in-memory ledger with the file's content."""
        if not path.exists():
            with self._lock:
                self._by_type.clear()
            return 0
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            loaded = [CertificateStatus.from_dict(d) for d in doc.get("certificates", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise LedgerError(f"malformed ledger {path}", str(e)) from e
        with self._lock:
            self._by_type = {e.cert_type: e for e in loaded}
        log.info("Loaded %d ledger entries from %s", len(loaded), path)
        return len(loaded)
