import asyncio
import json
import logging
import pathlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Union

from .errors import LedgerError
from .runner import CommandRunner, SshTarget

log = logging.getLogger(__name__)

PROBE_COMMAND = "echo 'Connected successfully'"
QUEUE_SIZE = 32


@dataclass
class ConnectionEntry:
    verified: bool
    timestamp: float


class ConnectivityCache:
    """SSH reachability per host, trusted for ``ttl_seconds`` after each check."""

    def __init__(
        self,
        path: Optional[pathlib.Path] = None,
        ttl_seconds: int = 300,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.path = path
        self._ttl = ttl_seconds
        self._now = now_fn or time.time
        self._by_host: Dict[str, ConnectionEntry] = {}
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()

    def _expired(self, entry: ConnectionEntry) -> bool:
        return (self._now() - entry.timestamp) >= self._ttl

    def is_verified(self, host: str) -> bool:
        with self._lock:
            entry = self._by_host.get(host)
            return entry is not None and entry.verified and not self._expired(entry)

    def needs_recheck(self, host: str) -> bool:
        with self._lock:
            entry = self._by_host.get(host)
            return entry is None or self._expired(entry)

    def update_status(self, host: str, ok: bool) -> None:
        with self._lock:
            self._by_host[host] = ConnectionEntry(verified=ok, timestamp=self._now())

    def clear_expired(self) -> int:
        with self._lock:
            to_del = [h for h, e in self._by_host.items() if self._expired(e)]
            for h in to_del:
                self._by_host.pop(h, None)
            return len(to_del)

    def hosts(self) -> List[str]:
        with self._lock:
            return list(self._by_host.keys())

    def snapshot(self) -> Dict[str, ConnectionEntry]:
        with self._lock:
            return {h: ConnectionEntry(e.verified, e.timestamp) for h, e in self._by_host.items()}

    def save(self, path: Optional[pathlib.Path] = None) -> None:
        path = path or self.path
        if path is None:
            return
        doc = {
            "connections": {
                h: {"verified": e.verified, "timestamp": int(e.timestamp)} for h, e in self.snapshot().items()
            }
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._save_lock:
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
            tmp.replace(path)

    def load(self, path: Optional[pathlib.Path] = None) -> int:
        path = path or self.path
        if path is None or not path.exists():
            return 0
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            entries = {
                str(h): ConnectionEntry(bool(v["verified"]), float(v["timestamp"]))
                for h, v in doc.get("connections", {}).items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise LedgerError(f"malformed ssh cache {path}", str(e)) from e
        with self._lock:
            self._by_host = entries
        return len(entries)


class ConnectivityChecker:
    """Foreground SSH probing on top of a cache."""

    def __init__(self, cache: ConnectivityCache, runner: CommandRunner, target: SshTarget) -> None:
        self.cache = cache
        self.runner = runner
        self.target = target

    def probe(self, host: str) -> bool:
        res = self.runner.run(self.target.ssh_argv(host, PROBE_COMMAND))
        if not res.ok:
            log.warning("SSH probe to %s failed: %s", host, res.stderr.strip() or f"rc={res.returncode}")
        return res.ok

    def ensure_reachable(self, host: str) -> bool:
        if self.cache.is_verified(host):
            return True
        ok = self.probe(host)
        self.cache.update_status(host, ok)
        return ok


@dataclass(frozen=True)
class Check:
    host: str


@dataclass(frozen=True)
class UpdateStatus:
    host: str
    ok: bool


Message = Union[Check, UpdateStatus]


class ConnectivityMonitor:
    """Background refresh of the connectivity cache.

    A single worker consumes Check/UpdateStatus messages and is the only
    background writer. The timer only enqueues hosts due for a recheck.
    """

    def __init__(
        self,
        checker: ConnectivityChecker,
        hosts_fn: Callable[[], List[str]],
        interval: float = 30.0,
        max_queued: int = QUEUE_SIZE,
    ) -> None:
        self.checker = checker
        self.hosts_fn = hosts_fn
        self.interval = interval
        self.queue: "asyncio.Queue[Message]" = asyncio.Queue(maxsize=max_queued)
        self._in_flight: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

    @property
    def cache(self) -> ConnectivityCache:
        return self.checker.cache

    async def handle(self, msg: Message) -> None:
        try:
            if isinstance(msg, Check):
                ok = await asyncio.to_thread(self.checker.probe, msg.host)
                msg = UpdateStatus(msg.host, ok)
            self.cache.update_status(msg.host, msg.ok)
            self.cache.clear_expired()
            await asyncio.to_thread(self.cache.save)
        finally:
            self._in_flight.discard(msg.host)

    async def _worker(self) -> None:
        while True:
            msg = await self.queue.get()
            try:
                await self.handle(msg)
            except Exception:
                log.exception("connectivity update for %s failed", msg.host)
            finally:
                self.queue.task_done()

    def request_check(self, host: str) -> bool:
        """Queue a probe of ``host`` unless one is already queued or running."""
        if host in self._in_flight:
            return False
        try:
            self.queue.put_nowait(Check(host))
        except asyncio.QueueFull:
            log.warning("connectivity queue full, skipping check of %s", host)
            return False
        self._in_flight.add(host)
        return True

    def enqueue_due(self) -> int:
        due = [h for h in self.hosts_fn() if h and self.cache.needs_recheck(h)]
        return sum(1 for host in due if self.request_check(host))

    async def _timer(self) -> None:
        while True:
            self.enqueue_due()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name="kubepki-connectivity-worker"),
            asyncio.create_task(self._timer(), name="kubepki-connectivity-timer"),
        ]

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
