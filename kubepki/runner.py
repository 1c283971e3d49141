import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .errors import CertIOError

log = logging.getLogger(__name__)

TIMEOUT_RC = 124


@dataclass(frozen=True)
class CommandResult:
    args: tuple
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run external binaries and report their exit status.

    Spawn failures raise CertIOError. A command that outlives ``timeout`` is
    reported as a failed result with return code 124.
    """

    def __init__(self, timeout: int = 120) -> None:
        self.timeout = timeout

    def run(self, args: Sequence[str], timeout: Optional[int] = None) -> CommandResult:
        argv = [str(a) for a in args]
        log.debug("exec: %s", " ".join(shlex.quote(a) for a in argv))
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning("%s timed out after %ss", argv[0], timeout or self.timeout)
            return CommandResult(tuple(argv), TIMEOUT_RC, "", "timeout")
        except OSError as e:
            raise CertIOError(f"failed to execute {argv[0]}", str(e)) from e
        return CommandResult(tuple(argv), proc.returncode, proc.stdout or "", proc.stderr or "")


@dataclass(frozen=True)
class SshTarget:
    user: str
    key_path: str
    connect_timeout: int = 5
    extra_opts: List[str] = field(default_factory=list)

    def _opts(self) -> List[str]:
        return [
            "-i", self.key_path,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
            *self.extra_opts,
        ]

    def ssh_argv(self, host: str, command: str) -> List[str]:
        return ["ssh", *self._opts(), f"{self.user}@{host}", command]

    def scp_argv(self, local: str, host: str, remote: str) -> List[str]:
        return ["scp", *self._opts(), local, f"{self.user}@{host}:{remote}"]
