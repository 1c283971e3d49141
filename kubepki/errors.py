from typing import Optional


class CertOperationError(Exception):
    """Base class for every failure raised by kubepki operations."""

    def __init__(self, message: str, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stderr = (stderr or "").strip()

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}: {self.stderr}"
        return self.message


class CertIOError(CertOperationError):
    pass


class CAPrerequisiteMissing(CertOperationError, FileNotFoundError):
    def __init__(self, path: str) -> None:
        CertOperationError.__init__(self, f"CA prerequisite missing: {path}")
        self.path = path


class CertGenerationError(CertOperationError):
    def __init__(self, stage: str, message: str, stderr: Optional[str] = None) -> None:
        super().__init__(f"{stage}: {message}", stderr)
        self.stage = stage


class DistributionError(CertOperationError):
    def __init__(self, host: str, message: str, stderr: Optional[str] = None) -> None:
        super().__init__(f"{host}: {message}", stderr)
        self.host = host


class VerificationError(CertOperationError):
    pass


class LedgerError(CertOperationError):
    pass


class ControlPlaneUnreachable(CertOperationError):
    def __init__(self, host: str, stderr: Optional[str] = None) -> None:
        super().__init__(f"control plane {host} is not reachable over SSH", stderr)
        self.host = host
