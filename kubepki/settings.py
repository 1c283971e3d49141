import os
from dataclasses import dataclass, field


def _int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
        if value <= 0:
            raise ValueError
    except ValueError:
        value = default
    return value


@dataclass(frozen=True)
class Settings:
    LOG_LEVEL: str = field(default="INFO")
    BASE_DIR: str = field(default_factory=os.getcwd)
    SSH_CACHE_TTL_SEC: int = field(default=300)
    SSH_RECHECK_SEC: int = field(default=30)
    TRUST_INTERVAL_SEC: int = field(default=86400)
    COMMAND_TIMEOUT_SEC: int = field(default=120)
    LOG_QUEUE_SIZE: int = field(default=1000)
    KEY_SIZE: int = field(default=2048)
    KEEP_PARTIAL: bool = field(default=False)

    @staticmethod
    def from_env() -> "Settings":
        log_level = os.getenv("KUBEPKI_LOG_LEVEL", "INFO").upper()
        base_dir = os.getenv("KUBEPKI_BASE_DIR") or os.getcwd()
        keep_partial = os.getenv("KUBEPKI_KEEP_PARTIAL", "false").lower() in ("1", "true", "yes")
        return Settings(
            LOG_LEVEL=log_level,
            BASE_DIR=base_dir,
            SSH_CACHE_TTL_SEC=_int_env("KUBEPKI_SSH_CACHE_TTL_SEC", 300),
            SSH_RECHECK_SEC=_int_env("KUBEPKI_SSH_RECHECK_SEC", 30),
            TRUST_INTERVAL_SEC=_int_env("KUBEPKI_TRUST_INTERVAL_SEC", 86400),
            COMMAND_TIMEOUT_SEC=_int_env("KUBEPKI_COMMAND_TIMEOUT_SEC", 120),
            LOG_QUEUE_SIZE=_int_env("KUBEPKI_LOG_QUEUE_SIZE", 1000),
            KEY_SIZE=_int_env("KUBEPKI_KEY_SIZE", 2048),
            KEEP_PARTIAL=keep_partial,
        )
