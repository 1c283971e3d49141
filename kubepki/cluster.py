import json
import logging
import pathlib
from typing import List

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import LedgerError

log = logging.getLogger(__name__)

DEFAULT_REMOTE_DIR = "/etc/kubernetes/pki"


class ClusterConfig(BaseModel):
    """Cluster topology persisted in ``cluster_config.json``."""

    control_plane: str = ""
    worker_nodes: List[str] = Field(default_factory=list)
    remote_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"
    remote_dir: str = DEFAULT_REMOTE_DIR

    @field_validator("worker_nodes")
    @classmethod
    def _dedupe_workers(cls, v: List[str]) -> List[str]:
        seen: list[str] = []
        for host in v:
            host = host.strip()
            if host and host not in seen:
                seen.append(host)
        return seen

    def all_hosts(self) -> List[str]:
        hosts = [self.control_plane] if self.control_plane else []
        return hosts + [h for h in self.worker_nodes if h not in hosts]

    def node_name(self, index: int) -> str:
        return f"node-{index + 1}"

    def node_hosts(self) -> dict[str, str]:
        return {self.node_name(i): addr for i, addr in enumerate(self.worker_nodes)}

    def validate_ready(self) -> List[str]:
        """Return the list of problems preventing generation or distribution."""
        problems: List[str] = []
        if not self.control_plane:
            problems.append("control_plane is not set")
        if not self.remote_user:
            problems.append("remote_user is not set")
        key = pathlib.Path(self.ssh_key_path).expanduser()
        if not key.is_file():
            problems.append(f"ssh key not found: {key}")
        return problems

    @classmethod
    def load(cls, path: pathlib.Path) -> "ClusterConfig":
        if not path.exists():
            log.info("No cluster config at %s, using defaults", path)
            return cls()
        try:
            return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            raise LedgerError(f"invalid cluster config {path}", str(e)) from e

    def save(self, path: pathlib.Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(), indent=2), encoding="utf-8")
