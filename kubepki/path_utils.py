import os
import pathlib
from dataclasses import dataclass


def _norm(p: pathlib.Path) -> pathlib.Path:
    return p.expanduser().resolve(strict=False)


def resolve_path(path_like: str | os.PathLike[str]) -> pathlib.Path:
    return _norm(pathlib.Path(str(path_like)))


@dataclass(frozen=True)
class PkiLayout:
    """On-disk layout of everything kubepki generates, rooted at ``base``."""

    base: pathlib.Path

    @classmethod
    def at(cls, base: str | os.PathLike[str]) -> "PkiLayout":
        return cls(resolve_path(base))

    @property
    def certs(self) -> pathlib.Path:
        return self.base / "certs"

    @property
    def root_ca(self) -> pathlib.Path:
        return self.certs / "root-ca"

    @property
    def kubernetes_ca(self) -> pathlib.Path:
        return self.certs / "kubernetes-ca"

    @property
    def ca_chain(self) -> pathlib.Path:
        return self.kubernetes_ca / "ca-chain.crt"

    @property
    def service_account(self) -> pathlib.Path:
        return self.certs / "service-account"

    @property
    def kubeconfig_dir(self) -> pathlib.Path:
        return self.base / "kubeconfig"

    @property
    def encryption_config(self) -> pathlib.Path:
        return self.base / "encryption-config.yaml"

    @property
    def status_file(self) -> pathlib.Path:
        return self.base / "certificate_status.json"

    @property
    def cluster_file(self) -> pathlib.Path:
        return self.base / "cluster_config.json"

    @property
    def ssh_cache_file(self) -> pathlib.Path:
        return self.base / "ssh_cache.json"

    @property
    def trust_store_file(self) -> pathlib.Path:
        return self.base / "trust_store.json"

    def component_dir(self, name: str) -> pathlib.Path:
        return self.certs / name

    def component_pair(self, name: str) -> tuple[pathlib.Path, pathlib.Path]:
        d = self.component_dir(name)
        return d / f"{name}.crt", d / f"{name}.key"

    def kubeconfig(self, name: str) -> pathlib.Path:
        if name.endswith(".conf"):
            name = name[: -len(".conf")]
        return self.kubeconfig_dir / f"{name}.conf"
