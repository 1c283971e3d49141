import enum
import ipaddress
import pathlib
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple


class CertificateKind(enum.Enum):
    ROOT_CA = "root-ca"
    INTERMEDIATE_CA = "kubernetes-ca"
    API_SERVER = "kube-apiserver"
    KUBELET_CLIENT = "kube-apiserver-kubelet-client"
    SERVICE_ACCOUNT = "service-account"
    CONTROLLER_MANAGER = "controller-manager"
    SCHEDULER = "scheduler"
    NODE = "node"
    ADMIN = "admin"

    @property
    def is_ca(self) -> bool:
        return self in (CertificateKind.ROOT_CA, CertificateKind.INTERMEDIATE_CA)

    @property
    def self_signed(self) -> bool:
        return self is CertificateKind.ROOT_CA


@dataclass(frozen=True)
class AltName:
    kind: Literal["DNS", "IP"]
    value: str

    @staticmethod
    def dns(value: str) -> "AltName":
        return AltName("DNS", value)

    @staticmethod
    def ip(value: str) -> "AltName":
        return AltName("IP", str(ipaddress.ip_address(value)))

    @staticmethod
    def guess(value: str) -> "AltName":
        try:
            return AltName.ip(value)
        except ValueError:
            return AltName.dns(value)


CA_KEY_USAGE = ("critical", "keyCertSign", "cRLSign")
LEAF_KEY_USAGE = ("critical", "digitalSignature", "keyEncipherment")


@dataclass(frozen=True)
class CertificateConfig:
    kind: CertificateKind
    common_name: str
    output_dir: pathlib.Path
    organization: str = "Kubernetes"
    validity_days: int = 375
    key_size: int = 2048
    alt_names: Tuple[AltName, ...] = ()
    key_usage: Tuple[str, ...] = LEAF_KEY_USAGE
    extended_key_usage: Tuple[str, ...] = ()
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    node_name: Optional[str] = field(default=None)

    def basic_constraints(self) -> str:
        return "critical,CA:TRUE" if self.kind.is_ca else "critical,CA:FALSE"
