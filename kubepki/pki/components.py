import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..cluster import ClusterConfig
from ..errors import CertOperationError
from ..path_utils import PkiLayout
from .generator import GeneratedCert, generate_cert
from .openssl import OpenSSL
from .types import AltName, CertificateConfig, CertificateKind

log = logging.getLogger(__name__)

LEAF_VALIDITY_DAYS = 375
SERVICE_CLUSTER_IP = "10.96.0.1"

API_SERVER_DNS = (
    "localhost",
    "control-plane-0",
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster",
    "kubernetes.default.svc.cluster.local",
)


@dataclass
class GenContext:
    openssl: OpenSSL
    layout: PkiLayout
    tracker: object = None
    key_size: int = 2048
    keep_partial: bool = False

    def leaf(self, kind: CertificateKind, name: str, cn: str, org: str, sans=(), eku=(), node_name=None) -> CertificateConfig:
        return CertificateConfig(
            kind=kind,
            common_name=cn,
            organization=org,
            output_dir=self.layout.component_dir(name),
            validity_days=LEAF_VALIDITY_DAYS,
            key_size=self.key_size,
            alt_names=tuple(sans),
            extended_key_usage=tuple(eku),
            country="US",
            state="Columbia",
            locality="Columbia",
            node_name=node_name,
        )

    def sign(self, name: str, config: CertificateConfig, hosts: Sequence[str]) -> GeneratedCert:
        return generate_cert(
            self.openssl,
            name,
            config,
            ca_dir=self.layout.kubernetes_ca,
            tracker=self.tracker,
            hosts=hosts,
            keep_partial=self.keep_partial,
        )


def api_server_config(ctx: GenContext, control_plane: str) -> CertificateConfig:
    sans: List[AltName] = [AltName.dns(d) for d in API_SERVER_DNS]
    sans += [AltName.ip("127.0.0.1"), AltName.guess(control_plane), AltName.ip(SERVICE_CLUSTER_IP)]
    return ctx.leaf(
        CertificateKind.API_SERVER, "kube-apiserver", "kube-apiserver", "Kubernetes", sans, ("serverAuth",)
    )


def controller_manager_config(ctx: GenContext) -> CertificateConfig:
    return ctx.leaf(
        CertificateKind.CONTROLLER_MANAGER,
        "controller-manager",
        "system:kube-controller-manager",
        "system:kube-controller-manager",
        [AltName.dns("kube-controller-manager"), AltName.ip("127.0.0.1")],
        ("clientAuth", "serverAuth"),
    )


def scheduler_config(ctx: GenContext) -> CertificateConfig:
    return ctx.leaf(
        CertificateKind.SCHEDULER,
        "scheduler",
        "system:kube-scheduler",
        "system:kube-scheduler",
        [AltName.dns("kube-scheduler"), AltName.ip("127.0.0.1")],
        ("clientAuth", "serverAuth"),
    )


def kubelet_client_config(ctx: GenContext) -> CertificateConfig:
    return ctx.leaf(
        CertificateKind.KUBELET_CLIENT,
        "kube-apiserver-kubelet-client",
        "kube-apiserver-kubelet-client",
        "system:masters",
        eku=("clientAuth",),
    )


def admin_config(ctx: GenContext) -> CertificateConfig:
    return ctx.leaf(CertificateKind.ADMIN, "admin", "admin", "system:masters", eku=("clientAuth",))


def node_config(ctx: GenContext, node_name: str, address: str) -> CertificateConfig:
    sans = [
        AltName.guess(address),
        AltName.dns(node_name),
        AltName.dns(f"{node_name}.cluster.local"),
        AltName.ip("127.0.0.1"),
    ]
    if sans[0].kind == "IP":
        sans.insert(0, AltName.dns(address))
    return ctx.leaf(
        CertificateKind.NODE,
        node_name,
        f"system:node:{node_name}",
        "system:nodes",
        sans,
        ("serverAuth", "clientAuth"),
        node_name=node_name,
    )


def generate_control_plane_certs(ctx: GenContext, cluster: ClusterConfig) -> List[GeneratedCert]:
    if not cluster.control_plane:
        raise CertOperationError("control plane address is not configured")
    cp = [cluster.control_plane]
    out = [
        ctx.sign("kube-apiserver", api_server_config(ctx, cluster.control_plane), cp),
        ctx.sign("controller-manager", controller_manager_config(ctx), cp),
        ctx.sign("scheduler", scheduler_config(ctx), cp),
        ctx.sign("kube-apiserver-kubelet-client", kubelet_client_config(ctx), cp),
        ctx.sign("admin", admin_config(ctx), cp),
    ]
    return out


def generate_worker_certs(
    ctx: GenContext, cluster: ClusterConfig
) -> tuple[List[GeneratedCert], List[tuple[str, Exception]]]:
    """One certificate per worker; a failing node does not stop the others."""
    done: List[GeneratedCert] = []
    failed: List[tuple[str, Exception]] = []
    for node_name, address in cluster.node_hosts().items():
        try:
            done.append(ctx.sign(node_name, node_config(ctx, node_name, address), [address]))
        except CertOperationError as e:
            log.error("Certificate for %s (%s) failed: %s", node_name, address, e)
            failed.append((node_name, e))
    return done, failed


def generate_component(ctx: GenContext, cluster: ClusterConfig, name: str) -> Optional[GeneratedCert]:
    """Regenerate a single component by its ledger name."""
    cp = [cluster.control_plane]
    builders = {
        "kube-apiserver": lambda: api_server_config(ctx, cluster.control_plane),
        "controller-manager": lambda: controller_manager_config(ctx),
        "scheduler": lambda: scheduler_config(ctx),
        "kube-apiserver-kubelet-client": lambda: kubelet_client_config(ctx),
        "admin": lambda: admin_config(ctx),
    }
    if name in builders:
        return ctx.sign(name, builders[name](), cp)
    nodes = cluster.node_hosts()
    if name in nodes:
        return ctx.sign(name, node_config(ctx, name, nodes[name]), [nodes[name]])
    log.warning("Unknown component %s, nothing generated", name)
    return None
