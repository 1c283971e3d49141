# kubepki/mcp_contracts.py
from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel, Field


class LedgerEntry(BaseModel):
    cert_type: str = Field(..., examples=["kube-apiserver", "node-1", "kubeconfig/admin"])
    path: str
    hosts: List[str] = []
    generated: Optional[int] = None
    distributed: Optional[int] = None
    verified: Optional[bool] = None
    last_verified: Optional[int] = None
    local_only: bool = False


class LedgerView(BaseModel):
    certificates: List[LedgerEntry] = []
    pending: int = 0


class CertificateView(BaseModel):
    path: str
    subject: str
    issuer: str
    not_after: str
    days_until_expiry: int
    is_ca: bool
    fingerprint: str
    verification_error: Optional[str] = None


class NodeTrustView(BaseModel):
    node_ip: str
    trust_chain_valid: bool
    permissions_valid: bool
    expiring_soon: List[str] = []
    expired: List[str] = []
    last_checked: str
    certificates: List[CertificateView] = []


class ConnectionView(BaseModel):
    host: str
    verified: bool
    fresh: bool
    checked_at: int


class PendingView(BaseModel):
    certificates: List[LedgerEntry] = []


class TrustStoreView(BaseModel):
    nodes: List[NodeTrustView] = []


class ConnectivityView(BaseModel):
    connections: List[ConnectionView] = []


class OperatorLogView(BaseModel):
    lines: List[str] = []
    dropped: int = Field(0, description="Lines discarded because the buffer was full.")
