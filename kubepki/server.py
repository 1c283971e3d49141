import asyncio
import logging
from typing import Annotated, Optional

from fastmcp import FastMCP
from pydantic import Field

from .logging_conf import operator_log, setup_logging
from .mcp_contracts import (
    CertificateView,
    ConnectionView,
    ConnectivityView,
    LedgerEntry,
    LedgerView,
    NodeTrustView,
    OperatorLogView,
    PendingView,
    TrustStoreView,
)
from .orchestrator import Orchestrator
from .settings import Settings

log = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Purpose: report the state of a Kubernetes cluster PKI managed by kubepki. "
    "Read-only: nothing is generated, distributed or deleted through this server.\n\n"
    "Tools:\n"
    "- `certificate_status` lists the ledger (generation, distribution and verification times).\n"
    "- `pending_distribution` lists certificates generated but not yet placed on their hosts.\n"
    "- `trust_store` reports chain validity, expiring certificates and key permissions per node.\n"
    "- `connectivity` reports the cached SSH reachability of each host.\n"
    "- `operator_log` returns the most recent operator log lines.\n\n"
    "Timestamps in ledger entries are epoch seconds (UTC)."
)

_READ_ONLY = {"readOnlyHint": True, "idempotentHint": True, "openWorldHint": False}


def create_server(orch: Orchestrator) -> FastMCP:
    mcp = FastMCP(name="kubepki", instructions=INSTRUCTIONS)

    @mcp.tool(description="Health check.", tags={"kubepki"}, annotations={"title": "Ping", **_READ_ONLY})
    def ping() -> str:
        return "pong"

    @mcp.tool(
        description="Every ledger entry with its generation, distribution and verification state.",
        tags={"kubepki", "ledger"},
        annotations={"title": "Certificate status", **_READ_ONLY},
    )
    def certificate_status() -> dict:
        entries = [LedgerEntry(**e.as_dict()) for e in orch.tracker.entries()]
        pending = len(orch.tracker.pending_distribution())
        return LedgerView(certificates=entries, pending=pending).model_dump(mode="json")

    @mcp.tool(
        description="Ledger entries that still have to be copied to their hosts. Root CA material is never listed.",
        tags={"kubepki", "ledger", "distribution"},
        annotations={"title": "Pending distribution", **_READ_ONLY},
    )
    def pending_distribution() -> dict:
        entries = [LedgerEntry(**e.as_dict()) for e in orch.tracker.pending_distribution()]
        return PendingView(certificates=entries).model_dump(mode="json")

    @mcp.tool(
        description="Per-node trust validation results from the last validation pass.",
        tags={"kubepki", "trust"},
        annotations={"title": "Trust store", **_READ_ONLY},
    )
    def trust_store(
        node: Annotated[
            Optional[str],
            Field(description="Only report this node address. Leave null for all nodes."),
        ] = None,
    ) -> dict:
        nodes = []
        for node_ip, info in sorted(orch.trust.store.snapshot().items()):
            if node and node_ip != node:
                continue
            d = info.as_dict()
            d["certificates"] = [CertificateView(**c) for c in d["certificates"]]
            nodes.append(NodeTrustView(**d))
        return TrustStoreView(nodes=nodes).model_dump(mode="json")

    @mcp.tool(
        description="Cached SSH reachability per host; `fresh` is false once the cache TTL has elapsed.",
        tags={"kubepki", "ssh"},
        annotations={"title": "Connectivity", **_READ_ONLY},
    )
    def connectivity() -> dict:
        conns = [
            ConnectionView(
                host=host,
                verified=entry.verified,
                fresh=not orch.cache.needs_recheck(host),
                checked_at=int(entry.timestamp),
            )
            for host, entry in sorted(orch.cache.snapshot().items())
        ]
        return ConnectivityView(connections=conns).model_dump(mode="json")

    @mcp.tool(
        name="operator_log",
        description="Most recent operator log lines and how many were dropped from the bounded buffer.",
        tags={"kubepki", "logs"},
        annotations={"title": "Operator log", **_READ_ONLY},
    )
    def operator_log_tail(
        lines: Annotated[int, Field(description="Number of lines to return.", ge=1, le=1000)] = 50,
    ) -> dict:
        sink = operator_log()
        return OperatorLogView(lines=sink.tail(lines), dropped=sink.dropped).model_dump(mode="json")

    return mcp


def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings)
    orch = Orchestrator(settings)
    orch.load_state()
    orch.startup_check()
    orch.refresh_trust()
    mcp = create_server(orch)

    async def _serve() -> None:
        await orch.start_background()
        try:
            await mcp.run_async()
        finally:
            await orch.stop_background()
            orch.save_state()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
