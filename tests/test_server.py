import pytest
from fastmcp import Client

from kubepki.cluster import ClusterConfig
from kubepki.discovery import NodeTrustInfo
from kubepki.logging_conf import operator_log
from kubepki.orchestrator import Orchestrator
from kubepki.server import create_server
from kubepki.settings import Settings
from kubepki.x509meta import read_certificate

from _util import FakeRunner, three_level_chain, write_pki


@pytest.fixture
def orch(tmp_path):
    o = Orchestrator(
        Settings(BASE_DIR=str(tmp_path)),
        cluster=ClusterConfig(control_plane="10.0.0.1"),
        runner=FakeRunner(),
    )
    yield o
    o.shutdown()


@pytest.mark.asyncio
async def test_server_name_and_ping(orch):
    mcp = create_server(orch)
    assert getattr(mcp, "name", "") == "kubepki"
    async with Client(mcp) as client:
        result = await client.call_tool("ping", {})
        assert result.data == "pong"


@pytest.mark.asyncio
async def test_certificate_status_and_pending(orch):
    orch.tracker.upsert("root-ca", "/pki/root-ca/ca.crt", ["10.0.0.1"], local_only=True)
    orch.tracker.upsert("scheduler", "/pki/scheduler/scheduler.crt", ["10.0.0.1"])
    mcp = create_server(orch)
    async with Client(mcp) as client:
        status = (await client.call_tool("certificate_status", {})).data
        pending = (await client.call_tool("pending_distribution", {})).data

    assert {c["cert_type"] for c in status["certificates"]} == {"root-ca", "scheduler"}
    assert status["pending"] == 1
    assert [p["cert_type"] for p in pending["certificates"]] == ["scheduler"]
    assert isinstance(pending["certificates"][0]["generated"], int)


@pytest.mark.asyncio
async def test_trust_store_and_connectivity(orch, tmp_path):
    root, inter, leaf = three_level_chain()
    paths = write_pki(tmp_path, root, inter, leaf)
    certs = [read_certificate(p) for p in paths.values()]
    orch.trust.store.replace(NodeTrustInfo(node_ip="10.0.0.1", certificates=certs))
    orch.trust.store.replace(NodeTrustInfo(node_ip="10.0.0.2", trust_chain_valid=False))
    orch.cache.update_status("10.0.0.1", True)
    mcp = create_server(orch)
    async with Client(mcp) as client:
        nodes = (await client.call_tool("trust_store", {})).data["nodes"]
        one = (await client.call_tool("trust_store", {"node": "10.0.0.2"})).data["nodes"]
        conns = (await client.call_tool("connectivity", {})).data["connections"]

    assert [n["node_ip"] for n in nodes] == ["10.0.0.1", "10.0.0.2"]
    assert len(nodes[0]["certificates"]) == 3
    assert one[0]["trust_chain_valid"] is False
    assert conns[0]["host"] == "10.0.0.1"
    assert conns[0]["verified"] is True
    assert conns[0]["fresh"] is True
    assert len(one) == 1


@pytest.mark.asyncio
async def test_operator_log_tail(orch):
    sink = operator_log()
    sink.drain()
    sink.push("INFO kubepki.orchestrator: Generated scheduler")
    sink.push("ERROR kubepki.distribution: Distribution of node-1 to 10.0.0.11 failed")
    mcp = create_server(orch)
    async with Client(mcp) as client:
        last = (await client.call_tool("operator_log", {"lines": 1})).data

    assert last["lines"] == ["ERROR kubepki.distribution: Distribution of node-1 to 10.0.0.11 failed"]
    assert isinstance(last["dropped"], int)
