import json

from kubepki.cli import main
from kubepki.tracker import CertTracker


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_status_prints_ledger(monkeypatch, tmp_path, capsys):
    tracker = CertTracker()
    tracker.upsert("admin", "/pki/admin/admin.crt", ["10.0.0.1"])
    tracker.save(tmp_path / "certificate_status.json")
    monkeypatch.setenv("KUBEPKI_BASE_DIR", str(tmp_path))

    assert main(["status"]) == 0

    doc = json.loads(capsys.readouterr().out)
    assert [c["cert_type"] for c in doc["certificates"]] == ["admin"]


def test_malformed_ledger_is_reported(monkeypatch, tmp_path):
    (tmp_path / "certificate_status.json").write_text("[]")
    monkeypatch.setenv("KUBEPKI_BASE_DIR", str(tmp_path))
    assert main(["status"]) == 1
