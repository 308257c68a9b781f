"""Tests for the audit CLI."""

import json
import sqlite3

import pytest
from click.testing import CliRunner

from ledgercore.audit.cli import cli
from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.store import SqliteStore
from ledgercore.config import LedgerConfig


@pytest.fixture
def db_path(tmp_path):
    """A SQLite ledger with three records for tenant 'acme'."""
    path = str(tmp_path / "ledger.db")
    ledger = AuditLedger(SqliteStore(path), tenant_id="acme", config=LedgerConfig())
    ledger.append("invoice.created", "invoice", "inv_1", payload={"amount": 100})
    ledger.append("invoice.approved", "invoice", "inv_1", actor_id="u_1")
    ledger.append("invoice.paid", "invoice", "inv_1")
    return path


@pytest.fixture
def runner():
    return CliRunner()


def _records(db_path):
    ledger = AuditLedger(SqliteStore(db_path), tenant_id="acme", config=LedgerConfig())
    return ledger.list()


class TestAuditCli:
    """Test cases for ledger-audit commands."""

    def test_status(self, runner, db_path):
        """Test the status panel."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "status"])

        assert result.exit_code == 0
        assert "Records:" in result.output
        assert "invoice.created" in result.output

    def test_list(self, runner, db_path):
        """Test listing records."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "list", "--action", "invoice.paid"])

        assert result.exit_code == 0
        assert "invoice.paid" in result.output
        assert "invoice.created" not in result.output

    def test_list_empty_tenant(self, runner, db_path):
        """Test listing a tenant with no records."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "globex", "list"])

        assert result.exit_code == 0
        assert "No audit records found" in result.output

    def test_show(self, runner, db_path):
        """Test showing one record."""
        record = _records(db_path)[1]

        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "show", record.id])

        assert result.exit_code == 0
        assert "invoice.approved" in result.output

    def test_show_missing(self, runner, db_path):
        """Test showing an unknown record."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "show", "audit_missing"])

        assert result.exit_code == 1
        assert "Record not found" in result.output

    def test_verify_intact(self, runner, db_path):
        """Test verifying an untouched chain."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "verify"])

        assert result.exit_code == 0
        assert "Chain intact" in result.output

    def test_verify_broken(self, runner, db_path):
        """Test that a tampered chain exits non-zero."""
        target = _records(db_path)[0]
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                "UPDATE audit_records SET payload = ? WHERE id = ?",
                (json.dumps({"amount": 1}), target.id),
            )

        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "verify"])

        assert result.exit_code == 1
        assert "Chain broken" in result.output

    def test_lookup(self, runner, db_path):
        """Test looking a record up by digest."""
        record = _records(db_path)[2]

        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "lookup", record.digest])

        assert result.exit_code == 0
        assert "invoice.paid" in result.output

    def test_lookup_invalid(self, runner, db_path):
        """Test rejecting a malformed digest."""
        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "lookup", "xyz"])

        assert result.exit_code == 2

    def test_export_json(self, runner, db_path, tmp_path):
        """Test exporting records to a JSON file."""
        output = tmp_path / "export.json"

        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "export", "-o", str(output)])

        assert result.exit_code == 0
        exported = json.loads(output.read_text())
        assert [r["sequence"] for r in exported] == [1, 2, 3]
        assert exported[1]["previous_digest"] == exported[0]["digest"]

    def test_export_csv(self, runner, db_path, tmp_path):
        """Test exporting records as CSV."""
        output = tmp_path / "export.csv"

        result = runner.invoke(cli, ["--db", db_path, "--tenant", "acme", "export", "-f", "csv", "-o", str(output)])

        assert result.exit_code == 0
        lines = output.read_text().splitlines()
        assert lines[0].startswith("sequence,id,timestamp")
        assert len(lines) == 4
