"""Unit tests for the command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from governor.cli import cli
from governor.store import ProposalStore
from governor.types import Proposal, ProposalType, Risk


MODIFY_GUIDE = """--- a/docs/guide.md
+++ b/docs/guide.md
@@ -1,3 +1,3 @@
 # Guide
-Old advice.
+New advice.
 End.
"""


class TestCheckAndApply:
    def test_check_reports_eligibility(self, project: Path, write_policy, write_proposal):
        write_policy(auto_apply_patterns=["docs/**"])
        proposal_dir = write_proposal("p1", {"a.diff": MODIFY_GUIDE})

        result = CliRunner().invoke(cli, ["check", str(project), str(proposal_dir)])

        assert result.exit_code == 0, result.output
        assert "modify docs/guide.md [docs]" in result.output
        assert "Auto-apply eligible: False" in result.output
        assert "Eligible with approval: True" in result.output

    def test_apply_then_rollback(self, project: Path, write_policy, write_proposal):
        write_policy(auto_apply_patterns=["docs/**"])
        proposal_dir = write_proposal("p1", {"a.diff": MODIFY_GUIDE})
        runner = CliRunner()

        applied = runner.invoke(cli, ["apply", str(project), str(proposal_dir)])
        assert applied.exit_code == 0, applied.output
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nNew advice.\nEnd.\n"
        record_id = applied.output.splitlines()[0].split(": ", 1)[1]

        rolled_back = runner.invoke(cli, ["rollback", str(project), record_id])
        assert rolled_back.exit_code == 0, rolled_back.output
        assert "restored docs/guide.md" in rolled_back.output
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"

    def test_apply_auto_requires_level(self, project: Path, write_policy, write_proposal):
        write_policy(auto_apply_patterns=["docs/**"])
        proposal_dir = write_proposal("p1", {"a.diff": MODIFY_GUIDE})

        result = CliRunner().invoke(cli, ["apply", str(project), str(proposal_dir), "--auto"])

        assert result.exit_code == 1
        assert "not eligible" in result.output

    def test_rollback_unknown_record(self, project: Path):
        result = CliRunner().invoke(cli, ["rollback", str(project), "applied.nope"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestMonitoringCommands:
    def test_heal_with_nothing_monitored(self, project: Path):
        result = CliRunner().invoke(cli, ["heal", str(project), "--cleanup"])
        assert result.exit_code == 0, result.output
        assert "No rollbacks performed." in result.output
        assert "Removed 0 old backup(s)." in result.output

    def test_applications_json(self, project: Path):
        result = CliRunner().invoke(cli, ["applications", str(project), "-f", "json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []

    def test_status_health(self, project: Path):
        telemetry = project / ".governor" / "telemetry.jsonl"
        telemetry.parent.mkdir(parents=True)
        telemetry.write_text(
            json.dumps({"timestamp": 1.0, "run_id": "a", "type": "cycle_completed", "data": {"status": "success"}})
            + "\n"
        )
        runner = CliRunner()

        assert runner.invoke(cli, ["status", str(project), "--health"]).exit_code == 0

        shown = runner.invoke(cli, ["status", str(project), "-f", "json"])
        assert json.loads(shown.output)["last_cycle"]["run_id"] == "a"

    def test_status_health_without_cycles(self, project: Path):
        assert CliRunner().invoke(cli, ["status", str(project), "--health"]).exit_code == 1

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert "governor" in result.output


def _store_proposal(project: Path, proposal_id: str = "prop-1") -> None:
    ProposalStore(project).add_proposal(
        Proposal(
            id=proposal_id,
            type=ProposalType.RULE_UPDATE,
            risk=Risk.LOW,
            title="Refresh the guide",
            description="Replace the outdated advice in the guide.",
            payload={"proposal_dir": "proposals/p1"},
        )
    )


class TestProposalCommands:
    def test_list_and_reject(self, project: Path):
        _store_proposal(project)
        runner = CliRunner()

        listed = runner.invoke(cli, ["proposals", str(project)])
        assert listed.exit_code == 0, listed.output
        assert "prop-1" in listed.output
        assert "pending" in listed.output

        rejected = runner.invoke(cli, ["reject", str(project), "prop-1", "--reason", "not now"])
        assert rejected.exit_code == 0, rejected.output
        assert "prop-1: rejected" in rejected.output

        again = runner.invoke(cli, ["reject", str(project), "prop-1"])
        assert again.exit_code == 1
        assert "not pending" in again.output

        assert "No pending proposals." in runner.invoke(cli, ["proposals", str(project)]).output
        stored = json.loads(runner.invoke(cli, ["proposals", str(project), "--all", "-f", "json"]).output)
        assert [(p["id"], p["status"], p["review_notes"]) for p in stored] == [("prop-1", "rejected", "not now")]

    def test_approve_without_autonomy_only_approves(self, project: Path):
        _store_proposal(project)

        result = CliRunner().invoke(cli, ["approve", str(project), "prop-1"])

        assert result.exit_code == 0, result.output
        assert "prop-1: approved" in result.output
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"

    def test_approve_applies_then_revert(self, project: Path, write_policy, write_proposal):
        (project / ".governor.yml").write_text("autonomy:\n  autonomy_level: 1\n")
        write_policy(auto_apply_patterns=["docs/**"])
        write_proposal("p1", {"a.diff": MODIFY_GUIDE})
        _store_proposal(project)
        runner = CliRunner()

        approved = runner.invoke(cli, ["approve", str(project), "prop-1", "--notes", "ship it"])
        assert approved.exit_code == 0, approved.output
        assert "prop-1: applied" in approved.output
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nNew advice.\nEnd.\n"

        reverted = runner.invoke(cli, ["revert", str(project), "prop-1"])
        assert reverted.exit_code == 0, reverted.output
        assert "prop-1: rolled_back" in reverted.output
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"

        twice = runner.invoke(cli, ["revert", str(project), "prop-1"])
        assert twice.exit_code == 1
        assert "cannot move from rolled_back" in twice.output

    def test_approve_unknown(self, project: Path):
        result = CliRunner().invoke(cli, ["approve", str(project), "prop-404"])
        assert result.exit_code == 1
        assert "Proposal not found: prop-404" in result.output


class TestWatch:
    def test_single_tick(self, project: Path):
        result = CliRunner().invoke(cli, ["watch", str(project), "--once"])

        assert result.exit_code == 0, result.output
        tick = json.loads(result.output)
        assert tick["rollbacks"] == []
        assert tick["cycle"] is None
        assert tick["error"] is None

    def test_disabled_scheduler(self, project: Path):
        (project / ".governor.yml").write_text("scheduler:\n  enabled: false\n")

        result = CliRunner().invoke(cli, ["watch", str(project)])

        assert result.exit_code == 1
        assert "Scheduler is disabled" in result.output
