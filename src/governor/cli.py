"""Command-line interface for Agent Governor.

Commands:
- governor check <project> <proposal_dir>: Show parsed changes and eligibility
- governor apply <project> <proposal_dir>: Apply a proposal directory
- governor rollback <project> <record_id>: Revert an applied record
- governor heal <project>: Run one self-healing sweep
- governor applications <project>: List monitored applications
- governor council <project> <trace>: Score a trace with the configured council
- governor status <project>: Show activity metrics from telemetry
- governor proposals <project>: List stored proposals
- governor approve <project> <proposal_id>: Approve a pending proposal
- governor reject <project> <proposal_id>: Reject a pending proposal
- governor revert <project> <proposal_id>: Roll back an applied proposal
- governor watch <project>: Run the periodic governance tick
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from . import __version__
from .application.engine import ProposalApplicationEngine
from .completion import CompletionClient
from .config import GovernorConfig, load_config
from .council.runner import run_council_review
from .errors import GovernorError
from .healing import SELF_HEALING_DIR, SelfHealingMonitor
from .orchestrator import DirectoryApplier, GovernanceEngine
from .scheduler import GovernanceScheduler
from .status import StatusWindow, compute_status
from .telemetry import TelemetrySink
from .types import Proposal, ProposalStatus, Signal


def _load_config(project: Path, config: str | None) -> GovernorConfig:
    if config:
        governor_config = GovernorConfig.load_from_file(config)
        governor_config.apply_env_overrides()
        return governor_config
    return load_config(project)


def _telemetry(project: Path, governor_config: GovernorConfig) -> TelemetrySink:
    return TelemetrySink.for_project(
        project,
        governor_config.telemetry.log_path,
        enabled=governor_config.telemetry.enabled,
    )


def _monitor(project: Path, governor_config: GovernorConfig) -> SelfHealingMonitor:
    telemetry = _telemetry(project, governor_config)
    # A persisted self-healing config takes precedence over .governor.yml.
    persisted = (project / SELF_HEALING_DIR / "config.yaml").exists()
    return SelfHealingMonitor(
        project,
        config=None if persisted else governor_config.self_healing,
        engine=ProposalApplicationEngine(project, telemetry=telemetry),
        telemetry=telemetry,
    )


class _NoNewProposals:
    """Generator for CLI sessions, which only act on proposals already stored."""

    def generate_from_signals(self, signals: list[Signal]) -> list[Proposal]:
        return []


def _governance(project: Path, governor_config: GovernorConfig) -> GovernanceEngine:
    monitor = _monitor(project, governor_config)
    return GovernanceEngine(
        project,
        _NoNewProposals(),
        config=governor_config,
        applier=DirectoryApplier(monitor.engine),
        monitor=monitor,
        telemetry=monitor.telemetry,
    )


@click.group()
@click.version_option(version=__version__, prog_name="governor")
def cli() -> None:
    """Agent Governor - propose, review, apply and roll back agent changes."""
    pass


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("proposal_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def check(project_path: str, proposal_dir: str, config: str | None) -> None:
    """Show a proposal's changes and whether site policy lets it apply."""
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)
    engine = ProposalApplicationEngine(project, telemetry=_telemetry(project, governor_config))

    parsed = engine.parse_proposal(Path(proposal_dir).resolve())
    click.echo(f"Proposal: {parsed.proposal_id or parsed.proposal_dir}")
    click.echo(f"Changes: {len(parsed.changes)}")
    for change in parsed.changes:
        category = f" [{change.category}]" if change.category else ""
        patch = "" if change.patch_text else " (no patch)"
        click.echo(f"  {change.change_type:<6} {change.path}{category}{patch}")

    click.echo()
    click.echo(f"Auto-apply eligible: {engine.can_auto_apply(parsed)}")
    click.echo(f"Eligible with approval: {engine.can_apply_with_approval(parsed)}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("proposal_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option(
    "--auto",
    "auto",
    is_flag=True,
    help="Require auto-apply eligibility (automation_level >= 2) instead of explicit approval.",
)
def apply(project_path: str, proposal_dir: str, config: str | None, auto: bool) -> None:
    """Apply an approved proposal directory.

    Example:
        governor apply . .governor/proposals/p-001
    """
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)
    engine = ProposalApplicationEngine(project, telemetry=_telemetry(project, governor_config))

    parsed = engine.parse_proposal(Path(proposal_dir).resolve())
    eligible = engine.can_auto_apply(parsed) if auto else engine.can_apply_with_approval(parsed)
    if not eligible:
        raise click.ClickException("Proposal is not eligible under the site policy (.governor/config.yaml)")

    result = engine.apply_proposal(parsed)
    if not result.applied:
        for err in result.errors or []:
            click.echo(f"  ✗ {err}", err=True)
        raise click.ClickException("Apply failed; changes were reverted")

    click.echo(f"Applied record: {result.applied_record_id}")
    for path in result.changed_files:
        click.echo(f"  ✓ {path}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("record_id")
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def rollback(project_path: str, record_id: str, config: str | None) -> None:
    """Restore the files changed by an applied record."""
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)
    engine = ProposalApplicationEngine(project, telemetry=_telemetry(project, governor_config))

    try:
        report = engine.rollback_proposal(record_id)
    except GovernorError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Rolled back: {record_id}")
    for path in report.restored_files:
        click.echo(f"  restored {path}")
    for path in report.deleted_files:
        click.echo(f"  deleted  {path}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--cleanup", is_flag=True, help="Also delete backups past the retention period.")
def heal(project_path: str, config: str | None, cleanup: bool) -> None:
    """Evaluate monitored applications and roll back regressions."""
    project = Path(project_path).resolve()
    monitor = _monitor(project, _load_config(project, config))

    actions = monitor.run_auto_heal()
    if not actions:
        click.echo("No rollbacks performed.")
    for action in actions:
        click.echo(f"{action.application_id}: {action.result.value} ({len(action.restored_files)} files)")
        if action.error:
            click.echo(f"  {action.error}")

    if cleanup:
        click.echo(f"Removed {monitor.cleanup_old_backups()} old backup(s).")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def applications(project_path: str, config: str | None, format: str) -> None:
    """List applications watched by the self-healing monitor."""
    project = Path(project_path).resolve()
    monitor = _monitor(project, _load_config(project, config))
    apps = monitor.get_applications()

    if format == "json":
        click.echo(json.dumps([a.to_dict() for a in apps], indent=2))
        return

    if not apps:
        click.echo("No monitored applications.")
        return
    for app in apps:
        click.echo(f"{app.id}  {app.status.value:<12} proposal={app.proposal_id} files={len(app.changed_files)}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("trace_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--council-config", type=click.Path(), default=None, help="Council YAML (default .governor/council.yaml)")
def council(project_path: str, trace_path: str, config: str | None, council_config: str | None) -> None:
    """Score a trace with every role in the council config."""
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)
    client = CompletionClient(governor_config.completion)

    async def resolve_profile(profile: str) -> dict[str, Any]:
        return {"profile": profile, "model_id": governor_config.completion.model_id}

    async def complete_prompt(settings: dict[str, Any], prompt: str) -> str:
        return await client.complete(prompt)

    result = asyncio.run(
        run_council_review(
            project,
            Path(trace_path).resolve(),
            resolve_profile,
            complete_prompt,
            council_config_path=Path(council_config) if council_config else None,
            telemetry=_telemetry(project, governor_config),
        )
    )

    click.echo(f"Reports: {result.reports_dir}")
    for path in result.scorecard_paths:
        click.echo(f"  ✓ {path.name}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option(
    "--window-minutes",
    type=int,
    default=60,
    show_default=True,
    help="Metrics window (best-effort from telemetry).",
)
@click.option(
    "--health",
    is_flag=True,
    help="Exit 0 if last cycle succeeded; 1 otherwise.",
)
def status(project_path: str, config: str | None, format: str, window_minutes: int, health: bool) -> None:
    """Show governance activity from telemetry."""
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)

    telemetry_path = project / governor_config.telemetry.log_path
    st = compute_status(telemetry_path, window=StatusWindow(seconds=max(1, window_minutes) * 60.0))

    if health:
        last = st.get("last_cycle") or {}
        sys.exit(0 if (last.get("data") or {}).get("status") == "success" else 1)

    if format == "json":
        click.echo(json.dumps(st, indent=2, default=str))
        return

    click.echo(f"Telemetry: {telemetry_path}")
    click.echo(f"Window: {window_minutes} minutes")
    click.echo(f"Cycles completed: {st['cycles_completed']}")
    click.echo(f"Proposals applied: {st['proposals_applied']} (failed: {st['proposals_failed']})")
    click.echo(f"Apply success rate: {st['apply_success_rate']}")
    click.echo(
        f"Council decisions: {st['council_decisions']} "
        f"(approved {st['council_approved']}, rejected {st['council_rejected']})"
    )
    click.echo(f"Auto rollbacks: {st['auto_rollbacks']} (rate limited: {st['rollbacks_rate_limited']})")
    click.echo(f"Manual rollbacks: {st['manual_rollbacks']}")
    click.echo(f"Cycle latency p50 (s): {st['cycle_latency_s_p50']}")

    last = st.get("last_cycle") or {}
    if last:
        click.echo()
        click.echo(f"Last cycle: run_id={last.get('run_id')} status={(last.get('data') or {}).get('status')}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--all", "show_all", is_flag=True, help="Include proposals that are no longer pending.")
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def proposals(project_path: str, config: str | None, show_all: bool, format: str) -> None:
    """List proposals awaiting review (or all stored proposals)."""
    project = Path(project_path).resolve()
    engine = _governance(project, _load_config(project, config))
    shown = engine.store.all() if show_all else engine.get_pending_proposals()

    if format == "json":
        click.echo(json.dumps([p.to_dict() for p in shown], indent=2, default=str))
        return

    if not shown:
        click.echo("No proposals." if show_all else "No pending proposals.")
        return
    for proposal in shown:
        click.echo(f"{proposal.id}  {proposal.status.value:<11} {proposal.risk.value:<6} {proposal.title}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("proposal_id")
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--notes", default=None, help="Review notes stored with the proposal.")
def approve(project_path: str, proposal_id: str, config: str | None, notes: str | None) -> None:
    """Approve a pending proposal; it is applied when autonomy_level > 0."""
    project = Path(project_path).resolve()
    engine = _governance(project, _load_config(project, config))

    if engine.store.get(proposal_id) is None:
        raise click.ClickException(f"Proposal not found: {proposal_id}")
    ok = asyncio.run(engine.approve_proposal(proposal_id, notes))
    proposal = engine.store.require(proposal_id)
    if not ok:
        raise click.ClickException(f"Proposal {proposal_id} could not be approved (status: {proposal.status.value})")
    click.echo(f"{proposal_id}: {proposal.status.value}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("proposal_id")
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--reason", default=None, help="Why the proposal was rejected.")
def reject(project_path: str, proposal_id: str, config: str | None, reason: str | None) -> None:
    """Reject a pending proposal."""
    project = Path(project_path).resolve()
    engine = _governance(project, _load_config(project, config))

    if not engine.reject_proposal(proposal_id, reason):
        raise click.ClickException(f"Proposal {proposal_id} is not pending")
    click.echo(f"{proposal_id}: {ProposalStatus.REJECTED.value}")


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.argument("proposal_id")
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def revert(project_path: str, proposal_id: str, config: str | None) -> None:
    """Roll back an applied proposal and mark it rolled back."""
    project = Path(project_path).resolve()
    engine = _governance(project, _load_config(project, config))

    try:
        proposal = engine.rollback_proposal(proposal_id)
    except GovernorError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"{proposal.id}: {proposal.status.value}")


async def _watch(scheduler: GovernanceScheduler) -> None:
    scheduler.start()
    try:
        while scheduler.is_running:
            await asyncio.sleep(1)
    finally:
        await scheduler.stop()


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--once", is_flag=True, help="Run a single tick and print its result.")
def watch(project_path: str, config: str | None, once: bool) -> None:
    """Run auto-heal sweeps every scheduler.interval_seconds until interrupted."""
    project = Path(project_path).resolve()
    governor_config = _load_config(project, config)
    engine = _governance(project, governor_config)
    scheduler = GovernanceScheduler(engine, config=governor_config.scheduler, telemetry=engine.telemetry)

    if once:
        result = asyncio.run(scheduler.tick())
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        if result.error:
            sys.exit(1)
        return

    if not governor_config.scheduler.enabled:
        raise click.ClickException("Scheduler is disabled (scheduler.enabled: false)")

    click.echo(f"Watching {project} every {governor_config.scheduler.interval_seconds}s (Ctrl+C to stop)")
    try:
        asyncio.run(_watch(scheduler))
    except KeyboardInterrupt:
        click.echo()
        click.echo("Stopping Agent Governor...")
        sys.exit(0)


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
