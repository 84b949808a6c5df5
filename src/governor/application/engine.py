"""Proposal Application Engine.

Turns a proposal directory (unified diffs plus optional ``proposal*.json``)
into filesystem changes, transactionally:

1. Every touched file is backed up before it is modified.
2. Each diff is applied in memory to the file's pre-image.
3. The result is written atomically (temp file + rename) or the file deleted.
4. On the first failure all prior changes are reverted from backups.
5. Only a fully successful run writes an applied record, a Markdown summary
   and an audit log line.
"""

from __future__ import annotations

import json
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..config import GOVERNOR_DIR, AutomationLevel, SitePolicy, load_site_policy
from ..errors import IntegrityError, PatchApplyError, UnsafePathError
from ..redaction import redact_text
from ..telemetry import TelemetrySink
from .patching import apply_patch, parse_diff_target
from .policy import infer_category_from_path, is_path_allowed, requires_human_approval
from .records import (
    AppliedRecord,
    ApplyResult,
    BackupEntry,
    ParsedChange,
    ParsedProposal,
    ProposalManifest,
    RollbackReport,
)
from .safe_paths import is_inside_root, normalize_rel_path, safe_resolve

APPLIED_DIR = f"{GOVERNOR_DIR}/applied"


def atomic_write_bytes(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    try:
        with open(tmp_path, "wb") as f:
            f.write(content)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def atomic_write_text(path: Path, content: str) -> None:
    atomic_write_bytes(path, content.encode("utf-8"))


def new_applied_record_id(now: datetime) -> str:
    stamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = stamp.replace(":", "-").replace(".", "-")
    return f"applied.{stamp}.{uuid.uuid4().hex[:6]}"


class ProposalApplicationEngine:
    """Parses, gates, applies and reverts proposals for one project root."""

    def __init__(
        self,
        project_root: Path | str,
        policy_path: Path | None = None,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.policy_path = policy_path
        self.applied_dir = self.project_root / APPLIED_DIR
        self.telemetry = telemetry or TelemetrySink.disabled()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def load_policy(self) -> SitePolicy:
        return load_site_policy(self.project_root, self.policy_path, telemetry=self.telemetry)

    def is_eligible(self, proposal: ParsedProposal, policy: SitePolicy) -> bool:
        if not proposal.changes:
            return False
        for change in proposal.changes:
            if requires_human_approval(change.path):
                return False
            if not is_path_allowed(change.path, policy):
                return False
            if not change.patch_text:
                return False
        return True

    def can_apply_with_approval(self, proposal: ParsedProposal) -> bool:
        """Eligible for application once a human has approved it."""
        return self.is_eligible(proposal, self.load_policy())

    def can_auto_apply(self, proposal: ParsedProposal) -> bool:
        """Eligible for unattended application under the current site policy."""
        policy = self.load_policy()
        if policy.automation_level < AutomationLevel.AUTO_APPLY_LOW_RISK:
            return False
        return self.is_eligible(proposal, policy)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_proposal(self, proposal_path: Path | str) -> ParsedProposal:
        """Read a proposal directory (or a file inside one)."""
        path = Path(proposal_path)
        if not path.is_absolute():
            path = self.project_root / path
        proposal_dir = path if path.is_dir() else path.parent

        files = sorted(p for p in proposal_dir.iterdir() if p.is_file())
        json_names = [p.name for p in files if p.name.lower().endswith(".json")]
        json_name: str | None
        for candidate in ("proposal.v1.json", "proposal.json"):
            if candidate in json_names:
                json_name = candidate
                break
        else:
            json_name = next((n for n in json_names if n.startswith("proposal")), None)

        manifest: ProposalManifest | None = None
        json_path: Path | None = None
        if json_name:
            json_path = proposal_dir / json_name
            try:
                manifest = ProposalManifest.model_validate_json(json_path.read_text(encoding="utf-8"))
            except (ValidationError, OSError, UnicodeDecodeError) as e:
                # Invalid metadata is treated as absent.
                self.telemetry.log(
                    "apply",
                    "proposal_manifest_invalid",
                    {"path": str(json_path), "error": redact_text(str(e), max_len=200)},
                )
                manifest = None

        changes: list[ParsedChange] = []
        seen: set[str] = set()
        for patch_path in files:
            if not patch_path.name.endswith((".diff", ".patch")):
                continue
            patch_text = patch_path.read_text(encoding="utf-8")
            target = parse_diff_target(patch_text)
            target_path = target.new_path or target.old_path
            if not target_path:
                continue
            rel = normalize_rel_path(target_path)
            if rel in seen:
                continue
            seen.add(rel)
            changes.append(
                ParsedChange(
                    path=rel,
                    change_type=target.change_type,  # type: ignore[arg-type]
                    patch_path=patch_path,
                    patch_text=patch_text,
                    category=infer_category_from_path(rel),
                )
            )

        # Declared changes without a patch are kept so eligibility refuses them.
        for declared in (manifest.changes or []) if manifest else []:
            rel = normalize_rel_path(declared.path)
            if rel in seen:
                continue
            seen.add(rel)
            changes.append(
                ParsedChange(
                    path=rel,
                    change_type="modify",
                    reason=declared.reason,
                    category=infer_category_from_path(rel),
                )
            )

        return ParsedProposal(
            proposal_dir=proposal_dir,
            proposal_json_path=json_path,
            manifest=manifest,
            changes=changes,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_proposal(self, proposal: ParsedProposal) -> ApplyResult:
        """Apply every change or none of them."""
        if not self.is_eligible(proposal, self.load_policy()):
            return ApplyResult(
                applied=False,
                changed_files=[],
                errors=["Proposal is not eligible to apply (blocked by config)"],
            )

        now = self._clock()
        record_id = new_applied_record_id(now)
        backups_dir = self.applied_dir / "backups" / record_id
        backups: list[BackupEntry] = []
        changed_files: list[str] = []
        errors: list[str] = []

        try:
            for change in proposal.changes:
                rel_path = normalize_rel_path(change.path)
                if requires_human_approval(rel_path):
                    raise UnsafePathError(f"Refusing to apply protected path: {rel_path}")
                target = safe_resolve(self.project_root, rel_path)

                existed = target.is_file()
                before = b""
                backup_rel: str | None = None
                if existed:
                    before = target.read_bytes()
                    backup_rel = f"backups/{record_id}/{rel_path}"
                    backup_abs = self.applied_dir / backup_rel
                    backup_abs.parent.mkdir(parents=True, exist_ok=True)
                    backup_abs.write_bytes(before)
                backups.append(BackupEntry(path=rel_path, existed=existed, backup_rel_path=backup_rel))

                if not change.patch_text:
                    raise PatchApplyError(f"Missing patch for {rel_path}")

                try:
                    patched = apply_patch(before.decode("utf-8"), change.patch_text)
                except (PatchApplyError, UnicodeDecodeError) as e:
                    raise PatchApplyError(f"Failed to apply patch for {rel_path}: {e}") from e

                if change.change_type == "delete":
                    target.unlink(missing_ok=True)
                else:
                    atomic_write_text(target, patched)
                changed_files.append(rel_path)
        except (PatchApplyError, UnsafePathError, OSError) as e:
            errors.append(str(e))
            rollback_errors = self._restore_backups(backups)
            errors.extend(rollback_errors)
            if not rollback_errors:
                shutil.rmtree(backups_dir, ignore_errors=True)
            self.telemetry.log(
                "apply",
                "apply_failed",
                {
                    "proposal_id": proposal.proposal_id,
                    "changed_files": changed_files,
                    "errors": [redact_text(err, max_len=200) for err in errors],
                },
            )
            return ApplyResult(applied=False, changed_files=changed_files, errors=errors)

        record = AppliedRecord(
            id=record_id,
            proposal_id=proposal.proposal_id,
            proposal_dir_rel=self._rel_to_root(proposal.proposal_dir),
            applied_at=now,
            changed_files=changed_files,
            backup_files=backups,
        )
        atomic_write_text(self.applied_dir / f"{record_id}.json", record.model_dump_json(indent=2) + "\n")
        atomic_write_text(self.applied_dir / f"{record_id}.md", self._render_summary(record))
        self._append_audit(
            {"event": "proposal.applied", "record_id": record_id, "changed_files": changed_files}
        )

        self.telemetry.log(
            "apply",
            "apply_succeeded",
            {"proposal_id": proposal.proposal_id, "record_id": record_id, "changed_files": changed_files},
        )
        return ApplyResult(
            applied=True,
            applied_record_id=record_id,
            changed_files=changed_files,
            errors=errors or None,
        )

    def _restore_backups(self, backups: list[BackupEntry]) -> list[str]:
        """Best-effort revert used when an apply fails part way."""
        errors: list[str] = []
        for b in reversed(backups):
            target = self.project_root / b.path
            if not is_inside_root(self.project_root, target):
                continue
            try:
                if not b.existed:
                    target.unlink(missing_ok=True)
                    continue
                if not b.backup_rel_path:
                    continue
                atomic_write_bytes(target, (self.applied_dir / b.backup_rel_path).read_bytes())
            except OSError as e:
                errors.append(f"Rollback failed for {b.path}: {e}")
        return errors

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def load_record(self, record_id: str) -> AppliedRecord:
        record_path = self.applied_dir / f"{record_id}.json"
        if not record_path.exists():
            raise IntegrityError(f"Applied record not found: {record_id}")
        try:
            return AppliedRecord.model_validate_json(record_path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise IntegrityError(f"Applied record {record_id} is malformed: {e}") from e

    def rollback_proposal(self, record_id: str) -> RollbackReport:
        """Restore the project to its state before ``record_id`` was applied.

        Raises:
            IntegrityError: The record, a backup path, or a backup file is missing.
        """
        record = self.load_record(record_id)
        if self.is_rolled_back(record_id):
            raise IntegrityError(f"Applied record {record_id} was already rolled back")
        report = RollbackReport(record_id=record_id)

        for b in reversed(record.backup_files):
            target = self.project_root / b.path
            if not is_inside_root(self.project_root, target):
                continue

            if not b.existed:
                target.unlink(missing_ok=True)
                report.deleted_files.append(b.path)
                continue

            if not b.backup_rel_path:
                raise IntegrityError(f"Missing backup path for {b.path} in record {record_id}")

            backup_abs = self.applied_dir / b.backup_rel_path
            if not backup_abs.exists():
                raise IntegrityError(f"Backup file missing for {b.path}: {b.backup_rel_path}")

            atomic_write_bytes(target, backup_abs.read_bytes())
            report.restored_files.append(b.path)

        self._append_audit({"event": "proposal.rolledBack", "record_id": record_id})
        self.telemetry.log(
            "apply",
            "rollback_completed",
            {
                "record_id": record_id,
                "restored_files": report.restored_files,
                "deleted_files": report.deleted_files,
            },
        )
        return report

    def is_rolled_back(self, record_id: str) -> bool:
        """True when ``audit.log`` already holds a rollback entry for ``record_id``."""
        audit_path = self.applied_dir / "audit.log"
        if not audit_path.exists():
            return False
        for line in audit_path.read_text(encoding="utf-8").splitlines():
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict):
                continue
            if entry.get("event") == "proposal.rolledBack" and entry.get("record_id") == record_id:
                return True
        return False

    def list_records(self) -> list[AppliedRecord]:
        if not self.applied_dir.exists():
            return []
        records: list[AppliedRecord] = []
        for path in sorted(self.applied_dir.glob("applied.*.json")):
            try:
                records.append(AppliedRecord.model_validate_json(path.read_text(encoding="utf-8")))
            except ValidationError:
                continue
        return records

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _rel_to_root(self, path: Path) -> str:
        try:
            rel = path.resolve().relative_to(self.project_root).as_posix()
        except ValueError:
            return path.resolve().as_posix()
        return rel or "."

    def _append_audit(self, entry: dict[str, object]) -> None:
        self.applied_dir.mkdir(parents=True, exist_ok=True)
        line = {"ts": self._clock().isoformat(), **entry}
        with open(self.applied_dir / "audit.log", "a", encoding="utf-8") as f:
            f.write(json.dumps(line) + "\n")

    @staticmethod
    def _render_summary(record: AppliedRecord) -> str:
        lines = [
            f"# Applied: {record.proposal_id or record.id}",
            "",
            "## Proposal reference",
            "",
            f"- Proposal dir: `{record.proposal_dir_rel}`",
        ]
        if record.proposal_id:
            lines.append(f"- Proposal ID: `{record.proposal_id}`")
        lines += ["", "## Patch summary", "", "- Files changed:"]
        lines += [f"  - `{p}`" for p in record.changed_files]
        lines += ["", "## Verification notes", "", "- Applied by the governance pipeline."]
        return "\n".join(lines) + "\n"
