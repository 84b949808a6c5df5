"""Persisted schemas for proposal directories and applied records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ManifestChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str
    reason: str | None = None


class ProposalManifest(BaseModel):
    """``proposal.v1.json`` written alongside the patches of a proposal."""

    model_config = ConfigDict(extra="forbid")

    version: Literal["proposal.v1"]
    id: str
    created_at: datetime
    trace_path: str
    reports_dir: str
    summary: str
    intent: str | None = None
    scope: list[str] | None = None
    risks: list[str] | None = None
    verification: list[str] | None = None
    changes: list[ManifestChange] | None = None


class BackupEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    existed: bool
    # Relative to the applied directory; absent when the file did not exist.
    backup_rel_path: str | None = None


class AppliedRecord(BaseModel):
    """Immutable record of one successful application."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    id: str = Field(min_length=1)
    proposal_id: str | None = None
    proposal_dir_rel: str = Field(min_length=1)
    applied_at: datetime
    changed_files: list[str]
    backup_files: list[BackupEntry]


@dataclass
class ParsedChange:
    path: str
    change_type: Literal["create", "modify", "delete"]
    patch_path: Path | None = None
    patch_text: str | None = None
    reason: str | None = None
    category: str | None = None


@dataclass
class ParsedProposal:
    proposal_dir: Path
    proposal_json_path: Path | None = None
    manifest: ProposalManifest | None = None
    changes: list[ParsedChange] = field(default_factory=list)

    @property
    def proposal_id(self) -> str | None:
        return self.manifest.id if self.manifest else None


@dataclass
class ApplyResult:
    """Outcome of applying a parsed proposal to the project."""

    applied: bool
    changed_files: list[str]
    applied_record_id: str | None = None
    errors: list[str] | None = None


@dataclass
class RollbackReport:
    record_id: str
    restored_files: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
