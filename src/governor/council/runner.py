"""Council runner: score a captured trace with one prompt per configured role.

``.governor/council.yaml`` maps each role to a profile and a prompt template.
Profiles are resolved and prompts completed through injected callables, so the
runner itself has no opinion about which model backs a role. One scorecard
JSON per role is written into ``<out_dir>/council.<timestamp>/``.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ..config import GOVERNOR_DIR
from ..telemetry import TelemetrySink

COUNCIL_CONFIG_PATH = f"{GOVERNOR_DIR}/council.yaml"
REPORTS_DIR = f"{GOVERNOR_DIR}/reports"


class CouncilRoleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str
    prompt_path: str
    rubric_id: str | None = None


class CouncilFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(default=1, ge=1, le=1)
    council_id: str | None = None
    roles: dict[str, CouncilRoleConfig]


@dataclass
class CouncilRunResult:
    trace: dict[str, Any]
    council: CouncilFile
    reports_dir: Path
    scorecards: list[dict[str, Any]] = field(default_factory=list)
    scorecard_paths: list[Path] = field(default_factory=list)


ResolveProfile = Callable[[str], Awaitable[Any]]
CompletePrompt = Callable[[Any, str], Awaitable[str]]


def parse_council_yaml(text: str) -> CouncilFile:
    return CouncilFile(**(yaml.safe_load(text) or {}))


def format_timestamp_for_filename(now: datetime) -> str:
    # 20251214T161234Z
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def fill_template(template: str, context: dict[str, str]) -> str:
    """Substitute ``{{role}}``, ``{{profile}}``, ``{{rubricId}}``, ``{{promptPath}}``,
    ``{{tracePath}}`` and ``{{traceJson}}``."""
    out = template
    for key in ("role", "profile", "rubricId", "promptPath", "tracePath", "traceJson"):
        out = out.replace("{{" + key + "}}", context.get(key, ""))
    return out


def role_to_file_safe(role: str) -> str:
    safe = re.sub(r"[^a-z0-9._-]+", "-", role.strip().lower())
    return safe.strip("-")


def try_parse_model_json(text: str) -> Any:
    trimmed = text.strip()
    if not trimmed:
        return None

    fenced = re.search(r"```json\s*([\s\S]*?)\s*```", trimmed, re.I)
    candidate = fenced.group(1) if fenced else trimmed
    if not fenced and not trimmed.startswith(("{", "[")):
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


def write_json_unique(directory: Path, base_name: str, data: Any) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    stem, ext = (base_name[: -len(".json")], ".json") if base_name.endswith(".json") else (base_name, "")
    for i in range(1000):
        suffix = "" if i == 0 else f"-{i:03d}"
        out_path = directory / f"{stem}{suffix}{ext}"
        try:
            with open(out_path, "x", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
        except FileExistsError:
            continue
        return out_path
    raise FileExistsError(f"Failed to find an unused filename for '{base_name}' in '{directory}'")


def _rel(project_root: Path, path: Path) -> str:
    try:
        return path.resolve().relative_to(project_root.resolve()).as_posix()
    except ValueError:
        return path.as_posix()


async def run_council_review(
    project_root: Path,
    trace_path: Path,
    resolve_profile: ResolveProfile,
    complete_prompt: CompletePrompt,
    *,
    council_config_path: Path | None = None,
    out_dir: Path | None = None,
    now: datetime | None = None,
    telemetry: TelemetrySink | None = None,
) -> CouncilRunResult:
    """Run every configured role over a trace and persist their scorecards."""
    project_root = Path(project_root)
    telemetry = telemetry or TelemetrySink.disabled()
    now = now or datetime.now(timezone.utc)

    trace = json.loads(Path(trace_path).read_text(encoding="utf-8"))
    if not isinstance(trace, dict):
        raise ValueError(f"Trace must be a JSON object: {trace_path}")
    council = parse_council_yaml(
        (project_root / (council_config_path or COUNCIL_CONFIG_PATH)).read_text(encoding="utf-8")
    )

    ts = format_timestamp_for_filename(now)
    reports_dir = project_root / (out_dir or REPORTS_DIR) / f"council.{ts}"
    reports_dir.mkdir(parents=True, exist_ok=True)

    trace_rel = _rel(project_root, Path(trace_path))
    trace_json = json.dumps(trace, indent=2)
    result = CouncilRunResult(trace=trace, council=council, reports_dir=reports_dir)

    for role, role_config in council.roles.items():
        settings = await resolve_profile(role_config.profile)
        template = (project_root / role_config.prompt_path).read_text(encoding="utf-8")
        prompt = fill_template(
            template,
            {
                "role": role,
                "profile": role_config.profile,
                "rubricId": role_config.rubric_id or "",
                "promptPath": role_config.prompt_path,
                "tracePath": trace_rel,
                "traceJson": trace_json,
            },
        )

        completion = await complete_prompt(settings, prompt)
        parsed = try_parse_model_json(completion)

        scorecard: dict[str, Any] = dict(parsed) if isinstance(parsed, dict) else {}
        # Metadata is always ours, whatever the model returned.
        scorecard.update(
            {
                "version": "scorecard.v1",
                "id": f"scorecard_{uuid.uuid4().hex[:12]}",
                "created_at": now.isoformat(),
                "trace": {"id": trace.get("id"), "path": trace_rel},
                "council": {
                    "role": role,
                    "profile": role_config.profile,
                    "rubric_id": role_config.rubric_id,
                    "prompt_path": role_config.prompt_path,
                },
                "prompt": prompt,
                "raw": parsed if parsed is not None else {"text": completion},
            }
        )

        out_path = write_json_unique(reports_dir, f"scorecard.v1.{role_to_file_safe(role)}.{ts}.json", scorecard)
        result.scorecards.append(scorecard)
        result.scorecard_paths.append(out_path)

    telemetry.log(
        "council",
        "council_run_completed",
        {"reports_dir": str(reports_dir), "roles": list(council.roles), "trace": trace_rel},
    )
    return result
