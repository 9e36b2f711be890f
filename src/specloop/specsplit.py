"""Split a large spec into incremental ``spec-*`` folders.

A read-only agent is asked for a JSON plan (see ``build_plan_prompt``); a plan
file can be supplied instead. Each plan entry becomes a spec folder with
SPEC.md, an acceptance checklist and metadata whose ``dependsOn`` points at
the other generated (or already existing) specs.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .agent_runner import AccessLevel, AgentRunner
from .errors import ConfigurationFault, ProtocolViolation
from .protocol import MALFORMED_PAYLOAD
from .scaffold import SPLITTING_GUIDE_FILE
from .specs import (
    CHECKLIST_FILE,
    METADATA_FILE,
    SPEC_DIR_PREFIX,
    SPEC_FILE,
    SpecMetadata,
    discover_specs,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

NON_SLUG_RE = re.compile(r"[^a-z0-9]+")

PLAN_CONTRACT = """{
  "specs": [
    {
      "index": 0,
      "idSuffix": "foundation",
      "name": "Package skeleton and CLI entry point",
      "summary": "Short human-readable summary",
      "dependsOn": [],
      "acceptanceCriteria": [
        "The CLI exposes run and status commands",
        "pytest passes"
      ]
    }
  ]
}"""


@dataclass
class PlanSpec:
    """One entry of a split plan."""

    index: int
    name: str
    id_suffix: str = ""
    summary: str = ""
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], position: int) -> PlanSpec:
        if not isinstance(data, dict):
            raise ProtocolViolation(MALFORMED_PAYLOAD, f"plan.specs[{position}] is not an object")
        try:
            index = int(data.get("index", position))
        except (TypeError, ValueError) as e:
            raise ProtocolViolation(MALFORMED_PAYLOAD, f"plan.specs[{position}].index must be an integer") from e
        name = str(data.get("name") or "").strip()
        return cls(
            index=index,
            name=name,
            id_suffix=str(data.get("idSuffix") or "").strip() or name,
            summary=str(data.get("summary") or "").strip(),
            depends_on=_strings(data.get("dependsOn")),
            acceptance_criteria=_strings(data.get("acceptanceCriteria")),
        )


def _strings(value: Any) -> list[str]:
    return [str(item) for item in value] if isinstance(value, list) else []


@dataclass
class Plan:
    specs: list[PlanSpec]

    @classmethod
    def from_dict(cls, data: Any) -> Plan:
        if not isinstance(data, dict) or not isinstance(data.get("specs"), list):
            raise ProtocolViolation(MALFORMED_PAYLOAD, "plan must be an object with a specs array")
        plan = cls(specs=[PlanSpec.from_dict(item, i) for i, item in enumerate(data["specs"])])
        plan.validate()
        return plan

    def validate(self) -> None:
        if not self.specs:
            raise ProtocolViolation(MALFORMED_PAYLOAD, "plan.specs must not be empty")
        for i, spec in enumerate(self.specs):
            if not spec.name:
                raise ProtocolViolation(MALFORMED_PAYLOAD, f"plan.specs[{i}].name is required")
            if spec.index < 0:
                raise ProtocolViolation(MALFORMED_PAYLOAD, f"plan.specs[{i}].index must be >= 0")


@dataclass
class GeneratedSpec:
    id: str
    name: str
    path: Path
    depends_on: list[str] = field(default_factory=list)


@dataclass
class SplitResult:
    specs: list[GeneratedSpec] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_plan(text: str) -> Plan:
    """Parse agent output into a Plan.

    Agents sometimes wrap the JSON in prose or a code fence, so the outermost
    ``{...}`` span is tried when the whole text does not parse.

    Raises:
        ProtocolViolation: If no valid plan can be read.
    """
    trimmed = text.strip()
    try:
        data = json.loads(trimmed)
    except json.JSONDecodeError as e:
        start, end = trimmed.find("{"), trimmed.rfind("}")
        if start < 0 or end <= start:
            raise ProtocolViolation(MALFORMED_PAYLOAD, f"split plan is not JSON: {e}") from e
        try:
            data = json.loads(trimmed[start : end + 1])
        except json.JSONDecodeError:
            raise ProtocolViolation(MALFORMED_PAYLOAD, f"split plan is not JSON: {e}") from e
    return Plan.from_dict(data)


def normalize_suffix(value: str) -> str:
    """Lowercase slug of ``value``; ``spec`` when nothing usable is left."""
    slug = NON_SLUG_RE.sub("-", value.strip().lower()).strip("-")
    return slug or "spec"


def build_plan_prompt(guide: str, raw_spec: str, acceptance_commands: list[str]) -> str:
    commands = [c.strip() for c in acceptance_commands if c.strip()]
    lines = [
        "# Spec Splitting Request",
        "",
        "Break the spec below into smaller, incremental specs. Follow the guide and "
        "respond with **JSON only** matching the contract.",
        "",
        "## Splitting Guide",
        "",
        guide.rstrip("\n"),
        "",
        "## Acceptance Commands",
        "",
        *([f"- {c}" for c in commands] or ["- (none provided)"]),
        "",
        "## Raw Spec",
        "",
        "```markdown",
        raw_spec.rstrip("\n"),
        "```",
        "",
        "## JSON Response Contract",
        "",
        "```json",
        PLAN_CONTRACT,
        "```",
        "",
        "Rules:",
        "- `index` must be unique per spec and roughly follow execution order.",
        "- `idSuffix` is a short slug used for the folder name.",
        "- `dependsOn` may reference existing spec ids or other entries by `index` or `idSuffix`.",
        "- Provide at least one acceptance criterion per spec.",
        "",
    ]
    return "\n".join(lines)


def render_spec_markdown(spec: PlanSpec, depends_on: list[str], names: dict[str, str]) -> str:
    lines = [f"# {spec.name}", "", "## Summary", "", spec.summary or "(summary TBD)", ""]
    lines += ["## Acceptance Criteria", ""]
    criteria = [c.strip() for c in spec.acceptance_criteria if c.strip()]
    lines += [f"- {c}" for c in criteria] or ["- (acceptance criteria TBD)"]
    lines += ["", "## Depends on", ""]
    if not depends_on:
        lines.append("- _None_")
    for dep in depends_on:
        name = names.get(dep)
        lines.append(f"- `{dep}`: {name}" if name else f"- `{dep}`")
    lines.append("")
    return "\n".join(lines)


def render_checklist(spec_id: str, spec: PlanSpec, commands: list[str]) -> str:
    lines = [f"# Acceptance Checklist - {spec_id}", "", "## Automated commands", ""]
    cmds = [c.strip() for c in commands if c.strip()]
    lines += [f"- [ ] `{c}`" for c in cmds] or ["- [ ] (none provided)"]
    lines += ["", "## Spec criteria", ""]
    criteria = [c.strip() for c in spec.acceptance_criteria if c.strip()]
    lines += [f"- [ ] {c}" for c in criteria] or ["- [ ] (add acceptance criteria)"]
    lines.append("")
    return "\n".join(lines)


class SpecSplitter:
    """Turns a plan into spec folders under a specs root."""

    def __init__(self, specs_root: Path, acceptance_commands: Optional[list[str]] = None):
        if not specs_root.is_dir():
            raise ConfigurationFault(f"Specs root does not exist: {specs_root}")
        self.specs_root = specs_root
        self.acceptance_commands = list(acceptance_commands or [])

    def request_plan(
        self,
        raw_spec: str,
        runner: AgentRunner,
        model: str,
        guide_path: Optional[Path] = None,
    ) -> Plan:
        """Ask a read-only agent for a split plan.

        Raises:
            ConfigurationFault: If the splitting guide cannot be read.
            AgentProcessError: If the agent fails.
            ProtocolViolation: If the reply is not a valid plan.
        """
        guide_path = guide_path or self.specs_root / SPLITTING_GUIDE_FILE
        try:
            guide = guide_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationFault(f"Failed to read splitting guide {guide_path}: {e}") from e

        prompt = build_plan_prompt(guide, raw_spec, self.acceptance_commands)
        logger.info(f"Requesting split plan from {model}")
        output = runner.invoke(prompt, AccessLevel.READ_ONLY, model)
        return parse_plan(output)

    def _unique_id(self, base_id: str, used: set[str]) -> str:
        candidate, n = base_id, 2
        while candidate in used or (self.specs_root / candidate).exists():
            candidate = f"{base_id}-{n}"
            n += 1
        used.add(candidate)
        return candidate

    def apply(self, plan: Plan) -> SplitResult:
        """Write one spec folder per plan entry; existing folders are never touched."""
        names: dict[str, str] = {}
        try:
            names = {f.id: f.name for f in discover_specs(self.specs_root)}
        except ConfigurationFault as e:
            logger.debug(f"Existing spec names unavailable: {e}")

        result = SplitResult()
        used: set[str] = set()
        ids: list[str] = []
        by_index: dict[int, str] = {}
        by_suffix: dict[str, str] = {}
        for spec in plan.specs:
            base_id = f"{SPEC_DIR_PREFIX}{spec.index:02d}-{normalize_suffix(spec.id_suffix)}"
            spec_id = self._unique_id(base_id, used)
            if spec_id != base_id:
                result.warnings.append(f"spec folder {base_id} existed; created {spec_id} instead")
            ids.append(spec_id)
            by_index.setdefault(spec.index, spec_id)
            by_suffix.setdefault(normalize_suffix(spec.id_suffix), spec_id)

        def resolve(dep: str) -> str:
            lowered = dep.lower()
            for spec_id in ids:
                if spec_id.lower() == lowered:
                    return spec_id
            if dep.isdigit() and int(dep) in by_index:
                return by_index[int(dep)]
            return by_suffix.get(normalize_suffix(dep), dep)

        for spec, spec_id in zip(plan.specs, ids):
            depends_on: list[str] = []
            for raw in spec.depends_on:
                dep = resolve(raw.strip()) if raw.strip() else ""
                if dep and dep not in depends_on:
                    depends_on.append(dep)

            spec_dir = self.specs_root / spec_id
            spec_dir.mkdir(parents=True)
            write_text_atomic(spec_dir / SPEC_FILE, render_spec_markdown(spec, depends_on, names))
            write_text_atomic(spec_dir / CHECKLIST_FILE, render_checklist(spec_id, spec, self.acceptance_commands))
            SpecMetadata(
                id=spec_id,
                name=spec.name,
                depends_on=depends_on,
                acceptance_commands=list(self.acceptance_commands),
            ).save(spec_dir / METADATA_FILE)

            names[spec_id] = spec.name
            result.specs.append(GeneratedSpec(id=spec_id, name=spec.name, path=spec_dir, depends_on=depends_on))
            logger.debug(f"Created {spec_dir}")

        result.warnings.sort()
        return result


def load_plan_file(path: Path) -> Plan:
    """Read a plan from a JSON file instead of asking an agent."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationFault(f"Failed to read plan file {path}: {e}") from e
    return parse_plan(text)
