"""State store — durable per-project state, decision log, audit log.

Everything lives under one state directory:
  ~/.shepherd/
  ├── config.yaml
  ├── registry.yaml          registered projects (ProjectConfig per entry)
  ├── budget.json            advisory spend ledger
  ├── recovery.json          session bindings written at shutdown
  ├── daemon.pid
  ├── shutdown               sentinel: stop after the current cycle
  ├── sessions/              default FileSessionDriver directory
  └── projects/<name>/
      ├── state.json         ProjectState
      ├── decisions.jsonl    append-only Decision log (authoritative history)
      └── audit.jsonl        human-facing event trail

Project directories are partitioned by name, so concurrent per-project
work never contends on the same file.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from shepherd.config import ProjectConfig, load_registry, save_registry
from shepherd.schemas import Decision, ProjectState, RecoverySnapshot

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
DECISIONS_FILE = "decisions.jsonl"
AUDIT_FILE = "audit.jsonl"


def project_slug(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-.")
    return slug or "project"


class StateStore:
    """Reads and writes everything under the state directory."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir).expanduser().resolve()
        self._projects_dir = self.state_dir / "projects"

    # ── Paths ──────────────────────────────────────────────────────

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "registry.yaml"

    @property
    def budget_path(self) -> Path:
        return self.state_dir / "budget.json"

    @property
    def recovery_path(self) -> Path:
        return self.state_dir / "recovery.json"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def shutdown_path(self) -> Path:
        return self.state_dir / "shutdown"

    def project_dir(self, name: str) -> Path:
        return self._projects_dir / project_slug(name)

    def state_path(self, name: str) -> Path:
        return self.project_dir(name) / STATE_FILE

    def decisions_path(self, name: str) -> Path:
        return self.project_dir(name) / DECISIONS_FILE

    def audit_path(self, name: str) -> Path:
        return self.project_dir(name) / AUDIT_FILE

    def init(self) -> None:
        self._projects_dir.mkdir(parents=True, exist_ok=True)

    # ── Registry ───────────────────────────────────────────────────

    def load_projects(self) -> dict[str, ProjectConfig]:
        return load_registry(self.registry_path)

    def register(self, config: ProjectConfig) -> ProjectState:
        """Add or replace a project's config. Creates its state if new."""
        projects = self.load_projects()
        projects[config.name] = config
        save_registry(self.registry_path, projects)

        if self.state_path(config.name).exists():
            state = self.load_state(config.name)
        else:
            state = self.new_state(config)
            self.save_state(state)
        self.append_audit(config.name, "registered", config.repo_path)
        logger.info("Registered project %s", config.name)
        return state

    def unregister(self, name: str) -> bool:
        """Remove a project from the registry and delete its state."""
        projects = self.load_projects()
        if name not in projects:
            return False
        del projects[name]
        save_registry(self.registry_path, projects)
        shutil.rmtree(self.project_dir(name), ignore_errors=True)
        logger.info("Unregistered project %s", name)
        return True

    # ── Project State ──────────────────────────────────────────────

    def new_state(self, config: ProjectConfig) -> ProjectState:
        now = datetime.now().isoformat()
        state = ProjectState(name=config.name, created_at=now, updated_at=now)
        if config.phases:
            state.phase.name = config.phases[0].name
            state.phase.started_at = now
        state.session_id = config.session_id
        return state

    def load_state(self, name: str, config: ProjectConfig | None = None) -> ProjectState:
        """Load a project's state, repairing or resetting a malformed file."""
        path = self.state_path(name)
        if not path.exists():
            return self.new_state(config or ProjectConfig(name=name))
        try:
            return ProjectState.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            backup = path.with_suffix(".json.corrupt")
            logger.error("State for %s is malformed (%s) — reset, backup at %s", name, e, backup)
            try:
                shutil.copyfile(path, backup)
            except OSError:
                pass
            state = self.new_state(config or ProjectConfig(name=name))
            self.save_state(state)
            self.append_audit(name, "state_reset", str(e)[:200])
            return state

    def save_state(self, state: ProjectState) -> None:
        state.updated_at = datetime.now().isoformat()
        path = self.state_path(state.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(state.model_dump_json(indent=2))
        tmp.replace(path)

    # ── Decision Log ───────────────────────────────────────────────

    def append_decision(self, name: str, decision: Decision) -> None:
        path = self.decisions_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(decision.model_dump_json() + "\n")

    def load_decisions(self, name: str, limit: int | None = None) -> list[Decision]:
        """Decisions in log order. Unparseable lines are skipped and logged."""
        path = self.decisions_path(name)
        if not path.exists():
            return []
        decisions = []
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    decisions.append(Decision.model_validate_json(line))
                except ValidationError as e:
                    logger.warning("Skipping bad decision line %d for %s: %s", lineno, name, e)
        if limit is not None:
            return decisions[-limit:]
        return decisions

    # ── Audit ──────────────────────────────────────────────────────

    def append_audit(self, name: str, action: str, detail: str = "", **kwargs: str) -> None:
        path = self.audit_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {
            "timestamp": datetime.now().isoformat(),
            "action": action,
            "detail": detail,
            **kwargs,
        }
        with open(path, "a") as f:
            f.write(json.dumps(entry) + "\n")

    def load_audit(self, name: str) -> list[dict]:
        path = self.audit_path(name)
        if not path.exists():
            return []
        entries = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries

    # ── Recovery Snapshot ──────────────────────────────────────────

    def save_snapshot(self, snapshot: RecoverySnapshot) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.recovery_path.write_text(snapshot.model_dump_json(indent=2))

    def load_snapshot(self) -> RecoverySnapshot:
        if not self.recovery_path.exists():
            return RecoverySnapshot()
        try:
            return RecoverySnapshot.model_validate_json(self.recovery_path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Recovery snapshot unreadable (%s) — ignoring", e)
            return RecoverySnapshot()
