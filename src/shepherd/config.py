"""Configuration — GlobalConfig + ProjectConfig.

GlobalConfig: process-wide defaults from config.yaml.
ProjectConfig: one entry per supervised project, kept in registry.yaml.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

DEFAULT_STATE_DIR = "~/.shepherd"
DEFAULT_CONTINUE_COMMAND = "Please continue with the next task."


class ConfigError(Exception):
    """Raised when configuration cannot be loaded. Fatal at startup."""


@dataclass
class GlobalConfig:
    """Global shepherd configuration."""
    state_dir: str = DEFAULT_STATE_DIR
    sessions_dir: str = ""            # "" = <state_dir>/sessions
    poll_interval: int = 120
    max_runtime_hours: float = 0.0    # 0 = run until stopped
    parallel_projects: bool = True
    quarantine_threshold: int = 5

    # Dispatch
    dispatch_max_attempts: int = 3
    dispatch_backoff_base: float = 2.0
    verify_delay: float = 3.0
    max_notifications_per_hour: int = 10

    # Loop guard
    loop_window_minutes: int = 5
    loop_threshold: int = 3

    # Advisory policy
    advisory_enabled: bool = False
    advisory_backend: str = "anthropic"
    advisory_model: str = "claude-haiku-4-5-20251001"
    advisory_timeout: float = 60.0
    daily_cost_cap: float = 5.00
    weekly_cost_cap: float = 20.00
    anthropic_api_key: str = ""       # or ANTHROPIC_API_KEY env var

    # Per-million-token pricing: {"model_id": [input_cost, output_cost]}
    model_pricing: dict[str, list[float]] = field(default_factory=dict)

    # Notifications (empty string = disabled)
    slack_webhook: str = ""           # or SHEPHERD_SLACK_WEBHOOK env var

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def sessions_path(self) -> Path:
        if self.sessions_dir:
            return Path(self.sessions_dir).expanduser()
        return self.state_path / "sessions"

    @property
    def advisory_credential(self) -> str:
        return self.anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY", "")


@dataclass
class RemedySpec:
    """A named procedure that can resolve a class of detected problem."""
    name: str
    patterns: list[str] = field(default_factory=list)
    category: str = ""
    keywords: list[str] = field(default_factory=list)
    command: str = ""                 # "" = "/<name>"

    @property
    def invocation(self) -> str:
        return self.command or f"/{self.name}"


@dataclass
class PhaseSpec:
    """One ordered unit of project work."""
    name: str
    require_approval: bool = False


@dataclass
class ProjectConfig:
    """Per-project configuration from registry.yaml."""
    name: str
    repo_path: str = ""
    session_id: str = ""              # explicit binding hint
    branch: str = "main"

    auto_continue: bool = False
    auto_commit: bool = False
    auto_push: bool = False

    human_approval_patterns: list[str] = field(default_factory=list)
    stall_threshold_minutes: int = 30
    continue_command: str = DEFAULT_CONTINUE_COMMAND

    remedies: list[RemedySpec] = field(default_factory=list)
    phases: list[PhaseSpec] = field(default_factory=lambda: [PhaseSpec(name="main")])

    advisory_enabled: bool | None = None  # None = use global default

    @property
    def stall_threshold_seconds(self) -> float:
        return self.stall_threshold_minutes * 60.0


def _expect_mapping(raw: object, where: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(raw).__name__}")
    return raw


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    return _expect_mapping(raw, str(path))


def default_config_path() -> Path:
    env = os.environ.get("SHEPHERD_CONFIG", "")
    if env:
        return Path(env).expanduser()
    return Path(DEFAULT_STATE_DIR).expanduser() / "config.yaml"


def load_global_config(config_path: str | Path | None = None) -> GlobalConfig:
    """Load global config from config.yaml."""
    config_path = Path(config_path) if config_path else default_config_path()
    if not config_path.exists():
        return GlobalConfig()

    raw = _read_yaml(config_path)
    defaults = GlobalConfig()

    try:
        config = GlobalConfig(
            state_dir=str(raw.get("state_dir", defaults.state_dir)),
            sessions_dir=str(raw.get("sessions_dir", "")),
            poll_interval=int(raw.get("poll_interval", defaults.poll_interval)),
            max_runtime_hours=float(raw.get("max_runtime_hours", 0.0)),
            parallel_projects=bool(raw.get("parallel_projects", True)),
            quarantine_threshold=int(raw.get("quarantine_threshold", 5)),
            dispatch_max_attempts=int(raw.get("dispatch_max_attempts", 3)),
            dispatch_backoff_base=float(raw.get("dispatch_backoff_base", 2.0)),
            verify_delay=float(raw.get("verify_delay", 3.0)),
            max_notifications_per_hour=int(raw.get("max_notifications_per_hour", 10)),
            loop_window_minutes=int(raw.get("loop_window_minutes", 5)),
            loop_threshold=int(raw.get("loop_threshold", 3)),
            advisory_enabled=bool(raw.get("advisory_enabled", False)),
            advisory_backend=raw.get("advisory_backend", defaults.advisory_backend),
            advisory_model=raw.get("advisory_model", defaults.advisory_model),
            advisory_timeout=float(raw.get("advisory_timeout", 60.0)),
            daily_cost_cap=float(raw.get("daily_cost_cap", defaults.daily_cost_cap)),
            weekly_cost_cap=float(raw.get("weekly_cost_cap", defaults.weekly_cost_cap)),
            anthropic_api_key=raw.get("anthropic_api_key", ""),
            model_pricing=_expect_mapping(raw.get("model_pricing"), "model_pricing"),
            slack_webhook=raw.get("slack_webhook", ""),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{config_path}: {e}") from e

    # Apply pricing overrides if configured
    if config.model_pricing:
        from shepherd.budget import set_model_pricing_table
        overrides = {
            model_id: (costs[0], costs[1])
            for model_id, costs in config.model_pricing.items()
            if isinstance(costs, list) and len(costs) == 2
        }
        if overrides:
            set_model_pricing_table(overrides)

    return config


def project_config_from_dict(name: str, raw: dict) -> ProjectConfig:
    """Build a ProjectConfig from one registry entry."""
    raw = _expect_mapping(raw, f"project {name!r}")

    remedies = []
    for entry in raw.get("remedies") or []:
        if isinstance(entry, str):
            remedies.append(RemedySpec(name=entry))
            continue
        entry = _expect_mapping(entry, f"project {name!r} remedy")
        if not entry.get("name"):
            raise ConfigError(f"project {name!r}: remedy without a name")
        remedies.append(RemedySpec(
            name=entry["name"],
            patterns=list(entry.get("patterns") or []),
            category=entry.get("category", ""),
            keywords=list(entry.get("keywords") or []),
            command=entry.get("command", ""),
        ))

    phases = []
    for entry in raw.get("phases") or []:
        if isinstance(entry, str):
            phases.append(PhaseSpec(name=entry))
            continue
        entry = _expect_mapping(entry, f"project {name!r} phase")
        if not entry.get("name"):
            raise ConfigError(f"project {name!r}: phase without a name")
        phases.append(PhaseSpec(
            name=entry["name"],
            require_approval=bool(entry.get("require_approval", False)),
        ))

    try:
        return ProjectConfig(
            name=name,
            repo_path=str(raw.get("repo_path", "")),
            session_id=str(raw.get("session_id", "")),
            branch=raw.get("branch", "main"),
            auto_continue=bool(raw.get("auto_continue", False)),
            auto_commit=bool(raw.get("auto_commit", False)),
            auto_push=bool(raw.get("auto_push", False)),
            human_approval_patterns=list(raw.get("human_approval_patterns") or []),
            stall_threshold_minutes=int(raw.get("stall_threshold_minutes", 30)),
            continue_command=raw.get("continue_command", DEFAULT_CONTINUE_COMMAND),
            remedies=remedies,
            phases=phases or [PhaseSpec(name="main")],
            advisory_enabled=raw.get("advisory_enabled"),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"project {name!r}: {e}") from e


def load_registry(path: str | Path) -> dict[str, ProjectConfig]:
    """Load registered projects from registry.yaml, keyed by name."""
    path = Path(path)
    if not path.exists():
        return {}
    raw = _read_yaml(path)
    projects = _expect_mapping(raw.get("projects"), "projects")
    return {name: project_config_from_dict(name, entry) for name, entry in projects.items()}


def save_registry(path: str | Path, projects: dict[str, ProjectConfig]) -> None:
    """Persist registered projects back to registry.yaml."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"projects": {}}
    for name, cfg in projects.items():
        entry = asdict(cfg)
        entry.pop("name")
        data["projects"][name] = entry
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def resolve_advisory_enabled(project: ProjectConfig, global_cfg: GlobalConfig) -> bool:
    """Project override > global default."""
    if project.advisory_enabled is not None:
        return project.advisory_enabled
    return global_cfg.advisory_enabled
