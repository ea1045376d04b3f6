"""OMCM configuration management."""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CLAUDE_HOME = Path.home() / ".claude"
OMCM_HOME = Path(os.environ.get("OMCM_HOME", str(Path.home() / ".omcm")))
OMCM_CONFIG_DIR = CLAUDE_HOME / "plugins" / "omcm"
OMCM_CONFIG = OMCM_CONFIG_DIR / "config.json"
OMC_CONFIG = CLAUDE_HOME / ".omc-config.json"


@dataclass(frozen=True)
class OmcmPaths:
    """Every on-disk location OMCM reads or writes.

    Resolved once at process start and passed down, so tests can point
    the whole tree at a temporary directory.
    """

    home: Path = OMCM_HOME
    claude_home: Path = CLAUDE_HOME
    config_file: Path = OMCM_CONFIG
    omc_config_file: Path = OMC_CONFIG

    @classmethod
    def under(cls, root: Path) -> "OmcmPaths":
        """Build a path set rooted at ``root`` (``root/.omcm``, ``root/.claude``)."""
        claude = root / ".claude"
        return cls(
            home=root / ".omcm",
            claude_home=claude,
            config_file=claude / "plugins" / "omcm" / "config.json",
            omc_config_file=claude / ".omc-config.json",
        )

    @property
    def fusion_state(self) -> Path:
        return self.home / "fusion-state.json"

    @property
    def fallback_state(self) -> Path:
        return self.home / "fallback-state.json"

    @property
    def provider_limits(self) -> Path:
        return self.home / "provider-limits.json"

    @property
    def routing_log(self) -> Path:
        return self.home / "routing-log.jsonl"

    @property
    def active_session(self) -> Path:
        return self.home / "active-session.json"

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def usage_response(self) -> Path:
        return self.claude_home / "statsig" / "usage_response.json"

    @property
    def hud_usage_cache(self) -> Path:
        return self.claude_home / "plugins" / "oh-my-claudecode" / ".usage-cache.json"

    def rules_files(self, cwd: Path | None = None) -> list[Path]:
        """Routing rule files in lookup order."""
        return [
            self.config_file.parent / "routing-rules.json",
            self.home / "routing-rules.json",
            (cwd or Path.cwd()) / ".omcm" / "routing-rules.json",
        ]

    def mapping_files(self, cwd: Path | None = None) -> list[Path]:
        """Agent mapping overlay files in lookup order."""
        return [
            self.config_file.parent / "agent-mapping.json",
            self.home / "agent-mapping.json",
            (cwd or Path.cwd()) / ".omcm" / "agent-mapping.json",
        ]


DEFAULT_LARGE_TASK_KEYWORDS = [
    "refactor",
    "all files",
    "entire",
    "complete",
    "리팩토링",
    "전체",
    "모든 파일",
    "완전히",
]


@dataclass
class RoutingConfig:
    """Hybrid routing knobs."""

    enabled: bool = True
    usage_threshold: int = 70  # 'any' tasks shift to MCP above this usage
    max_mcp_workers: int = 3
    prefer_mcp: list[str] = field(default_factory=lambda: [
        "explore", "dependency-expert", "researcher", "writer",
        "document-specialist", "style-reviewer", "ux-researcher",
    ])
    prefer_claude: list[str] = field(default_factory=lambda: [
        "architect", "deep-executor", "critic", "planner", "debugger",
    ])
    auto_delegate: bool = True
    large_task_keywords: list[str] = field(
        default_factory=lambda: list(DEFAULT_LARGE_TASK_KEYWORDS)
    )
    large_task_length: int = 500
    session_token_threshold: int = 5_000_000


@dataclass
class ContextConfig:
    """Handoff context export settings."""

    include_recent_files: bool = True
    recent_files_limit: int = 10
    include_todos: bool = True
    include_decisions: bool = True
    max_context_length: int = 50000


@dataclass
class NotificationConfig:
    """Threshold / keyword notifications."""

    show_on_threshold: bool = True
    show_on_keyword: bool = True
    quiet_mode: bool = False


@dataclass
class OmcmConfig:
    """Top-level OMCM configuration."""

    fusion_default: bool = False
    fusion_mode: str | None = None  # 'always' keeps routing even under delegation
    threshold: int = 90
    auto_handoff: bool = False
    keywords: list[str] = field(default_factory=lambda: ["handoff", "전환"])
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @classmethod
    def from_dict(cls, data: dict | None) -> "OmcmConfig":
        """Build a config from the camelCase JSON document, ignoring unknown keys."""
        config = cls()
        if not isinstance(data, dict):
            return config
        _apply(config, data)
        return config

    @classmethod
    def load(cls, paths: OmcmPaths | None = None) -> "OmcmConfig":
        """Load config from disk or return defaults.

        A missing or corrupt file yields the defaults; the hook must never
        fail on a bad config.
        """
        paths = paths or OmcmPaths()
        if not paths.config_file.exists():
            return cls()
        try:
            data = json.loads(paths.config_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Config load failed, using defaults: {e}")
            return cls()
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return _to_camel(asdict(self))

    def save(self, paths: OmcmPaths | None = None) -> None:
        """Persist config to disk."""
        paths = paths or OmcmPaths()
        paths.config_file.parent.mkdir(parents=True, exist_ok=True)
        paths.config_file.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _to_camel(value: Any) -> Any:
    if isinstance(value, dict):
        return {_camel(k): _to_camel(v) for k, v in value.items()}
    return value


def _accepts(current: Any, value: Any) -> bool:
    """Whether ``value`` has the JSON shape of the default it replaces."""
    if current is None:
        return value is None or isinstance(value, str)
    if isinstance(current, bool):
        return isinstance(value, bool)
    if isinstance(current, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(current, list):
        return isinstance(value, list) and all(isinstance(item, str) for item in value)
    return isinstance(value, type(current))


def _apply(target: Any, data: dict) -> None:
    by_camel = {_camel(f.name): f.name for f in fields(target)}
    for key, value in data.items():
        attr = by_camel.get(key)
        if attr is None:
            continue
        current = getattr(target, attr)
        if hasattr(current, "__dataclass_fields__"):
            if isinstance(value, dict):
                _apply(current, value)
            continue
        if not _accepts(current, value):
            logger.warning(f"Ignoring config key {key!r}: unexpected value {value!r}")
            continue
        setattr(target, attr, value)


def get_config_value(key: str, default: Any = None, paths: OmcmPaths | None = None) -> Any:
    """Read a dotted camelCase key (``routing.usageThreshold``) from the config."""
    value: Any = OmcmConfig.load(paths).to_dict()
    for part in key.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return default
    return default if value is None else value


def set_config_value(key: str, value: Any, paths: OmcmPaths | None = None) -> None:
    """Write a dotted camelCase key and persist the config."""
    data = OmcmConfig.load(paths).to_dict()
    current = data
    parts = key.split(".")
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value
    OmcmConfig.from_dict(data).save(paths)


def is_delegation_routing_active(paths: OmcmPaths | None = None) -> bool:
    """Whether the sibling orchestrator's own delegation routing is on.

    Reads ``~/.claude/.omc-config.json`` read-only. Absence or a parse
    failure counts as inactive.
    """
    paths = paths or OmcmPaths()
    try:
        data = json.loads(paths.omc_config_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    if not isinstance(data, dict):
        return False
    delegation = data.get("delegationRouting")
    if isinstance(delegation, dict):
        return delegation.get("enabled") is True
    return delegation is True


def configure_logging(level: str | int | None = None) -> None:
    """Send log records to stderr; stdout is reserved for hook answers."""
    level = level or os.environ.get("OMCM_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def ensure_omcm_home(paths: OmcmPaths | None = None) -> None:
    """Create the OMCM home directory structure."""
    paths = paths or OmcmPaths()
    paths.home.mkdir(parents=True, exist_ok=True)
    paths.sessions_dir.mkdir(parents=True, exist_ok=True)
