"""Configuration loading: config.yaml, .env and environment overrides."""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = "~/.claude-notify"
DEFAULT_STATE_DIR = "/tmp/claude-notify"
DEFAULT_BOT_NAME = "Claude Code"
DEFAULT_PROJECT_COLOR = 5793266  # Discord blurple #5865F2
MAX_COLOR = 16777215

DEFAULT_COLORS = {
    "online": 3066993,
    "offline": 15158332,
    "approval": 3066993,
    "permission": 16753920,
}

DEFAULT_HEARTBEAT_INTERVAL = 300
MIN_HEARTBEAT_INTERVAL = 10
DEFAULT_STALE_THRESHOLD = 18000

DISCORD_WEBHOOK_RE = re.compile(r"^https://(discord|discordapp)\.com/api/webhooks/[0-9]+/")

# Environment variable -> (section, key) in the merged config dict
ENV_OVERRIDES = {
    "CLAUDE_NOTIFY_WEBHOOK": ("notify", "webhook_url"),
    "CLAUDE_NOTIFY_ENABLED": ("notify", "enabled"),
    "CLAUDE_NOTIFY_TRANSPORT": ("notify", "transport"),
    "CLAUDE_NOTIFY_BOT_NAME": ("display", "bot_name"),
    "CLAUDE_NOTIFY_SHOW_SESSION_INFO": ("display", "show_session_info"),
    "CLAUDE_NOTIFY_SHOW_TOOL_INFO": ("display", "show_tool_info"),
    "CLAUDE_NOTIFY_SHOW_FULL_PATH": ("display", "show_full_path"),
    "CLAUDE_NOTIFY_SHOW_ACTIVITY": ("display", "show_activity"),
    "CLAUDE_NOTIFY_ACTIVITY_THROTTLE": ("display", "activity_throttle"),
    "CLAUDE_NOTIFY_ONLINE_COLOR": ("colors", "online"),
    "CLAUDE_NOTIFY_OFFLINE_COLOR": ("colors", "offline"),
    "CLAUDE_NOTIFY_APPROVAL_COLOR": ("colors", "approval"),
    "CLAUDE_NOTIFY_PERMISSION_COLOR": ("colors", "permission"),
    "CLAUDE_NOTIFY_HEARTBEAT_INTERVAL": ("heartbeat", "interval"),
    "CLAUDE_NOTIFY_STALE_THRESHOLD": ("heartbeat", "stale_threshold"),
    "CLAUDE_NOTIFY_THROTTLE_DIR": ("paths", "state_dir"),
    "CLAUDE_NOTIFY_SKIP_TMP_FILTER": ("paths", "skip_tmp_filter"),
    "CLAUDE_NOTIFY_TELEGRAM_TOKEN": ("telegram", "token"),
    "CLAUDE_NOTIFY_TELEGRAM_CHAT_ID": ("telegram", "chat_id"),
    "CLAUDE_NOTIFY_API_URL": ("server", "api_url"),
}


def _coerce_flag(value: Any, default: bool = False) -> bool:
    """Parse flag values robustly (supports bools and common string forms)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"{name} value {value!r} is not numeric, using {default}")
        return default


def _coerce_float(value: Any, default: float, name: str) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"{name} value {value!r} is not numeric, using {default}")
        return default


def validate_color(value: Any) -> Optional[int]:
    """Return the color as an int if it is a decimal 24-bit RGB value."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        color = value
    elif isinstance(value, str) and value.strip().isdigit():
        color = int(value.strip())
    else:
        return None
    return color if 0 <= color <= MAX_COLOR else None


def normalize_heartbeat_interval(value: Any) -> int:
    """0 disables the heartbeat; garbage or values under the minimum fall back to the default."""
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return DEFAULT_HEARTBEAT_INTERVAL
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return DEFAULT_HEARTBEAT_INTERVAL
    if value == 0:
        return 0
    if value < MIN_HEARTBEAT_INTERVAL:
        return DEFAULT_HEARTBEAT_INTERVAL
    return value


@dataclass
class NotifyConfig:
    """Resolved notifier configuration."""
    webhook_url: Optional[str] = None
    enabled: bool = True
    transport: str = "discord"  # "discord" or "telegram"
    bot_name: str = DEFAULT_BOT_NAME
    show_session_info: bool = False
    show_tool_info: bool = False  # Tool arguments may contain secrets
    show_full_path: bool = False
    show_activity: bool = False
    activity_throttle: int = 30
    idle_busy_min_interval: int = 15
    colors: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_COLORS))
    heartbeat_interval: int = DEFAULT_HEARTBEAT_INTERVAL
    stale_threshold: int = DEFAULT_STALE_THRESHOLD
    config_dir: str = DEFAULT_CONFIG_DIR
    state_dir: str = DEFAULT_STATE_DIR
    skip_tmp_filter: bool = False
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_thread_id: Optional[int] = None
    host: str = "127.0.0.1"
    port: int = 8421
    api_url: Optional[str] = None
    hook_read_timeout: float = 5.0
    request_timeout: float = 10.0

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir).expanduser()

    @property
    def disabled_marker(self) -> Path:
        return self.config_path / ".disabled"

    def is_disabled(self) -> bool:
        """The .disabled marker takes precedence over the enabled flag."""
        return self.disabled_marker.exists() or not self.enabled

    @property
    def server_url(self) -> str:
        return self.api_url or f"http://{self.host}:{self.port}"


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        logger.debug(f"Config file not found: {path}, using defaults")
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to read config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {path} is not a mapping, ignoring")
        return {}
    return data


def _apply_override(config: dict, section: str, key: str, value: Any):
    target = config.get(section)
    if not isinstance(target, dict):
        target = {}
        config[section] = target
    target[key] = value


def load_config(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> NotifyConfig:
    """
    Load configuration.

    Precedence (lowest first): defaults, config.yaml, <config_dir>/.env,
    process environment.

    Args:
        config_path: Explicit YAML path (default: <config_dir>/config.yaml)
        environ: Environment mapping (default: os.environ)

    Returns:
        Resolved NotifyConfig
    """
    environ = os.environ if environ is None else environ
    config_dir = environ.get("CLAUDE_NOTIFY_DIR") or DEFAULT_CONFIG_DIR
    config_root = Path(config_dir).expanduser()

    raw = _read_yaml(Path(config_path).expanduser() if config_path else config_root / "config.yaml")

    env_file = config_root / ".env"
    file_values = {}
    if env_file.exists():
        file_values = {k: v for k, v in dotenv_values(env_file).items() if v}

    # Environment variables take precedence over .env values
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name) or file_values.get(env_name)
        if value:
            _apply_override(raw, section, key, value)

    notify = raw.get("notify") or {}
    display = raw.get("display") or {}
    colors_section = raw.get("colors") or {}
    heartbeat = raw.get("heartbeat") or {}
    paths = raw.get("paths") or {}
    server = raw.get("server") or {}
    telegram = raw.get("telegram") or {}

    colors = dict(DEFAULT_COLORS)
    for name, default in DEFAULT_COLORS.items():
        if name not in colors_section:
            continue
        color = validate_color(colors_section[name])
        if color is None:
            logger.warning(
                f"{name} color {colors_section[name]!r} is out of range (0-{MAX_COLOR}), using default"
            )
            color = default
        colors[name] = color

    webhook_url = notify.get("webhook_url") or None
    if webhook_url and not DISCORD_WEBHOOK_RE.match(webhook_url):
        logger.warning("Webhook URL doesn't look like a Discord webhook URL")

    thread_id = telegram.get("thread_id")

    return NotifyConfig(
        webhook_url=webhook_url,
        enabled=_coerce_flag(notify.get("enabled"), default=True),
        transport=str(notify.get("transport", "discord")).strip().lower(),
        bot_name=display.get("bot_name") or DEFAULT_BOT_NAME,
        show_session_info=_coerce_flag(display.get("show_session_info")),
        show_tool_info=_coerce_flag(display.get("show_tool_info")),
        show_full_path=_coerce_flag(display.get("show_full_path")),
        show_activity=_coerce_flag(display.get("show_activity")),
        activity_throttle=_coerce_int(display.get("activity_throttle"), 30, "activity_throttle"),
        idle_busy_min_interval=_coerce_int(display.get("idle_busy_min_interval"), 15, "idle_busy_min_interval"),
        colors=colors,
        heartbeat_interval=normalize_heartbeat_interval(heartbeat.get("interval", DEFAULT_HEARTBEAT_INTERVAL)),
        stale_threshold=_coerce_int(heartbeat.get("stale_threshold"), DEFAULT_STALE_THRESHOLD, "stale_threshold"),
        config_dir=config_dir,
        state_dir=paths.get("state_dir") or DEFAULT_STATE_DIR,
        skip_tmp_filter=_coerce_flag(paths.get("skip_tmp_filter")),
        telegram_token=telegram.get("token") or None,
        telegram_chat_id=str(telegram["chat_id"]) if telegram.get("chat_id") else None,
        telegram_thread_id=_coerce_int(thread_id, 0, "telegram.thread_id") or None,
        host=server.get("host", "127.0.0.1"),
        port=_coerce_int(server.get("port"), 8421, "server.port"),
        api_url=server.get("api_url") or None,
        hook_read_timeout=_coerce_float(server.get("hook_read_timeout"), 5.0, "hook_read_timeout"),
        request_timeout=_coerce_float(notify.get("request_timeout"), 10.0, "request_timeout"),
    )


class ColorTable:
    """Per-project embed colors from ``colors.conf`` (``project=decimal`` lines)."""

    def __init__(self, path: Optional[Path] = None, default: int = DEFAULT_PROJECT_COLOR):
        self.path = path
        self.default = default

    def get(self, project: str) -> int:
        """First matching line wins; invalid values fall back to the default."""
        if not self.path or not self.path.exists():
            return self.default
        try:
            lines = self.path.read_text().splitlines()
        except OSError as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return self.default

        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            name, value = line.split("=", 1)
            if name.strip() != project:
                continue
            color = validate_color(value)
            if color is None:
                logger.warning(
                    f"Color for project '{project}' is out of range '{value.strip()}' (0-{MAX_COLOR}), using default"
                )
                return self.default
            return color
        return self.default
