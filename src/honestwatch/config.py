from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Callable, Optional, TypeVar

_N = TypeVar("_N", int, float)

# import 阶段不 raise；配置错误时回退默认并写入 _STARTUP_WARNINGS，由 lifespan 统一打印。
_STARTUP_WARNINGS: list[str] = []


def parse_env_line(line: str) -> Optional[tuple[str, str]]:
    """解析 .env 的一行：支持 export 前缀与成对引号；注释/空行/无 = 返回 None。"""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    line = line.removeprefix("export ").strip()
    key, sep, value = line.partition("=")
    key, value = key.strip(), value.strip()
    if not sep or not key:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_file(path: Path) -> int:
    """把 .env 中的键 setdefault 进 os.environ（已有值不覆盖），返回新写入的个数；文件不存在返回 0。"""
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return 0
    added = 0
    for line in lines:
        parsed = parse_env_line(line)
        if parsed is None or parsed[0] in os.environ:
            continue
        os.environ[parsed[0]] = parsed[1]
        added += 1
    return added


def env_number(name: str, default: _N, cast: Callable[[str], _N] = int, min_value: Optional[_N] = None) -> _N:
    """
    数值型配置：未设置/空串取 default；无法解析或小于 min_value 时回退 default 并记 startup warning。
    """
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        _STARTUP_WARNINGS.append(f"{name}={raw!r} 不是合法数值，已回退默认 {default}。")
        return default
    if min_value is not None and value < min_value:
        _STARTUP_WARNINGS.append(f"{name}={raw!r} 小于下限 {min_value}，已回退默认 {default}。")
        return default
    return value


def env_flag(name: str, default: bool) -> bool:
    """接受 "1/true/yes/on" 为 True"""
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


load_env_file(Path(os.environ.get("HONESTWATCH_ENV_FILE") or Path(__file__).resolve().parents[2] / ".env"))


# --- 上游警方数据源 ---
FEED_URL = (os.getenv("HONESTWATCH_FEED_URL") or "https://polisen.se/api/events").strip()
FEED_TIMEOUT_SECONDS = env_number("HONESTWATCH_FEED_TIMEOUT_SECONDS", 15.0, float, min_value=0.1)
FEED_USER_AGENT = os.getenv("HONESTWATCH_FEED_USER_AGENT", "honest-watchdog/0.1")


# --- 同步节奏 ---
BACKFILL_DAYS = env_number("HONESTWATCH_BACKFILL_DAYS", 7, min_value=0)
BACKFILL_DELAY_SECONDS = env_number("HONESTWATCH_BACKFILL_DELAY_SECONDS", 0.5, float, min_value=0.0)
SYNC_INTERVAL_SECONDS = env_number("HONESTWATCH_SYNC_INTERVAL_SECONDS", 600, min_value=1)
ENABLE_SCHEDULER = env_flag("HONESTWATCH_ENABLE_SCHEDULER", True)


# --- 留存与读取上限 ---
RETENTION_DAYS = env_number("HONESTWATCH_RETENTION_DAYS", 7, min_value=1)
INCIDENTS_READ_LIMIT = env_number("HONESTWATCH_INCIDENTS_READ_LIMIT", 1000, min_value=1)


# --- 评分 ---
STALE_EVENT_DAYS = env_number("HONESTWATCH_STALE_EVENT_DAYS", 30, min_value=1)
LOW_CONFIDENCE_THRESHOLD = 50


# --- 沙盒注入 ---
SANDBOX_KEY_PREFIX = "mock_"
SANDBOX_TIMESTAMP_BIAS_MS = env_number("HONESTWATCH_SANDBOX_TIMESTAMP_BIAS_MS", 10000, min_value=0)
SANDBOX_RATE_LIMIT_PER_IP_PER_MIN = env_number("HONESTWATCH_SANDBOX_RATE_LIMIT_PER_IP_PER_MIN", 60, min_value=1)


LOG_LEVEL = (os.getenv("HONESTWATCH_LOG_LEVEL") or "INFO").strip().upper() or "INFO"


DEFAULT_ADMIN_PHRASES: tuple[str, ...] = (
    "frågor från media",
    "ingen presstalesperson i tjänst",
    "ändrade öppettider",
    "press inquiries",
    "no spokesperson on duty",
    "changed opening hours",
)


def try_load_admin_phrases() -> tuple[frozenset[str], str | None]:
    """
    加载行政公告触发短语（小写子串）。
    env 未设置返回默认；JSON 非法或不是非空字符串列表时回退默认并返回 warning。
    """
    raw = os.getenv("HONESTWATCH_ADMIN_PHRASES_JSON")
    default = frozenset(DEFAULT_ADMIN_PHRASES)
    if not raw or not raw.strip():
        return default, None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        msg = f"HONESTWATCH_ADMIN_PHRASES_JSON JSON 解析失败（{e!s}），已回退默认短语表。"
        _STARTUP_WARNINGS.append(msg)
        return default, msg
    if not isinstance(data, list):
        msg = "HONESTWATCH_ADMIN_PHRASES_JSON 必须为字符串数组，已回退默认短语表。"
        _STARTUP_WARNINGS.append(msg)
        return default, msg
    phrases: set[str] = set()
    for item in data:
        if not isinstance(item, str) or not item.strip():
            msg = "HONESTWATCH_ADMIN_PHRASES_JSON 含空值或非字符串项，已回退默认短语表。"
            _STARTUP_WARNINGS.append(msg)
            return default, msg
        phrases.add(item.strip().lower())
    if not phrases:
        msg = "HONESTWATCH_ADMIN_PHRASES_JSON 为空数组，已回退默认短语表。"
        _STARTUP_WARNINGS.append(msg)
        return default, msg
    return frozenset(phrases), None


ADMIN_PHRASES, _ = try_load_admin_phrases()


DAY_MS = 24 * 60 * 60 * 1000


def days_to_ms(days: int | float) -> int:
    return int(days * DAY_MS)
