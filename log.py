"""
日志模块 - 彩色控制台输出 + 结构化日志

颜色方案：
- DEBUG:    灰色 (dim) - 解析器状态切换等调试信息
- INFO:     白色 - 一般信息
- SUCCESS:  绿色 - 请求完成
- WARNING:  橙色 - 配置回退、解析失败回退
- ERROR:    红色 - 上游错误
- CRITICAL: 红色加粗 - 严重错误

环境变量：
- LOG_LEVEL=debug|info|warning|error|critical（默认 info）
- LOG_FORMAT=json 启用 JSON 格式输出，LOG_FORMAT=text 使用文本格式（默认）
- LOG_FILE=路径 额外写入日志文件（默认不写文件）
"""

import json
import os
import sys
import threading
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI 颜色代码"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    WHITE = "\033[37m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_MAGENTA = "\033[95m"


def _supports_color() -> bool:
    """检测终端是否支持颜色"""
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled = _supports_color()

LOG_LEVELS = {
    "debug": 0,
    "info": 1,
    "success": 1,
    "warning": 3,
    "error": 4,
    "critical": 5,
}

LOG_STYLES = {
    "debug":    (Colors.DIM + Colors.WHITE, "DEBUG"),
    "info":     (Colors.WHITE, "INFO"),
    "success":  (Colors.BRIGHT_GREEN, "SUCCESS"),
    "warning":  (Colors.YELLOW + Colors.BOLD, "WARNING"),
    "error":    (Colors.RED, "ERROR"),
    "critical": (Colors.BRIGHT_RED + Colors.BOLD, "CRITICAL"),
}

_file_lock = threading.Lock()
_file_writing_disabled = False

# 每个请求一个 request_id，异步任务之间互不干扰
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(request_id: str):
    """设置当前请求的 request_id（用于日志追踪）"""
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    """获取当前请求的 request_id"""
    return _request_id.get()


def clear_request_id():
    """清除当前请求的 request_id"""
    _request_id.set(None)


def _get_current_level() -> int:
    level = os.getenv("LOG_LEVEL", "info").lower()
    return LOG_LEVELS.get(level, LOG_LEVELS["info"])


def _structured_enabled() -> bool:
    return os.getenv("LOG_FORMAT", "text").lower() == "json"


def _write_to_file(line: str):
    global _file_writing_disabled
    log_file = os.getenv("LOG_FILE")
    if not log_file or _file_writing_disabled:
        return
    try:
        with _file_lock:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError as e:
        # 写文件失败后不再重试，避免每条日志都报错
        _file_writing_disabled = True
        print(f"Warning: Disabling log file writing: {e}", file=sys.stderr)


def _colorize(text: str, color: str) -> str:
    if not _color_enabled:
        return text
    return f"{color}{text}{Colors.RESET}"


def _format_extra(extra: Dict[str, Any]) -> str:
    parts = []
    for key, value in extra.items():
        if isinstance(value, str) and len(value) > 200:
            value = value[:200] + "..."
        parts.append(f"{key}={value!r}" if isinstance(value, str) else f"{key}={value}")
    return " ".join(parts)


def _log(level: str, message: str, tag: Optional[str] = None, **extra):
    """
    核心日志函数

    Args:
        level: 日志级别
        message: 日志消息
        tag: 可选标签（如 PARSER / ENCODER / UPSTREAM）
        **extra: 额外的结构化字段
    """
    level = level.lower()
    if level not in LOG_LEVELS:
        print(f"Warning: Unknown log level '{level}'", file=sys.stderr)
        return
    if LOG_LEVELS[level] < _get_current_level():
        return

    color, label = LOG_STYLES[level]
    now = datetime.now()

    request_id = get_request_id()
    if request_id and "request_id" not in extra:
        extra["request_id"] = request_id

    if _structured_enabled():
        entry: Dict[str, Any] = {"timestamp": now.isoformat(), "level": label, "message": message}
        if tag:
            entry["tag"] = tag
        entry.update(extra)
        output = json.dumps(entry, ensure_ascii=False, default=str)
        plain = output
    else:
        timestamp = now.strftime("%H:%M:%S")
        tag_part = f" [{tag}]" if tag else ""
        extra_part = f" | {_format_extra(extra)}" if extra else ""
        plain = f"[{timestamp}] [{label}]{tag_part} {message}{extra_part}"
        if _color_enabled:
            output = (
                f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
                f"{_colorize(f'[{label}]', color)}"
                f"{' ' + _colorize(f'[{tag}]', Colors.BRIGHT_MAGENTA) if tag else ''} "
                f"{message}"
                f"{Colors.DIM}{extra_part}{Colors.RESET}"
            )
        else:
            output = plain

    stream = sys.stderr if level in ("error", "critical") else sys.stdout
    print(output, file=stream)
    _write_to_file(plain)


class Logger:
    """支持 log(level, msg) 和 log.info(msg) 两种调用方式的日志器"""

    def __call__(self, level: str, message: str, tag: Optional[str] = None, **extra):
        _log(level, message, tag, **extra)

    def debug(self, message: str, tag: Optional[str] = None, **extra):
        _log("debug", message, tag, **extra)

    def info(self, message: str, tag: Optional[str] = None, **extra):
        _log("info", message, tag, **extra)

    def success(self, message: str, tag: Optional[str] = None, **extra):
        _log("success", message, tag, **extra)

    def warning(self, message: str, tag: Optional[str] = None, **extra):
        _log("warning", message, tag, **extra)

    def error(self, message: str, tag: Optional[str] = None, **extra):
        _log("error", message, tag, **extra)

    def critical(self, message: str, tag: Optional[str] = None, **extra):
        _log("critical", message, tag, **extra)

    def is_enabled_for(self, level: str) -> bool:
        """判断某个级别当前是否会输出（避免构造昂贵的调试参数）"""
        return LOG_LEVELS.get(level.lower(), 0) >= _get_current_level()

    def get_current_level(self) -> str:
        current = _get_current_level()
        for name, value in LOG_LEVELS.items():
            if value == current:
                return name
        return "info"


log = Logger()

__all__ = [
    "log",
    "LOG_LEVELS",
    "Colors",
    "set_request_id",
    "get_request_id",
    "clear_request_id",
]
