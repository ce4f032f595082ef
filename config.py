"""
Configuration for the toolify proxy.

取值优先级: ENV > YAML 配置文件 > 默认值

- 启动时由 web.py 调用 load_dotenv() 读取 .env
- YAML 文件路径由 CONFIG_FILE 指定（默认 config.yaml，不存在则忽略）
- 任何无法解析的值都回退到安全默认值并记录 warning，不会让启动失败
"""

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from log import log

DEFAULT_UPSTREAM_BASE_URL = "http://127.0.0.1:8000/v1/chat/completions"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3456
DEFAULT_TIMEOUT_MS = 120000
DEFAULT_AGGREGATION_INTERVAL_MS = 35
DEFAULT_MAX_REQUESTS_PER_MINUTE = 10

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ProxyConfig:
    """进程级只读配置，所有请求共享"""
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    upstream_api_key: Optional[str] = None
    upstream_model_override: Optional[str] = None
    client_api_key: Optional[str] = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auto_port: bool = False
    request_timeout_ms: int = DEFAULT_TIMEOUT_MS
    aggregation_interval_ms: int = DEFAULT_AGGREGATION_INTERVAL_MS
    max_requests_per_minute: int = DEFAULT_MAX_REQUESTS_PER_MINUTE
    token_multiplier: float = 1.0
    model_mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def request_timeout(self) -> float:
        """超时（秒），供 httpx 使用"""
        return self.request_timeout_ms / 1000.0


# ====================== 纯函数解析器 ======================

def parse_token_multiplier(raw: Any) -> float:
    """
    解析 token 倍率，兼容常见写法：

    - "1.2" / "0.8"
    - "1.2x" / "x1.2"
    - "120%"（表示 1.2）
    - 带引号或空格："'1.2'" / " 1.2 "

    无法解析、非有限值或 <= 0 时一律返回 1.0
    """
    if raw is None:
        return 1.0
    if isinstance(raw, bool):
        return 1.0
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) and value > 0 else 1.0

    s = str(raw).strip()
    if not s:
        return 1.0

    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1].strip()

    if s.endswith("%"):
        try:
            value = float(s[:-1].strip())
        except ValueError:
            return 1.0
        if math.isfinite(value) and value > 0:
            return value / 100
        return 1.0

    lower = s.lower()
    if lower.endswith("x"):
        s = s[:-1].strip()
    elif lower.startswith("x"):
        s = s[1:].strip()

    try:
        value = float(s)
    except ValueError:
        return 1.0
    if not math.isfinite(value) or value <= 0:
        return 1.0
    return value


def parse_model_mapping(raw: Any) -> Dict[str, str]:
    """
    解析模型名映射表

    接受 JSON 对象字符串（环境变量）或 YAML 中的映射，
    例如: '{"claude-sonnet-4-5-20250929": "claude-4.5-sonnet"}'
    """
    if raw is None or raw == "":
        return {}

    parsed = raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("MODEL_MAPPING is not valid JSON, ignoring", tag="CONFIG")
            return {}

    if not isinstance(parsed, dict):
        log.warning("MODEL_MAPPING must be a JSON object, ignoring", tag="CONFIG")
        return {}

    return {str(k): str(v) for k, v in parsed.items() if v is not None}


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in _TRUE_VALUES


def _parse_int(name: str, raw: Any, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        log.warning(f"Invalid integer for {name}: {raw!r}, using default {default}", tag="CONFIG")
        return default


# ====================== 配置加载 ======================

def _load_config_file() -> Dict[str, Any]:
    """读取 YAML 配置文件，文件不存在或格式错误时返回空字典"""
    path = Path(os.getenv("CONFIG_FILE", "config.yaml"))
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        log.warning(f"Failed to read config file {path}: {e}", tag="CONFIG")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Config file {path} must contain a mapping, ignoring", tag="CONFIG")
        return {}
    return data


def _get_value(file_values: Dict[str, Any], key: str, env_var: str, default: Any = None) -> Any:
    """Get configuration value with priority: ENV > config file > default."""
    env_value = os.getenv(env_var)
    if env_value is not None and env_value != "":
        return env_value
    value = file_values.get(key)
    if value is not None:
        return value
    return default


def load_config() -> ProxyConfig:
    """从环境变量和配置文件构建 ProxyConfig"""
    file_values = _load_config_file()

    def get(key: str, env_var: str, default: Any = None) -> Any:
        return _get_value(file_values, key, env_var, default)

    auto_port = _parse_bool(get("auto_port", "AUTO_PORT", False))
    port = 0 if auto_port else _parse_int("PORT", get("port", "PORT"), DEFAULT_PORT)

    config = ProxyConfig(
        upstream_base_url=str(get("upstream_base_url", "UPSTREAM_BASE_URL", DEFAULT_UPSTREAM_BASE_URL)),
        upstream_api_key=get("upstream_api_key", "UPSTREAM_API_KEY"),
        upstream_model_override=get("upstream_model", "UPSTREAM_MODEL"),
        client_api_key=get("client_api_key", "CLIENT_API_KEY"),
        host=str(get("host", "HOST", DEFAULT_HOST)),
        port=port,
        auto_port=auto_port,
        request_timeout_ms=_parse_int("TIMEOUT_MS", get("timeout_ms", "TIMEOUT_MS"), DEFAULT_TIMEOUT_MS),
        aggregation_interval_ms=_parse_int(
            "AGGREGATION_INTERVAL_MS",
            get("aggregation_interval_ms", "AGGREGATION_INTERVAL_MS"),
            DEFAULT_AGGREGATION_INTERVAL_MS,
        ),
        max_requests_per_minute=_parse_int(
            "MAX_REQUESTS_PER_MINUTE",
            get("max_requests_per_minute", "MAX_REQUESTS_PER_MINUTE"),
            DEFAULT_MAX_REQUESTS_PER_MINUTE,
        ),
        token_multiplier=parse_token_multiplier(get("token_multiplier", "TOKEN_MULTIPLIER")),
        model_mapping=parse_model_mapping(get("model_mapping", "MODEL_MAPPING")),
    )

    if not config.upstream_base_url:
        config.upstream_base_url = DEFAULT_UPSTREAM_BASE_URL

    log.debug(
        "Configuration loaded",
        tag="CONFIG",
        upstream=config.upstream_base_url,
        model_override=config.upstream_model_override,
        mapped_models=len(config.model_mapping),
        token_multiplier=config.token_multiplier,
    )
    return config


# 全局配置缓存
_config_cache: Optional[ProxyConfig] = None


def get_config() -> ProxyConfig:
    """获取缓存的配置（首次调用时加载）"""
    global _config_cache
    if _config_cache is None:
        _config_cache = load_config()
    return _config_cache


def reload_config() -> ProxyConfig:
    """重新加载配置（修改环境变量或配置文件后调用）"""
    global _config_cache
    _config_cache = load_config()
    return _config_cache
