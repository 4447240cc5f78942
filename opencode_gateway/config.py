from __future__ import annotations

# 環境変数と config.json を読むため
import os
import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

# 真偽値として扱う文字列（大文字小文字は無視）
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class GatewayConfig:
    """
    gateway全体の設定。
    優先順位は「デフォルト < config.json < 環境変数」。
    """

    host: str = "0.0.0.0"
    port: int = 8083
    # 空ならAPIキー検証をしない
    api_key: str = ""

    # OpenCodeバックエンド（opencode serve）の場所と実行ファイル
    backend_url: str = "http://127.0.0.1:4097"
    opencode_path: str = "opencode"
    default_model: str = "opencode/kimi-k2.5-free"

    # タイムアウト類（秒）
    request_timeout: float = 180.0
    startup_timeout: float = 120.0
    health_interval: float = 2.0
    queue_cooldown: float = 0.2

    # ツール呼び出しを無効化するか / 隔離HOMEを使うか / 終わったsessionを消すか
    disable_tools: bool = True
    isolate_home: bool = True
    delete_sessions: bool = True

    # /config/providers と ツールID一覧のキャッシュTTL
    model_cache_ttl: float = 60.0
    tool_cache_ttl: float = 300.0

    debug: bool = False

    @property
    def startup_attempts(self) -> int:
        """起動待ちのヘルスチェック回数（startup_timeout / health_interval）"""
        if self.health_interval <= 0:
            return 1
        return max(1, int(self.startup_timeout / self.health_interval))

    @property
    def task_timeout(self) -> float:
        """キュー1件あたりの締め切り。起動待ち + 生成の両方を含める"""
        return self.request_timeout + self.startup_timeout


# 環境変数名 -> フィールド名
ENV_MAP: Dict[str, str] = {
    "HOST": "host",
    "PORT": "port",
    "API_KEY": "api_key",
    "OPENCODE_SERVER_URL": "backend_url",
    "OPENCODE_PATH": "opencode_path",
    "DEFAULT_MODEL": "default_model",
    "REQUEST_TIMEOUT": "request_timeout",
    "STARTUP_TIMEOUT": "startup_timeout",
    "HEALTH_INTERVAL": "health_interval",
    "QUEUE_COOLDOWN": "queue_cooldown",
    "DISABLE_TOOLS": "disable_tools",
    "ISOLATE_HOME": "isolate_home",
    "DELETE_SESSIONS": "delete_sessions",
    "MODEL_REFRESH_TTL": "model_cache_ttl",
    "TOOL_REFRESH_TTL": "tool_cache_ttl",
    "DEBUG": "debug",
}

# config.json はキャメルケース/スネークケース/環境変数名のどれでも書けるようにする
JSON_ALIASES: Dict[str, str] = {
    "backendUrl": "backend_url",
    "opencodePath": "opencode_path",
    "apiKey": "api_key",
    "defaultModel": "default_model",
    "requestTimeout": "request_timeout",
    "disableTools": "disable_tools",
    "isolateHome": "isolate_home",
}


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """文字列やJSON値をフィールドのデフォルト値と同じ型に寄せる。失敗したらデフォルト"""
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUTHY
    if isinstance(default, (int, float)):
        try:
            return type(default)(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {name}: {raw!r} (using {default})")
            return default
    return "" if raw is None else str(raw)


def _read_json(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        # 壊れたconfig.jsonで起動不能にはしない
        logger.error(f"Error parsing {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def load_config(path: Optional[str] = None) -> GatewayConfig:
    """
    デフォルト -> config.json -> 環境変数 の順で上書きして GatewayConfig を作る。
    path省略時は GATEWAY_CONFIG か カレントの config.json を見る。
    """
    config = GatewayConfig()
    defaults = {f.name: getattr(config, f.name) for f in fields(config)}

    path = path or os.getenv("GATEWAY_CONFIG", "config.json")
    for key, value in _read_json(path).items():
        name = JSON_ALIASES.get(key) or ENV_MAP.get(key) or key
        if name in defaults:
            setattr(config, name, _coerce(name, value, defaults[name]))

    for env_name, name in ENV_MAP.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            setattr(config, name, _coerce(name, value, defaults[name]))

    config.backend_url = config.backend_url.rstrip("/")
    return config
