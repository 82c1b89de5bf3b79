from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .exceptions import PermanentError

DEFAULT_API_URL_ENV = "FLATMATE_CHAT_API_URL"
DEFAULT_WS_URL_ENV = "FLATMATE_CHAT_WS_URL"
DEFAULT_TOKEN_ENV = "FLATMATE_CHAT_TOKEN"
DEFAULT_USER_ID_ENV = "FLATMATE_CHAT_USER_ID"
DEFAULT_CONFIG_FILE = "flatmate-chat.yml"
CONFIG_SECTION = "chat"

DEFAULT_HISTORY_PAGE_SIZE = 20
DEFAULT_DEDUP_WINDOW_SECONDS = 2.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RECONNECT_MAX_ATTEMPTS = 5
DEFAULT_RECONNECT_BASE_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_SECONDS = 30.0
DEFAULT_HEARTBEAT_MS = 10000


class ChatConfigError(PermanentError):
    """Raised when chat client config is invalid."""


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS
    base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS
    max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS


@dataclass(frozen=True)
class ChatClientConfig:
    api_base_url: str
    ws_url: str
    token_env: str
    token: Optional[str]
    user_id: int
    history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE
    dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    heartbeat_ms: int = DEFAULT_HEARTBEAT_MS
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    @classmethod
    def from_raw(
        cls,
        raw: Optional[Mapping[str, Any]],
        *,
        env: Optional[Mapping[str, str]] = None,
    ) -> "ChatClientConfig":
        cfg: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        source_env = env if env is not None else os.environ

        api_base_url = _first_non_empty(
            source_env.get(DEFAULT_API_URL_ENV), cfg.get("api_base_url")
        )
        if not api_base_url:
            raise ChatConfigError(
                f"chat.api_base_url is required (or set {DEFAULT_API_URL_ENV})"
            )
        ws_url = _first_non_empty(source_env.get(DEFAULT_WS_URL_ENV), cfg.get("ws_url"))
        if not ws_url:
            raise ChatConfigError(
                f"chat.ws_url is required (or set {DEFAULT_WS_URL_ENV})"
            )
        if not ws_url.startswith(("ws://", "wss://")):
            raise ChatConfigError("chat.ws_url must start with ws:// or wss://")

        token_env = str(cfg.get("token_env", DEFAULT_TOKEN_ENV)).strip()
        if not token_env:
            raise ChatConfigError("chat.token_env must be non-empty")
        token = source_env.get(token_env) or None

        user_id_raw = _first_non_empty(
            source_env.get(DEFAULT_USER_ID_ENV), cfg.get("user_id")
        )
        if user_id_raw is None:
            raise ChatConfigError(
                f"chat.user_id is required (or set {DEFAULT_USER_ID_ENV})"
            )
        try:
            user_id = int(user_id_raw)
        except ValueError as exc:
            raise ChatConfigError("chat.user_id must be an integer") from exc

        reconnect_raw = cfg.get("reconnect")
        reconnect_cfg = reconnect_raw if isinstance(reconnect_raw, Mapping) else {}
        reconnect = ReconnectPolicy(
            max_attempts=_parse_positive_int_or_default(
                reconnect_cfg.get("max_attempts"),
                default=DEFAULT_RECONNECT_MAX_ATTEMPTS,
                key="chat.reconnect.max_attempts",
            ),
            base_seconds=_parse_positive_float_or_default(
                reconnect_cfg.get("base_seconds"),
                default=DEFAULT_RECONNECT_BASE_SECONDS,
                key="chat.reconnect.base_seconds",
            ),
            max_seconds=_parse_positive_float_or_default(
                reconnect_cfg.get("max_seconds"),
                default=DEFAULT_RECONNECT_MAX_SECONDS,
                key="chat.reconnect.max_seconds",
            ),
        )

        max_retries_value = cfg.get("max_retries", DEFAULT_MAX_RETRIES)
        if isinstance(max_retries_value, bool) or not isinstance(
            max_retries_value, int
        ):
            raise ChatConfigError("chat.max_retries must be an integer")
        if max_retries_value < 0:
            raise ChatConfigError("chat.max_retries must be >= 0")

        return cls(
            api_base_url=api_base_url.rstrip("/"),
            ws_url=ws_url,
            token_env=token_env,
            token=token,
            user_id=user_id,
            history_page_size=_parse_positive_int_or_default(
                cfg.get("history_page_size"),
                default=DEFAULT_HISTORY_PAGE_SIZE,
                key="chat.history_page_size",
            ),
            dedup_window_seconds=_parse_positive_float_or_default(
                cfg.get("dedup_window_seconds"),
                default=DEFAULT_DEDUP_WINDOW_SECONDS,
                key="chat.dedup_window_seconds",
            ),
            request_timeout_seconds=_parse_positive_float_or_default(
                cfg.get("request_timeout_seconds"),
                default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
                key="chat.request_timeout_seconds",
            ),
            max_retries=max_retries_value,
            heartbeat_ms=_parse_positive_int_or_default(
                cfg.get("heartbeat_ms"),
                default=DEFAULT_HEARTBEAT_MS,
                key="chat.heartbeat_ms",
            ),
            reconnect=reconnect,
        )


def load_config(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> ChatClientConfig:
    """Load the ``chat`` section of a YAML config file, then apply env overrides.

    A missing file is not an error: env vars alone can configure the client.
    """
    config_path = path if path is not None else Path.cwd() / DEFAULT_CONFIG_FILE
    data = _load_yaml_dict(config_path)
    section = data.get(CONFIG_SECTION, data)
    if not isinstance(section, dict):
        raise ChatConfigError(f"'{CONFIG_SECTION}' section must be a mapping")
    return ChatClientConfig.from_raw(section, env=env)


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ChatConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ChatConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ChatConfigError(f"Config file must be a mapping: {path}")
    return data


def _first_non_empty(*values: Any) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        token = str(value).strip()
        if token:
            return token
    return None


def _parse_positive_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ChatConfigError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ChatConfigError(f"{key} must be an integer") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_positive_float_or_default(value: Any, *, default: float, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ChatConfigError(f"{key} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ChatConfigError(f"{key} must be a number") from exc
    if parsed <= 0:
        return default
    return parsed
