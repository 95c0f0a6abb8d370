from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Union


# Required
ENV_GEMINI_API_KEY = "GEMINI_API_KEY"
ENV_SESSION_BUCKET = "SESSION_BUCKET"
ENV_SESSION_FERNET_KEY = "SESSION_FERNET_KEY"
ENV_BRIDGE_URL = "BRIDGE_URL"

# Optional
ENV_GEMINI_MODEL = "GEMINI_MODEL"
ENV_SESSION_KEY_PREFIX = "SESSION_KEY_PREFIX"
ENV_CLIENT_IDENTITY = "CLIENT_IDENTITY"
ENV_BRIDGE_TOKEN = "BRIDGE_TOKEN"
ENV_TELEGRAM_BOT_TOKEN = "TELEGRAM_BOT_TOKEN"
ENV_TELEGRAM_CHAT_ID = "TELEGRAM_CHAT_ID"
ENV_TELEGRAM_ALLOWED_CHAT_IDS = "TELEGRAM_ALLOWED_CHAT_IDS"
ENV_TELEGRAM_POLL_COMMANDS = "TELEGRAM_POLL_COMMANDS"
ENV_RELAY_ON_QR = "RELAY_ON_QR"
ENV_AWS_REGION = "AWS_REGION"
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_PORT = "PORT"
ENV_PARAM_PREFIX = "PARAM_PREFIX"

# Secrets that may live in SSM under PARAM_PREFIX instead of the environment
SSM_SECRETS = {
    "gemini_api_key": ENV_GEMINI_API_KEY,
    "telegram_bot_token": ENV_TELEGRAM_BOT_TOKEN,
    "session_fernet_key": ENV_SESSION_FERNET_KEY,
}

DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
DEFAULT_CLIENT_IDENTITY = "store-bot"
DEFAULT_KEY_PREFIX = "sessions/"

ChatId = Union[int, str]


class ConfigurationError(RuntimeError):
    """Missing or malformed configuration; the process must not start serving."""


@dataclass(frozen=True)
class Settings:
    gemini_api_key: str
    session_bucket: str
    session_fernet_key: str
    bridge_url: str
    gemini_model: str = DEFAULT_GEMINI_MODEL
    session_key_prefix: str = DEFAULT_KEY_PREFIX
    client_identity: str = DEFAULT_CLIENT_IDENTITY
    bridge_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[ChatId] = None
    telegram_allowed_chat_ids: FrozenSet[ChatId] = field(default_factory=frozenset)
    telegram_poll_commands: bool = False
    relay_on_qr: bool = True
    aws_region: Optional[str] = None
    log_level: str = "INFO"
    port: int = 8080


def _get(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    return v if v not in (None, "") else default


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def coerce_chat_id(raw: Union[int, str]) -> ChatId:
    """Numeric ids become ints (negatives included); handles stay strings."""
    if isinstance(raw, int):
        return raw
    s = raw.strip()
    try:
        return int(s)
    except ValueError:
        return s


def parse_chat_ids(raw: Optional[str]) -> FrozenSet[ChatId]:
    """Parse a chat allow-list given as a JSON array or as CSV.

    "[12345, \"@ops\"]" and "12345, @ops" are equivalent. Commas, newlines
    and spaces separate CSV items. Empty input yields an empty set.
    """
    if not raw or not raw.strip():
        return frozenset()

    items: Iterable[object]
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if isinstance(data, list):
        items = data
    else:
        norm = raw.replace("\n", ",").replace(" ", ",")
        items = [tok.strip().strip("\"'") for tok in norm.split(",")]

    out = set()
    for item in items:
        # bool is an int subclass; never treat True/False as ids
        if isinstance(item, bool):
            continue
        if isinstance(item, float) and item.is_integer():
            item = int(item)
        if isinstance(item, (int, str)) and str(item).strip():
            out.add(coerce_chat_id(item))
    return frozenset(out)


def _load_ssm_params(prefix: str, names: Iterable[str], region_name: Optional[str] = None) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError

    ssm = boto3.client("ssm", region_name=region_name)
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                continue
            raise ConfigurationError(f"Failed to load SSM parameter {full}: {e}") from e
        except BotoCoreError as e:
            raise ConfigurationError(f"Failed to load SSM parameter {full}: {e}") from e
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (and SSM when PARAM_PREFIX is set).

    Raises ConfigurationError listing every missing required variable.
    """
    source: Dict[str, str] = dict(os.environ if env is None else env)
    region = _get(source, ENV_AWS_REGION)

    prefix = _get(source, ENV_PARAM_PREFIX)
    if prefix:
        params = _load_ssm_params(prefix, SSM_SECRETS.keys(), region_name=region)
        for param_name, env_name in SSM_SECRETS.items():
            # explicit environment wins over SSM
            if params.get(param_name) and not _get(source, env_name):
                source[env_name] = params[param_name]  # type: ignore[assignment]

    required = [ENV_GEMINI_API_KEY, ENV_SESSION_BUCKET, ENV_SESSION_FERNET_KEY, ENV_BRIDGE_URL]
    missing = [name for name in required if not _get(source, name)]
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    port_raw = _get(source, ENV_PORT, "8080")
    try:
        port = int(port_raw)  # type: ignore[arg-type]
    except ValueError as ex:
        raise ConfigurationError(f"{ENV_PORT} must be an integer, got {port_raw!r}") from ex

    chat_raw = _get(source, ENV_TELEGRAM_CHAT_ID)
    return Settings(
        gemini_api_key=source[ENV_GEMINI_API_KEY],
        session_bucket=source[ENV_SESSION_BUCKET],
        session_fernet_key=source[ENV_SESSION_FERNET_KEY],
        bridge_url=source[ENV_BRIDGE_URL],
        gemini_model=_get(source, ENV_GEMINI_MODEL, DEFAULT_GEMINI_MODEL),  # type: ignore[arg-type]
        session_key_prefix=_get(source, ENV_SESSION_KEY_PREFIX, DEFAULT_KEY_PREFIX),  # type: ignore[arg-type]
        client_identity=_get(source, ENV_CLIENT_IDENTITY, DEFAULT_CLIENT_IDENTITY),  # type: ignore[arg-type]
        bridge_token=_get(source, ENV_BRIDGE_TOKEN),
        telegram_bot_token=_get(source, ENV_TELEGRAM_BOT_TOKEN),
        telegram_chat_id=coerce_chat_id(chat_raw) if chat_raw else None,
        telegram_allowed_chat_ids=parse_chat_ids(_get(source, ENV_TELEGRAM_ALLOWED_CHAT_IDS)),
        telegram_poll_commands=_flag(_get(source, ENV_TELEGRAM_POLL_COMMANDS), False),
        relay_on_qr=_flag(_get(source, ENV_RELAY_ON_QR), True),
        aws_region=region,
        log_level=(_get(source, ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
        port=port,
    )


__all__ = [
    "ConfigurationError",
    "Settings",
    "coerce_chat_id",
    "load_settings",
    "parse_chat_ids",
]
