"""Configuration loading utilities for the FODI MCP server."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "FODI_MCP_"

BOOL_TRUE = {"1", "true", "t", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "f", "no", "n", "off"}

TRANSPORTS = ("http", "stdio")
ENVIRONMENTS = ("development", "production")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_SERVER_NAME = "FODI MCP Server"
DEFAULT_SERVER_VERSION = "1.0.0"
DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8787
DEFAULT_HTTP_PATH = "/mcp"
DEFAULT_SSE_PATH = "/sse"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_PING_INTERVAL = "15s"
DEFAULT_CLIENT_TIMEOUT = "30s"
DEFAULT_REQUEST_TIMEOUT = "30s"
DEFAULT_SSE_QUEUE_SIZE = 64
DEFAULT_REDIRECT_URI = "http://localhost/onedrive-login"
DEFAULT_OAUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/"
DEFAULT_OAUTH_SCOPE = "offline_access Files.ReadWrite.All"
DEFAULT_API_HOST = "https://graph.microsoft.com"

T_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}

ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "transport": f"{ENV_PREFIX}TRANSPORT",
    "server_name": f"{ENV_PREFIX}SERVER_NAME",
    "server_version": f"{ENV_PREFIX}SERVER_VERSION",
    "environment": f"{ENV_PREFIX}ENVIRONMENT",
    "log_level": f"{ENV_PREFIX}LOG_LEVEL",
    "enable_sse": f"{ENV_PREFIX}ENABLE_SSE",
    "enable_metrics": f"{ENV_PREFIX}ENABLE_METRICS",
    "http_host": f"{ENV_PREFIX}HTTP_HOST",
    "http_port": f"{ENV_PREFIX}HTTP_PORT",
    "http_socket_path": f"{ENV_PREFIX}HTTP_SOCKET_PATH",
    "http_path": f"{ENV_PREFIX}HTTP_PATH",
    "sse_path": f"{ENV_PREFIX}SSE_PATH",
    "metrics_path": f"{ENV_PREFIX}METRICS_PATH",
    "ping_interval": f"{ENV_PREFIX}PING_INTERVAL",
    "client_timeout": f"{ENV_PREFIX}CLIENT_TIMEOUT",
    "sse_queue_size": f"{ENV_PREFIX}SSE_QUEUE_SIZE",
    "onedrive_client_id": f"{ENV_PREFIX}ONEDRIVE_CLIENT_ID",
    "onedrive_client_secret": f"{ENV_PREFIX}ONEDRIVE_CLIENT_SECRET",
    "onedrive_redirect_uri": f"{ENV_PREFIX}ONEDRIVE_REDIRECT_URI",
    "oauth_url": f"{ENV_PREFIX}OAUTH_URL",
    "oauth_scope": f"{ENV_PREFIX}OAUTH_SCOPE",
    "api_host": f"{ENV_PREFIX}API_HOST",
    "access_token": f"{ENV_PREFIX}ACCESS_TOKEN",
    "exposed_path": f"{ENV_PREFIX}EXPOSED_PATH",
    "request_timeout": f"{ENV_PREFIX}REQUEST_TIMEOUT",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "transport": "http",
    "server_name": DEFAULT_SERVER_NAME,
    "server_version": DEFAULT_SERVER_VERSION,
    "environment": "development",
    "log_level": "INFO",
    "enable_sse": True,
    "enable_metrics": False,
    "http_host": DEFAULT_HTTP_HOST,
    "http_port": DEFAULT_HTTP_PORT,
    "http_socket_path": None,
    "http_path": DEFAULT_HTTP_PATH,
    "sse_path": DEFAULT_SSE_PATH,
    "metrics_path": DEFAULT_METRICS_PATH,
    "ping_interval": DEFAULT_PING_INTERVAL,
    "client_timeout": DEFAULT_CLIENT_TIMEOUT,
    "sse_queue_size": DEFAULT_SSE_QUEUE_SIZE,
    "onedrive_client_id": "",
    "onedrive_client_secret": "",
    "onedrive_redirect_uri": DEFAULT_REDIRECT_URI,
    "oauth_url": DEFAULT_OAUTH_URL,
    "oauth_scope": DEFAULT_OAUTH_SCOPE,
    "api_host": DEFAULT_API_HOST,
    "access_token": None,
    "exposed_path": "/",
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
}

# Never written back to a generated config file.
_SECRET_FIELDS = frozenset({"onedrive_client_secret", "access_token"})


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the FODI MCP server."""

    transport: str
    server_name: str
    server_version: str
    environment: str
    log_level: str
    enable_sse: bool
    enable_metrics: bool
    http_host: str
    http_port: int
    http_socket_path: Path | None
    http_path: str
    sse_path: str
    metrics_path: str
    ping_interval: timedelta
    client_timeout: timedelta
    sse_queue_size: int
    onedrive_client_id: str
    onedrive_client_secret: str
    onedrive_redirect_uri: str
    oauth_url: str
    oauth_scope: str
    api_host: str
    access_token: str | None
    exposed_path: str
    request_timeout: timedelta
    config_file: Path | None = None


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(environ if environ is not None else os.environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fodi-mcp",
        description="FODI MCP server configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file (written on first run when missing). Default: none.",
    )
    parser.add_argument(
        "--transport",
        dest="transport",
        metavar="MODE",
        help="Transport to serve: http or stdio (default: http).",
    )
    parser.add_argument("--server-name", dest="server_name", metavar="NAME", help=f"Advertised server name (default: {DEFAULT_SERVER_NAME}).")
    parser.add_argument("--server-version", dest="server_version", metavar="VERSION", help=f"Advertised server version (default: {DEFAULT_SERVER_VERSION}).")
    parser.add_argument("--environment", dest="environment", metavar="ENV", help="development or production (default: development).")
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help="Logging level (default: INFO).")

    parser.add_argument(
        "--enable-sse",
        dest="enable_sse",
        metavar="BOOL",
        help="Enable the SSE change stream (default: true).",
    )
    parser.add_argument(
        "--enable-metrics",
        dest="enable_metrics",
        metavar="BOOL",
        help="Expose Prometheus metrics (default: false).",
    )

    parser.add_argument(
        "--http-host",
        dest="http_host",
        metavar="HOST",
        help=f"HTTP listener host (default: {DEFAULT_HTTP_HOST}).",
    )
    parser.add_argument(
        "--http-port",
        dest="http_port",
        metavar="PORT",
        help=f"HTTP listener port (default: {DEFAULT_HTTP_PORT}).",
    )
    parser.add_argument(
        "--http-socket-path",
        dest="http_socket_path",
        metavar="PATH",
        help="Unix domain socket path for the HTTP listener (optional).",
    )
    parser.add_argument(
        "--http-path",
        dest="http_path",
        metavar="PATH",
        help=f"JSON-RPC path for MCP requests (default: {DEFAULT_HTTP_PATH}).",
    )
    parser.add_argument(
        "--sse-path",
        dest="sse_path",
        metavar="PATH",
        help=f"SSE stream path (default: {DEFAULT_SSE_PATH}).",
    )
    parser.add_argument(
        "--metrics-path",
        dest="metrics_path",
        metavar="PATH",
        help=f"Metrics endpoint path (default: {DEFAULT_METRICS_PATH}).",
    )

    parser.add_argument("--ping-interval", dest="ping_interval", metavar="DURATION", help="SSE liveness sweep period (default: 15s).")
    parser.add_argument("--client-timeout", dest="client_timeout", metavar="DURATION", help="Evict SSE clients silent for longer than this (default: 30s).")
    parser.add_argument(
        "--sse-queue-size",
        dest="sse_queue_size",
        metavar="INT",
        help=f"Pending SSE frames per client before it is treated as gone (default: {DEFAULT_SSE_QUEUE_SIZE}).",
    )

    parser.add_argument("--onedrive-client-id", dest="onedrive_client_id", metavar="ID", help="OAuth application (client) id.")
    parser.add_argument("--onedrive-client-secret", dest="onedrive_client_secret", metavar="SECRET", help="OAuth client secret.")
    parser.add_argument(
        "--onedrive-redirect-uri",
        dest="onedrive_redirect_uri",
        metavar="URI",
        help=f"OAuth redirect URI (default: {DEFAULT_REDIRECT_URI}).",
    )
    parser.add_argument("--oauth-url", dest="oauth_url", metavar="URL", help=f"OAuth authority base URL (default: {DEFAULT_OAUTH_URL}).")
    parser.add_argument("--oauth-scope", dest="oauth_scope", metavar="SCOPE", help=f"OAuth scopes (default: {DEFAULT_OAUTH_SCOPE}).")
    parser.add_argument("--api-host", dest="api_host", metavar="URL", help=f"Drive API host (default: {DEFAULT_API_HOST}).")
    parser.add_argument("--access-token", dest="access_token", metavar="TOKEN", help="Pre-issued drive access token (optional).")
    parser.add_argument("--exposed-path", dest="exposed_path", metavar="PATH", help="Drive folder exposed as the root (default: /).")
    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        metavar="DURATION",
        help="Timeout for drive and OAuth HTTP calls (default: 30s).",
    )

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    transport = _parse_choice(values.get("transport"), field="transport", choices=TRANSPORTS)
    environment = _parse_choice(values.get("environment"), field="environment", choices=ENVIRONMENTS)
    log_level = str(values.get("log_level", DEFAULT_VALUES["log_level"])).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    enable_sse = _parse_bool(values.get("enable_sse"), default=DEFAULT_VALUES["enable_sse"])
    enable_metrics = _parse_bool(values.get("enable_metrics"), default=DEFAULT_VALUES["enable_metrics"])
    if enable_metrics and transport != "http":
        raise ConfigError("enable_metrics requires the http transport")

    http_host = str(values.get("http_host", DEFAULT_VALUES["http_host"]))
    http_port = _parse_int(values.get("http_port", DEFAULT_VALUES["http_port"]), field="http_port", minimum=0, maximum=65535)
    http_socket_path = _parse_optional_path(values.get("http_socket_path"), field="http_socket_path")

    http_path = _parse_route(values.get("http_path", DEFAULT_VALUES["http_path"]), field="http_path")
    sse_path = _parse_route(values.get("sse_path", DEFAULT_VALUES["sse_path"]), field="sse_path")
    metrics_path = _parse_route(values.get("metrics_path", DEFAULT_VALUES["metrics_path"]), field="metrics_path")
    if http_path == sse_path:
        raise ConfigError("http_path and sse_path must be distinct")

    ping_interval = _parse_duration(values.get("ping_interval", DEFAULT_VALUES["ping_interval"]), default_unit="s", field="ping_interval")
    client_timeout = _parse_duration(values.get("client_timeout", DEFAULT_VALUES["client_timeout"]), default_unit="s", field="client_timeout")
    if ping_interval.total_seconds() <= 0:
        raise ConfigError("ping_interval must be greater than zero")
    if client_timeout <= ping_interval:
        raise ConfigError("client_timeout must be longer than ping_interval")
    sse_queue_size = _parse_int(values.get("sse_queue_size", DEFAULT_VALUES["sse_queue_size"]), field="sse_queue_size", minimum=1)
    request_timeout = _parse_duration(values.get("request_timeout", DEFAULT_VALUES["request_timeout"]), default_unit="s", field="request_timeout")

    access_token_value = values.get("access_token")
    access_token = str(access_token_value).strip() if access_token_value is not None else ""

    exposed_path = str(values.get("exposed_path") or "/").strip() or "/"
    if not exposed_path.startswith("/"):
        exposed_path = "/" + exposed_path

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        transport=transport,
        server_name=str(values.get("server_name", DEFAULT_SERVER_NAME)),
        server_version=str(values.get("server_version", DEFAULT_SERVER_VERSION)),
        environment=environment,
        log_level=log_level,
        enable_sse=enable_sse,
        enable_metrics=enable_metrics,
        http_host=http_host,
        http_port=http_port,
        http_socket_path=http_socket_path,
        http_path=http_path,
        sse_path=sse_path,
        metrics_path=metrics_path,
        ping_interval=ping_interval,
        client_timeout=client_timeout,
        sse_queue_size=sse_queue_size,
        onedrive_client_id=str(values.get("onedrive_client_id") or ""),
        onedrive_client_secret=str(values.get("onedrive_client_secret") or ""),
        onedrive_redirect_uri=str(values.get("onedrive_redirect_uri") or DEFAULT_REDIRECT_URI),
        oauth_url=str(values.get("oauth_url") or DEFAULT_OAUTH_URL),
        oauth_scope=str(values.get("oauth_scope") or DEFAULT_OAUTH_SCOPE),
        api_host=str(values.get("api_host") or DEFAULT_API_HOST),
        access_token=access_token or None,
        exposed_path=exposed_path,
        request_timeout=request_timeout,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    payload = {
        "transport": config.transport,
        "server_name": config.server_name,
        "server_version": config.server_version,
        "environment": config.environment,
        "log_level": config.log_level,
        "enable_sse": config.enable_sse,
        "enable_metrics": config.enable_metrics,
        "http_host": config.http_host,
        "http_port": config.http_port,
        "http_socket_path": str(config.http_socket_path) if config.http_socket_path else None,
        "http_path": config.http_path,
        "sse_path": config.sse_path,
        "metrics_path": config.metrics_path,
        "ping_interval": _format_duration(config.ping_interval, preferred_unit="s"),
        "client_timeout": _format_duration(config.client_timeout, preferred_unit="s"),
        "sse_queue_size": config.sse_queue_size,
        "onedrive_client_id": config.onedrive_client_id,
        "onedrive_redirect_uri": config.onedrive_redirect_uri,
        "oauth_url": config.oauth_url,
        "oauth_scope": config.oauth_scope,
        "api_host": config.api_host,
        "exposed_path": config.exposed_path,
        "request_timeout": _format_duration(config.request_timeout, preferred_unit="s"),
    }
    return {key: value for key, value in payload.items() if key not in _SECRET_FIELDS}


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_seconds = int(duration.total_seconds())
    factor = T_DURATION_UNITS.get(preferred_unit, 1)
    if factor and total_seconds % factor == 0:
        return f"{total_seconds // factor}{preferred_unit}"
    return f"{total_seconds}s"


def _parse_choice(value: Any, *, field: str, choices: Sequence[str]) -> str:
    cleaned = str(value if value is not None else DEFAULT_VALUES[field]).strip().lower()
    if cleaned not in choices:
        raise ConfigError(f"{field} must be one of: {', '.join(choices)}")
    return cleaned


def _parse_route(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field} must be a non-empty path")
    path = value.strip()
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in BOOL_TRUE:
            return True
        if lowered in BOOL_FALSE:
            return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    suffix = stripped[-1]
    number_part = stripped
    if suffix.lower() in T_DURATION_UNITS:
        unit = suffix.lower()
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a positive integer optionally suffixed with s, m, or h")
    amount = int(number_part)
    seconds = amount * T_DURATION_UNITS[unit]
    return timedelta(seconds=seconds)


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
