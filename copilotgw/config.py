"""Configuration loading and validation for mini-copilotgw."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional


DEFAULT_MODEL = "qwen3-coder:30b"
DEFAULT_PROMPT_TEMPLATE = "<|fim_prefix|> {{ prefix }} <|fim_suffix|>{{ suffix }} <|fim_middle|>"
DEFAULT_ENGINES = ["copilot-codex", "chat-control", "gpt-4o-copilot"]
DEFAULT_ARTIFACTS = ["```", "python"]


class ConfigError(RuntimeError):
    """Configuration error exception

    This exception is raised whenever the configuration
    file or a command line override is invalid
    """


@dataclass(slots=True)
class ListenConfig:
    """Internal application listeners.

    ``port`` serves plaintext HTTP, ``tls_port`` serves HTTPS with either the
    configured certificate or a self-issued one."""

    host: str = "127.0.0.1"
    port: int = 11437
    tls_port: int = 11436


@dataclass(slots=True)
class ProxyConfig:
    """Fixed public ports relayed byte-for-byte to the internal listeners."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 11438
    tls_port: int = 11435


@dataclass(slots=True)
class TLSConfig:
    cert: Optional[str] = None
    key: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.cert and self.key)


@dataclass(slots=True)
class BackendSettings:
    """Generation backend

    ``num_predict`` is the server side ceiling for the number of generated
    tokens; clients can ask for less but never for more."""

    type: str = "ollama"
    base_url: Optional[str] = None
    model: str = DEFAULT_MODEL
    num_predict: int = 200
    request_timeout_s: Optional[float] = None
    keep_alive: Optional[str] = None
    check_on_startup: bool = True


@dataclass(slots=True)
class CompletionConfig:
    timeout_s: float = 60.0
    engines: List[str] = field(default_factory=lambda: list(DEFAULT_ENGINES))
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    system_template: Optional[str] = None
    context_lines_before: int = 60
    context_lines_after: int = 60
    filter_artifacts: bool = True
    artifacts: List[str] = field(default_factory=lambda: list(DEFAULT_ARTIFACTS))
    match_request_language: bool = False


@dataclass(slots=True)
class LoggingConfig:
    """Logging configuration

    Specifies the log level, if we should redact the prompts and if we should
    run an access log"""

    level: str = "INFO"
    redact_prompts: bool = True
    access_log: bool = True
    file: Optional[str] = None


@dataclass(slots=True)
class Settings:
    listen: ListenConfig = field(default_factory=ListenConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)
    backend: BackendSettings = field(default_factory=BackendSettings)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    headers: Dict[str, str] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _load_list(value: Any, ctx: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Expected list for {ctx}")
    return value


def _load_mapping(value: Any, ctx: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected mapping for {ctx}")
    return value


def _load_int(value: Any, ctx: str, *, minimum: Optional[int] = None) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Expected integer for {ctx}") from exc
    if minimum is not None and result < minimum:
        raise ConfigError(f"{ctx} must be >= {minimum}")
    return result


def _load_port(value: Any, ctx: str) -> int:
    port = _load_int(value, ctx, minimum=0)
    if port > 65535:
        raise ConfigError(f"{ctx} must be a valid TCP port")
    return port


def _load_float(value: Any, ctx: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Expected number for {ctx}") from exc
    if result <= 0:
        raise ConfigError(f"{ctx} must be positive")
    return result


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _load_listen(raw: Mapping[str, Any]) -> ListenConfig:
    defaults = ListenConfig()
    return ListenConfig(
        host=str(raw.get("host", defaults.host)),
        port=_load_port(raw.get("port", defaults.port), "listen.port"),
        tls_port=_load_port(raw.get("tls_port", defaults.tls_port), "listen.tls_port"),
    )


def _load_proxy(raw: Mapping[str, Any]) -> ProxyConfig:
    defaults = ProxyConfig()
    return ProxyConfig(
        enabled=bool(raw.get("enabled", defaults.enabled)),
        host=str(raw.get("host", defaults.host)),
        port=_load_port(raw.get("port", defaults.port), "proxy.port"),
        tls_port=_load_port(raw.get("tls_port", defaults.tls_port), "proxy.tls_port"),
    )


def _load_tls(raw: Mapping[str, Any]) -> TLSConfig:
    return TLSConfig(cert=_optional_str(raw.get("cert")), key=_optional_str(raw.get("key")))


def _load_backend(raw: Mapping[str, Any]) -> BackendSettings:
    defaults = BackendSettings()
    timeout = raw.get("request_timeout_s")
    return BackendSettings(
        type=str(raw.get("type", defaults.type)),
        base_url=_optional_str(raw.get("base_url")),
        model=str(raw.get("model", defaults.model)),
        num_predict=_load_int(raw.get("num_predict", defaults.num_predict), "backend.num_predict", minimum=1),
        request_timeout_s=_load_float(timeout, "backend.request_timeout_s") if timeout is not None else None,
        keep_alive=_optional_str(raw.get("keep_alive")),
        check_on_startup=bool(raw.get("check_on_startup", defaults.check_on_startup)),
    )


def _load_completion(raw: Mapping[str, Any]) -> CompletionConfig:
    defaults = CompletionConfig()
    engines = [str(item) for item in _load_list(raw.get("engines"), "completion.engines")]
    artifacts_raw = raw.get("artifacts")
    artifacts = (
        [str(item) for item in _load_list(artifacts_raw, "completion.artifacts")]
        if artifacts_raw is not None
        else list(defaults.artifacts)
    )
    return CompletionConfig(
        timeout_s=_load_float(raw.get("timeout_s", defaults.timeout_s), "completion.timeout_s"),
        engines=engines or list(defaults.engines),
        prompt_template=str(raw.get("prompt_template", defaults.prompt_template)),
        system_template=_optional_str(raw.get("system_template")),
        context_lines_before=_load_int(
            raw.get("context_lines_before", defaults.context_lines_before),
            "completion.context_lines_before",
            minimum=1,
        ),
        context_lines_after=_load_int(
            raw.get("context_lines_after", defaults.context_lines_after),
            "completion.context_lines_after",
            minimum=1,
        ),
        filter_artifacts=bool(raw.get("filter_artifacts", defaults.filter_artifacts)),
        artifacts=artifacts,
        match_request_language=bool(raw.get("match_request_language", defaults.match_request_language)),
    )


def _load_logging(raw: Mapping[str, Any]) -> LoggingConfig:
    return LoggingConfig(
        level=str(raw.get("level", "INFO")),
        redact_prompts=bool(raw.get("redact_prompts", True)),
        access_log=bool(raw.get("access_log", True)),
        file=_optional_str(raw.get("file")),
    )


def parse_settings(data: Any) -> Settings:
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must contain an object")

    headers = {
        str(name): str(value)
        for name, value in _load_mapping(data.get("headers"), "headers").items()
    }

    return Settings(
        listen=_load_listen(_load_mapping(data.get("listen"), "listen")),
        proxy=_load_proxy(_load_mapping(data.get("proxy"), "proxy")),
        tls=_load_tls(_load_mapping(data.get("tls"), "tls")),
        backend=_load_backend(_load_mapping(data.get("backend"), "backend")),
        completion=_load_completion(_load_mapping(data.get("completion"), "completion")),
        headers=headers,
        logging=_load_logging(_load_mapping(data.get("logging"), "logging")),
    )


def load_settings(path: Optional[Path]) -> Settings:
    """Load settings from ``path``; without a path all defaults apply."""
    if path is None:
        return Settings()
    return parse_settings(_load_json(path))


def _load_json(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file missing: {path}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc


__all__ = [
    "BackendSettings",
    "CompletionConfig",
    "ConfigError",
    "DEFAULT_ARTIFACTS",
    "DEFAULT_ENGINES",
    "DEFAULT_MODEL",
    "DEFAULT_PROMPT_TEMPLATE",
    "ListenConfig",
    "LoggingConfig",
    "ProxyConfig",
    "Settings",
    "TLSConfig",
    "load_settings",
    "parse_settings",
]
