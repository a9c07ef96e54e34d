"""Console entry point for the gateway."""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import httpx
from daemonize import Daemonize

from .config import ConfigError, Settings, load_settings
from .errors import CopilotGatewayError
from .log import configure_logging
from .sse import decode_records

DEFAULT_PIDFILE = "mini-copilotgw.pid"


def parse_port(value: str) -> int:
    """Accept ``11437``, ``:11437`` or ``host:11437`` style port arguments."""
    text = value.strip()
    if ":" in text:
        text = text.rsplit(":", 1)[1]
    try:
        port = int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from exc
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value!r}")
    return port


def _resolve_config_path(config: Optional[str]) -> Optional[Path]:
    if config:
        return Path(config)
    env_path = os.environ.get("COPILOTGW_CONFIG")
    if env_path:
        return Path(env_path)
    return None


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Apply command line flags on top of the loaded configuration."""
    listen = settings.listen
    if getattr(args, "host", None):
        listen = replace(listen, host=args.host)
    if getattr(args, "port", None) is not None:
        listen = replace(listen, port=args.port)
    if getattr(args, "port_ssl", None) is not None:
        listen = replace(listen, tls_port=args.port_ssl)

    proxy = settings.proxy
    if getattr(args, "proxy_port", None) is not None:
        proxy = replace(proxy, port=args.proxy_port)
    if getattr(args, "proxy_port_ssl", None) is not None:
        proxy = replace(proxy, tls_port=args.proxy_port_ssl)
    if getattr(args, "no_proxy", False):
        proxy = replace(proxy, enabled=False)

    tls = settings.tls
    if getattr(args, "cert", None):
        tls = replace(tls, cert=args.cert)
    if getattr(args, "key", None):
        tls = replace(tls, key=args.key)

    backend = settings.backend
    if getattr(args, "model", None):
        backend = replace(backend, model=args.model)
    if getattr(args, "num_predict", None) is not None:
        if args.num_predict < 1:
            raise ConfigError("--num-predict must be positive")
        backend = replace(backend, num_predict=args.num_predict)
    if getattr(args, "ollama_host", None):
        backend = replace(backend, base_url=args.ollama_host)

    completion = settings.completion
    if getattr(args, "prompt_template", None):
        completion = replace(completion, prompt_template=args.prompt_template)

    logging_cfg = settings.logging
    if getattr(args, "verbose", False):
        logging_cfg = replace(logging_cfg, level="DEBUG")
    if getattr(args, "log_file", None):
        logging_cfg = replace(logging_cfg, file=args.log_file)

    return replace(
        settings,
        listen=listen,
        proxy=proxy,
        tls=tls,
        backend=backend,
        completion=completion,
        logging=logging_cfg,
    )


def _load(args: argparse.Namespace) -> Settings:
    try:
        settings = load_settings(_resolve_config_path(getattr(args, "config", None)))
        return apply_overrides(settings, args)
    except ConfigError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        sys.exit(1)


def _serve(settings: Settings) -> None:
    # imported lazily so the management commands stay light
    from .runtime import GatewayRuntime

    configure_logging(settings.logging)
    runtime = GatewayRuntime(settings)
    try:
        asyncio.run(runtime.serve())
    except (CopilotGatewayError, ConfigError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def _command_start(args: argparse.Namespace) -> None:
    settings = _load(args)

    if not getattr(args, "background", False):
        print(
            f"mini-copilotgw starting in foreground on http://{settings.listen.host}:{settings.listen.port}"
            f" and https://{settings.listen.host}:{settings.listen.tls_port}"
        )
        _serve(settings)
        return

    pid_path = Path(args.pidfile or DEFAULT_PIDFILE).resolve()
    if pid_path.exists():
        try:
            existing_pid = int(pid_path.read_text().strip())
        except (OSError, ValueError):
            existing_pid = None
        if existing_pid and _pid_is_active(existing_pid):
            print(f"[error] mini-copilotgw appears to be running already (PID {existing_pid})", file=sys.stderr)
            sys.exit(1)
        try:
            pid_path.unlink()
        except OSError as exc:
            print(f"[warning] Failed to remove stale pidfile {pid_path}: {exc}", file=sys.stderr)

    daemon = Daemonize(
        app="mini-copilotgw",
        pid=str(pid_path),
        action=lambda: _serve(settings),
        chdir=str(Path.cwd()),
    )
    print(f"mini-copilotgw starting in background (pidfile {pid_path})")
    try:
        daemon.start()
    except Exception as exc:  # pragma: no cover - daemonization failure
        print(f"[error] Failed to daemonize mini-copilotgw: {exc}", file=sys.stderr)
        sys.exit(1)


def _pid_is_active(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _command_stop(args: argparse.Namespace) -> None:
    pid_path = Path(args.pidfile or DEFAULT_PIDFILE).resolve()
    try:
        pid = int(pid_path.read_text().strip())
    except (OSError, ValueError) as exc:
        print(f"[error] Unable to read pidfile {pid_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(f"[error] No process with PID {pid}", file=sys.stderr)
        sys.exit(1)
    print(f"Sent SIGTERM to PID {pid}")


def _base_url(args: argparse.Namespace, settings: Settings) -> str:
    if args.url:
        return args.url.rstrip("/")
    return f"http://{settings.listen.host}:{settings.listen.port}"


def _command_health(args: argparse.Namespace) -> None:
    settings = _load(args)
    url = f"{_base_url(args, settings)}/health"
    try:
        with httpx.Client(timeout=args.timeout, verify=False) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        print(f"[error] Health request failed: {exc}", file=sys.stderr)
        sys.exit(1)
    if response.status_code >= 400:
        print(f"[error] Health endpoint returned {response.status_code}: {response.text}", file=sys.stderr)
        sys.exit(1)
    status = response.json().get("status", "unknown")
    print(status)
    if status != "ok":
        sys.exit(1)


def _command_probe(args: argparse.Namespace) -> None:
    settings = _load(args)
    prefix = sys.stdin.read()
    if not prefix:
        print("[error] No input received on stdin", file=sys.stderr)
        sys.exit(1)

    url = f"{_base_url(args, settings)}/v1/engines/{args.engine}/completions"
    payload = {
        "prompt": prefix,
        "suffix": args.suffix,
        "max_tokens": args.max_tokens,
        "temperature": 0.0,
        "top_p": 1.0,
        "n": 1,
        "stop": ["\n\n"],
        "stream": True,
        "extra": {"language": args.language},
    }
    try:
        with httpx.Client(timeout=args.timeout, verify=False) as client:
            response = client.post(url, json=payload)
    except httpx.HTTPError as exc:
        print(f"[error] Completion request failed: {exc}", file=sys.stderr)
        sys.exit(1)
    if response.status_code >= 400:
        print(f"[error] Completion endpoint returned {response.status_code}: {response.text}", file=sys.stderr)
        sys.exit(1)

    text = "".join(record["choices"][0]["text"] for record in decode_records(response.content) if record.get("choices"))
    print(text)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="JSON configuration file (default: $COPILOTGW_CONFIG)")

    start_parent = argparse.ArgumentParser(add_help=False, parents=[common])
    start_parent.add_argument("--host", help="Host for the internal listeners")
    start_parent.add_argument("--port", type=parse_port, help="Port for the plaintext listener (default :11437)")
    start_parent.add_argument("--port-ssl", type=parse_port, help="Port for the TLS listener (default :11436)")
    start_parent.add_argument("--proxy-port", type=parse_port, help="Public plaintext port (default :11438)")
    start_parent.add_argument("--proxy-port-ssl", type=parse_port, help="Public TLS port (default :11435)")
    start_parent.add_argument("--no-proxy", action="store_true", help="Do not relay the public ports")
    start_parent.add_argument("--cert", help="Certificate file path *.crt")
    start_parent.add_argument("--key", help="Key file path *.key")
    start_parent.add_argument("--model", help="LLM model to use")
    start_parent.add_argument("--num-predict", type=int, help="Maximum number of tokens to predict")
    start_parent.add_argument("--prompt-template", help="Fill-in-middle template to apply in prompt")
    start_parent.add_argument("--ollama-host", help="Ollama base URL (default: $OLLAMA_HOST)")
    start_parent.add_argument("--verbose", action="store_true", help="Enable verbose mode")
    start_parent.add_argument("--log-file", help="Write logs to this file")
    start_parent.add_argument("--background", action="store_true", help="Run as a daemon")
    start_parent.add_argument("--pidfile", help=f"Pidfile for background mode (default: ./{DEFAULT_PIDFILE})")

    parser = argparse.ArgumentParser(description="Copilot compatible completion gateway for Ollama", parents=[start_parent])
    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Start the gateway", parents=[start_parent])
    start_parser.set_defaults(func=_command_start)

    stop_parser = subparsers.add_parser("stop", help="Stop a background gateway")
    stop_parser.add_argument("--pidfile", help=f"Pidfile of the running gateway (default: ./{DEFAULT_PIDFILE})")
    stop_parser.set_defaults(func=_command_stop)

    health_parser = subparsers.add_parser("health", help="Query the health endpoint", parents=[common])
    health_parser.add_argument("--url", help="Base URL of the gateway (default from configuration)")
    health_parser.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout in seconds")
    health_parser.set_defaults(func=_command_health)

    probe_parser = subparsers.add_parser("probe", help="Request a completion for the prefix read from stdin", parents=[common])
    probe_parser.add_argument("--url", help="Base URL of the gateway (default from configuration)")
    probe_parser.add_argument("--engine", default="copilot-codex", help="Engine alias to call")
    probe_parser.add_argument("--language", default="python", help="Language hint")
    probe_parser.add_argument("--suffix", default="", help="Text after the cursor")
    probe_parser.add_argument("--max-tokens", type=int, default=64, help="Requested token budget")
    probe_parser.add_argument("--timeout", type=float, default=120.0, help="HTTP timeout in seconds")
    probe_parser.set_defaults(func=_command_probe)

    parser.set_defaults(func=_command_start)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
