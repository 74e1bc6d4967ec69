"""Gateway entrypoint. Loads config, wires credentials and transport, serves HTTP/WS."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from aiohttp import web
from loguru import logger

from imgate import __version__
from imgate.config import Config, cfg, load_config_with_env
from imgate.core.errors import GatewayConfigurationError
from imgate.identity import CredentialProvider, DevCredentialProvider, SigningClient
from imgate.server import GatewayServer, loop_exception_handler
from imgate.transport import load_transport_factory

# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["aiohttp.access", "aiohttp.server", "aiohttp.web", "httpx", "httpcore"]
# httpx and httpcore log every request at INFO
_QUIET_LIBRARIES = ("httpx", "httpcore")


def _intercept_logging(level: str) -> None:
    """Route stdlib logging from aiohttp/httpx to loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                log_level: str | int = logger.level(record.levelname).name
            except ValueError:
                log_level = record.levelno
            msg = record.getMessage().replace("{", "{{").replace("}", "}}")
            logger.patch(
                lambda r: r.update(
                    name=record.name,
                    function=record.funcName,
                    line=record.lineno,
                ),
            ).opt(exception=record.exc_info).log(log_level, msg)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel("WARNING" if lib in _QUIET_LIBRARIES and level != "DEBUG" else level)


def _safe_message_filter(record: Any) -> bool:
    """Escape braces/angles in log messages to prevent format/tag errors."""
    if isinstance(record.get("message"), str):
        msg = record["message"]
        msg = msg.replace("{", "{{").replace("}", "}}").replace("<", "\\<")
        record["message"] = msg
    return True


def setup_logging(verbose: bool = False) -> None:
    """Configure loguru. Replace default logging.
    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"),
        filter=_safe_message_filter,
    )
    _intercept_logging(level)


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path)
    cfg.reload(data)
    return cfg


def build_credentials(config: Config) -> CredentialProvider:
    """Signing client when a signing URL is set; dev credentials for the loopback transport."""
    if config.signing_base_url:
        logger.info("Signing endpoint configured: {}", config.signing_base_url)
        return SigningClient(config.signing_base_url, timeout=config.signing_timeout_seconds)
    if config.transport_factory == "loopback":
        logger.warning("signing_base_url not set; using dev credentials with the loopback transport")
        return DevCredentialProvider()
    raise GatewayConfigurationError(
        "signing_base_url is required for a non-loopback transport",
        code="missing_signing_url",
    )


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="imgate: multi-session messaging backend gateway")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.config.exists():
        logger.error("Config file not found: {}", args.config)
        sys.exit(1)

    try:
        config = reload_config(args.config)
        credentials = build_credentials(config)
        transport_factory = load_transport_factory(config.transport_factory)
    except GatewayConfigurationError as exc:
        logger.error("Invalid configuration: {}", exc)
        sys.exit(1)
    logger.info("Config loaded from {}", args.config)

    server = GatewayServer(config, credentials=credentials, transport_factory=transport_factory)
    asyncio.run(_run(server, config, args.config))


async def _run(server: GatewayServer, config: Config, config_path: Path) -> None:
    """Serve until SIGINT/SIGTERM; SIGHUP reloads config."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(loop_exception_handler)

    stop = asyncio.Event()

    def on_sighup() -> None:
        try:
            server.apply_config(reload_config(config_path))
        except GatewayConfigurationError as exc:
            logger.error("Config reload rejected: {}", exc)
            return
        logger.info("Config reloaded (SIGHUP)")

    loop.add_signal_handler(signal.SIGHUP, on_sighup)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info("Gateway listening on {}:{} (ws path {})", config.host, config.port, config.ws_path)

    try:
        await stop.wait()
    finally:
        logger.info("Gateway shutting down")
        await runner.cleanup()


if __name__ == "__main__":
    main()
