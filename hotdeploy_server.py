"""hotdeploy: Host service entry point

Runs the debug service over a directory of units:

    python hotdeploy_server.py --plugins-dir ./plugins [--config FILE]

- Logging to stderr (plus an optional --log-file)
- Config from --config, $HOTDEPLOY_CONFIG, or ./hotdeploy-config.json
- $HOTDEPLOY_AUTH_TOKEN overrides the stored token and turns auth on
- SIGINT/SIGTERM stop the listener and unload every unit
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import signal
import sys

# Ensure the project directory is importable when launched by path
_HOTDEPLOY_DIR = os.path.dirname(os.path.abspath(__file__))
if _HOTDEPLOY_DIR not in sys.path:
    sys.path.insert(0, _HOTDEPLOY_DIR)

from core.config import DEFAULT_CONFIG_FILENAME, ConfigStore
from core.debug_server import DebugService
from core.dispatcher import DEFAULT_SELF_ID
from core.plugin_manager import DirectoryPluginManager
from models.models import DebugConfig


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Log to stderr, plus log_file when given (a bad path is reported and skipped)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"WARNING: cannot open log file {log_file!r} ({e}); logging to stderr only",
                  file=sys.stderr)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="hotdeploy debug service")
    parser.add_argument(
        "--config", type=str,
        default=os.environ.get("HOTDEPLOY_CONFIG", DEFAULT_CONFIG_FILENAME),
        help="Config file path (default: $HOTDEPLOY_CONFIG or ./hotdeploy-config.json)",
    )
    parser.add_argument(
        "--plugins-dir", type=str, default="plugins",
        help="Managed root holding one directory per unit (default: ./plugins)",
    )
    parser.add_argument("--host", type=str, default=None, help="Override the configured listen host")
    parser.add_argument("--port", type=int, default=None, help="Override the configured listen port")
    parser.add_argument(
        "--self-id", type=str, default=DEFAULT_SELF_ID,
        help=f"Identity the service protects from reload/unregister (default: {DEFAULT_SELF_ID})",
    )
    parser.add_argument("--no-scan", action="store_true", help="Do not register existing units at startup")
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path (in addition to stderr)")
    return parser


def resolve_config(store: ConfigStore, args: argparse.Namespace, logger: logging.Logger) -> DebugConfig:
    config = store.load()
    overrides = config.to_dict()
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if "HOTDEPLOY_AUTH_TOKEN" in os.environ:
        token = os.environ["HOTDEPLOY_AUTH_TOKEN"].strip()
        if not token:
            logger.error(
                "HOTDEPLOY_AUTH_TOKEN env var is set but empty. "
                "Refusing to start with empty auth token (fail-closed)."
            )
            sys.exit(1)
        overrides["authToken"] = token
        overrides["enableAuth"] = True
    return DebugConfig.from_dict(overrides)


async def run_service(args: argparse.Namespace, logger: logging.Logger) -> None:
    store = ConfigStore(args.config)
    config = resolve_config(store, args, logger)
    if config.enable_auth and not config.auth_token:
        logger.warning("enableAuth is set but authToken is empty; auth stays off")

    manager = DirectoryPluginManager(args.plugins_dir)
    service = DebugService(manager, store, self_id=args.self_id, config=config)
    if not args.no_scan:
        await manager.scan_units()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported on this platform", sig)

    await service.start()
    print(
        f"hotdeploy debug service on {service.server.url} "
        f"(root={manager.managed_root}, auth={'enabled' if config.auth_active else 'disabled'})",
        file=sys.stderr,
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await service.stop()
        await manager.shutdown()


def main():
    args = build_parser().parse_args()
    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("hotdeploy.server")
    try:
        asyncio.run(run_service(args, logger))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical("Server startup failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
