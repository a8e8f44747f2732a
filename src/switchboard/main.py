from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional

from .config.config_parser import load_settings
from .config.logging_config import init_logging
from .config.settings import ProxySettings
from .dnssec.keystore import KeyStore, load_keys
from .errors import KeyLoadError
from .servers.dispatcher import Dispatcher
from .servers.tcp_server import TCPServer
from .servers.udp_server import UDPServer

logger = logging.getLogger("switchboard.main")


def build_parser() -> argparse.ArgumentParser:
    """Brief: Command-line parser; every flag overrides the YAML file."""

    parser = argparse.ArgumentParser(
        prog="switchboard",
        description="DNS reverse proxy routing queries to backend servers by domain suffix",
    )
    parser.add_argument("--config", default=None, help="Path to YAML config (optional)")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a configuration variable (repeatable; overrides env and config)",
    )
    parser.add_argument("--address", default=None, help="Listen address, e.g. ':53' or '[::]:53'")
    parser.add_argument("--default", default=None, help="Default backend HOST:PORT")
    parser.add_argument(
        "--route",
        action="append",
        default=[],
        metavar="SUFFIX=BACKEND[,BACKEND]",
        help="Route a domain suffix to backend(s) (repeatable)",
    )
    parser.add_argument(
        "--allow-transfer",
        action="append",
        default=[],
        metavar="IP[,IP]",
        help="Client IPs/CIDRs allowed to request zone transfers (repeatable)",
    )
    parser.add_argument("--key-dir", default=None, help="Directory holding MX signing keys")
    parser.add_argument("--log-level", default=None, help="debug, info, warn, error or crit")
    return parser


def load_key_store(settings: ProxySettings) -> KeyStore:
    """Brief: Load signing keys when MX synthesis has zones to answer.

    Inputs:
      - settings: Runtime settings.

    Outputs:
      - KeyStore; empty when synthesis is off, no zones are configured or no
        key directory is set. Raises KeyLoadError on a broken key directory.
    """

    if not (settings.mx_synthesis and settings.mail_zones):
        return KeyStore()
    if not settings.key_dir:
        logger.warning(
            "MX synthesis configured for %d zone(s) but no key directory is set; MX queries will be proxied",
            len(settings.mail_zones),
        )
        return KeyStore()
    return load_keys(settings.key_dir)


def start_listeners(settings: ProxySettings, dispatcher: Dispatcher) -> list:
    """Brief: Bind the enabled listeners and start one serving thread each.

    Inputs:
      - settings: Runtime settings (listen address and transports).
      - dispatcher: Shared Dispatcher.

    Outputs:
      - list of started UDPServer/TCPServer objects. A bind failure stops any
        listener already started and re-raises the OSError.
    """

    servers: list = []
    try:
        if settings.listen_udp:
            servers.append(UDPServer(settings.listen_host, settings.listen_port, dispatcher))
        if settings.listen_tcp:
            servers.append(TCPServer(settings.listen_host, settings.listen_port, dispatcher))
    except OSError:
        for s in servers:
            s.stop()
        raise

    for s in servers:
        threading.Thread(
            target=s.serve_forever, name=type(s).__name__, daemon=True
        ).start()
    return servers


def serve(settings: ProxySettings, dispatcher: Dispatcher, shutdown_event: threading.Event) -> int:
    """Brief: Run listeners until *shutdown_event* is set.

    Inputs:
      - settings: Runtime settings.
      - dispatcher: Shared Dispatcher.
      - shutdown_event: Set by signal handlers (or tests) to stop serving.

    Outputs:
      - int exit code: 0 after an orderly stop, 1 when no listener could start.
    """

    try:
        servers = start_listeners(settings, dispatcher)
    except OSError as exc:
        logger.error(
            "Failed to bind %s:%d: %s", settings.listen_host, settings.listen_port, exc
        )
        return 1
    if not servers:
        logger.error("Both UDP and TCP listeners are disabled; nothing to serve")
        return 1

    logger.info("Startup completed")
    try:
        while not shutdown_event.is_set():
            shutdown_event.wait(0.5)
    finally:
        for s in servers:
            try:
                s.stop()
            except OSError:
                logger.exception("Error while stopping %s", type(s).__name__)
    logger.info("Shutdown complete")
    return 0


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DNS reverse proxy.
    Parses arguments, loads configuration and keys, and serves until SIGINT/SIGTERM.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 after a signal-driven shutdown, 1 on startup failure.

    Example use:
        CLI:
            switchboard --address :5353 --default 10.0.0.53:53 \\
                --route example.com.=192.0.2.1:53
    """
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            cli_vars=args.var,
            address=args.address,
            default=args.default,
            routes=args.route,
            allow_transfer=args.allow_transfer,
            key_dir=args.key_dir,
            log_level=args.log_level,
        )
    except (OSError, ValueError) as exc:
        init_logging(None)
        logger.error("Invalid configuration: %s", exc)
        return 1

    init_logging(dict(settings.logging))
    if args.config:
        logger.info("Loaded config from %s", args.config)
    logger.info(
        "Routing %d suffix(es); default backend %s",
        len(settings.route_table),
        settings.default_backend or "none",
    )
    for entry in settings.route_table.entries:
        logger.debug("Route %s -> %s", entry.suffix, ", ".join(str(b) for b in entry.backends))

    try:
        key_store = load_key_store(settings)
    except KeyLoadError as exc:
        logger.error("Failed to load signing keys: %s", exc)
        return 1

    dispatcher = Dispatcher(settings, key_store)
    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        if not shutdown_event.is_set():
            logger.info("Received %s, initiating shutdown", signal.Signals(signum).name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _request_shutdown)
        except ValueError:  # pragma: no cover - not the main thread
            logger.warning("Could not install %s handler", sig.name)

    return serve(settings, dispatcher, shutdown_event)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
