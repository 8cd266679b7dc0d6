#!/usr/bin/env python3
"""
UPnP Gateway - discover the local Internet Gateway Device and control it.

Finds the router via SSDP, resolves its WANIPConnection service and issues
SOAP actions: external IP, connection type, add/delete port mappings.

Usage:
    python upnp_gateway.py [--config config.yaml] discover
    python upnp_gateway.py external-ip
    python upnp_gateway.py add-mapping TCP 8080 80 192.168.1.50 --description web
    python upnp_gateway.py listen

    Or with environment variables:
    UPNP_DISCOVERY_TIMEOUT=10 LOG_LEVEL=DEBUG python upnp_gateway.py discover
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from gateway_discovery import discover_gateway
from igd_gateway import GatewayClient
from ssdp_control_point import ControlPoint, DeviceAvailable, DeviceUnavailable, DeviceUpdated, DiscoveryEvent
from upnp_errors import UPnPError

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "log_level": "INFO",
    "discovery_timeout": 5.0,
    "http_timeout": 5.0,
    "interface_ip": "",
}


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file with environment overrides."""
    config = DEFAULTS.copy()

    # Explicit path must exist; config.yaml in project dir is optional
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path: Optional[Path] = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
        if not path.exists():
            path = None
    if path:
        with open(path) as f:
            config.update(yaml.safe_load(f) or {})

    # Environment overrides
    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL")
    if os.getenv("UPNP_DISCOVERY_TIMEOUT"):
        config["discovery_timeout"] = float(os.getenv("UPNP_DISCOVERY_TIMEOUT"))
    if os.getenv("UPNP_HTTP_TIMEOUT"):
        config["http_timeout"] = float(os.getenv("UPNP_HTTP_TIMEOUT"))
    if os.getenv("UPNP_INTERFACE_IP"):
        config["interface_ip"] = os.getenv("UPNP_INTERFACE_IP")

    return config


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

async def _discover(config: dict, logger: logging.Logger) -> GatewayClient:
    return await discover_gateway(
        float(config["discovery_timeout"]),
        interface_ip=(config.get("interface_ip") or "").strip() or None,
        http_timeout=float(config["http_timeout"]),
        logger=logger,
    )


async def run_command(args: argparse.Namespace, config: dict) -> None:
    """Discover the gateway and run one action against it."""
    logger = logging.getLogger("upnp-gateway")
    async with await _discover(config, logger) as gateway:
        if args.command == "discover":
            print(gateway.gateway.url)
        elif args.command == "external-ip":
            print((await gateway.external_ip_address()).address)
        elif args.command == "connection-type":
            info = await gateway.connection_type_info()
            print(f"current: {info.current_type}")
            print(f"possible: {info.possible_types}")
        elif args.command == "add-mapping":
            await gateway.add_port_mapping(
                args.protocol,
                args.external_port,
                args.internal_port,
                args.internal_client,
                args.description,
                lease_duration=args.lease,
            )
        elif args.command == "delete-mapping":
            await gateway.delete_port_mapping(args.protocol, args.external_port)


_EVENT_LABELS = {
    DeviceAvailable: "alive",
    DeviceUnavailable: "byebye",
    DeviceUpdated: "update",
}


async def listen(config: dict) -> None:
    """Print SSDP NOTIFY events until SIGINT/SIGTERM."""
    logger = logging.getLogger("upnp-gateway")
    control_point = ControlPoint(logger=logger, interface_ip=(config.get("interface_ip") or "").strip() or None)

    def on_event(event: DiscoveryEvent) -> None:
        label = _EVENT_LABELS.get(type(event))
        if label:
            h = event.headers
            print(f"{label:7} {h.get('nt', '')} {h.get('usn', '')} {h.get('location', '')}", flush=True)

    control_point.add_listener(on_event)
    await control_point.start()
    logger.info("Listening for SSDP NOTIFY (Ctrl-C to stop)")

    # Handle shutdown gracefully - must not block event loop or Ctrl-C won't work
    stop_event = asyncio.Event()
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except (NotImplementedError, OSError):
        # add_signal_handler not supported on Windows - use signal.signal
        try:
            signal.signal(signal.SIGINT, lambda s, f: stop_event.set())
            signal.signal(signal.SIGTERM, lambda s, f: stop_event.set())
        except (ValueError, OSError):
            pass

    try:
        await stop_event.wait()
    finally:
        control_point.close()
        logger.info("Stopped")


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UPnP Gateway - discover and control the local Internet Gateway Device"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir, if present)",
    )
    parser.add_argument("--log-level", default=None, help="Override log_level from config")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("discover", help="Print the gateway's WANIPConnection control URL")
    sub.add_parser("external-ip", help="Print the gateway's external IP address")
    sub.add_parser("connection-type", help="Print current and possible connection types")

    add = sub.add_parser("add-mapping", help="Add a port mapping")
    add.add_argument("protocol", choices=["TCP", "UDP", "tcp", "udp"])
    add.add_argument("external_port", type=int)
    add.add_argument("internal_port", type=int)
    add.add_argument("internal_client", help="LAN address that receives the traffic")
    add.add_argument("--description", default="upnp-gateway")
    add.add_argument("--lease", type=int, default=0, help="Lease duration in seconds (0 = permanent)")

    delete = sub.add_parser("delete-mapping", help="Delete a port mapping")
    delete.add_argument("protocol", choices=["TCP", "UDP", "tcp", "udp"])
    delete.add_argument("external_port", type=int)

    sub.add_parser("listen", help="Print SSDP NOTIFY events until interrupted")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Parse arguments and run the command."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    setup_logging(args.log_level or config["log_level"])

    try:
        if args.command == "listen":
            asyncio.run(listen(config))
        else:
            asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        pass
    except UPnPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
