import argparse
import asyncio
import getpass
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional, Tuple

from . import __version__
from .identity import IdentityError, ServerIdentity, load_identity
from .server import RelayServer

"""
run.py — command-line entry point for the relay.

Quick examples:
  python -m wssrelay.run --identity server.p12
  python -m wssrelay.run -i server.p12 -p secret --addr 0.0.0.0:8443 --debug

Startup order matters: the identity is decoded before anything is bound, so a
wrong password never leaves a half-started listener behind.
"""

logger = logging.getLogger("wssrelay")

DEFAULT_ADDR = "127.0.0.1:8080"
PASSWORD_ENV = "WSSRELAY_IDENTITY_PASSWORD"
LOG_FORMAT = "%(filename)s:%(lineno)d [%(levelname)s] %(asctime)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S.%f"


# -------------------------
# Plumbing
# -------------------------

class LogFormatter(logging.Formatter):
    """time.strftime has no %f; timestamps here carry microseconds."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created).strftime(datefmt or LOG_DATEFMT)


def configure_logging(debug: bool) -> None:
    """Send wssrelay logs to stderr; --debug turns on per-connection detail."""
    handler = logging.StreamHandler()
    handler.setFormatter(LogFormatter(LOG_FORMAT, LOG_DATEFMT))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False


def parse_addr(addr: str) -> Tuple[str, int]:
    """
    Split "host:port". IPv6 literals go in brackets: "[::1]:8080".

    Raises:
        ValueError: no port, or a port that isn't a number in range.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ValueError(f"invalid port in {addr!r}")
    return host, int(port)


def resolve_password(cli_value: Optional[str]) -> str:
    """Flag wins, then the environment, then an interactive prompt."""
    if cli_value is not None:
        return cli_value
    env_value = os.environ.get(PASSWORD_ENV)
    if env_value is not None:
        return env_value
    return getpass.getpass("Enter identity password: ")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="wssrelay",
        description="TLS WebSocket endpoint that echoes every text/binary message back to its sender.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-d", "--debug", action="store_true", help="Prints debug log")
    p.add_argument("-a", "--addr", default=DEFAULT_ADDR, help="Address to listen")
    p.add_argument("-i", "--identity", required=True, help="Identity file (PKCS#12)")
    p.add_argument(
        "-p", "--identity-password",
        help=f"Identity password. Falls back to ${PASSWORD_ENV}, then to an interactive prompt.",
    )
    p.add_argument("--handshake-timeout", type=float, help="Seconds allowed for TLS + WebSocket handshake")
    p.add_argument("--idle-timeout", type=float, help="Seconds a connection may stay silent")
    return p.parse_args(argv)


# -------------------------
# Runner
# -------------------------

def build_server(args: argparse.Namespace) -> RelayServer:
    """
    Turn parsed arguments into a ready (but not yet bound) server.

    Raises:
        ValueError / IdentityError: bad address or unusable identity.
    """
    host, port = parse_addr(args.addr)
    identity: ServerIdentity = load_identity(args.identity, resolve_password(args.identity_password))
    logger.info("Loaded identity %s", identity.subject())
    return RelayServer(
        host,
        port,
        identity,
        handshake_timeout=args.handshake_timeout,
        idle_timeout=args.idle_timeout,
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Parse args, load the identity, then serve forever. Exits 1 on fatal errors."""
    args = parse_args(argv)
    configure_logging(args.debug)

    try:
        server = build_server(args)
    except IdentityError as exc:
        logger.error("Failed to load identity: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Bad --addr: %s", exc)
        sys.exit(1)

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except OSError as exc:
        logger.error("Listener failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
