from __future__ import annotations

import argparse
import logging
import sys

from peerrelay.common import BindError, Endpoint, PeerLocatorError, ServerFailure
from peerrelay.config import RelayConfig, env_str
from peerrelay.echo import run_echo_client, run_echo_server
from peerrelay.locators import PeerLocator, TcpServiceLocator
from peerrelay.server import RelayServer

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def _add_listen_args(parser: argparse.ArgumentParser, defaults: RelayConfig) -> None:
    parser.add_argument("--bind", default=defaults.listen.host)
    parser.add_argument("--port", type=int, default=defaults.listen.port)
    parser.add_argument(
        "--flush-timeout",
        type=float,
        default=defaults.flush_timeout,
        help="Seconds a blocked write may wait before the pair is torn down",
    )


def _add_relay(sub: argparse._SubParsersAction) -> None:
    defaults = RelayConfig.from_env()
    relay = sub.add_parser("relay", help="Relay a local port to a fixed TCP service")
    _add_listen_args(relay, defaults)
    target = env_str("PEERRELAY_TARGET", "")
    relay.add_argument(
        "--target",
        type=Endpoint.parse,
        default=target or None,
        required=not target,
        help="Outbound service as host:port (resolved once at startup)",
    )
    relay.add_argument("--connect-timeout", type=float, default=None)

    ziti = sub.add_parser("ziti-relay", help="Relay a local port to an OpenZiti service")
    _add_listen_args(ziti, defaults)
    ziti.add_argument("--identity", required=True, help="Path to enrolled identity JSON")
    ziti.add_argument("--service", required=True, help="Ziti service name (must exist on controller)")


def _add_echo(sub: argparse._SubParsersAction) -> None:
    srv = sub.add_parser("echo-server", help="Run a plain TCP echo server")
    srv.add_argument("--bind", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=9100)

    cli = sub.add_parser("echo-client", help="Send a message and print the echo")
    cli.add_argument("--host", default="127.0.0.1")
    cli.add_argument("--port", type=int, default=9000)
    cli.add_argument("--message", default="PING")


def _serve(args: argparse.Namespace, locator: PeerLocator, target: str) -> int:
    listen = Endpoint(args.bind, args.port)
    server = RelayServer(listen, locator, RelayConfig(listen=listen, flush_timeout=args.flush_timeout))
    try:
        server.start()
    except BindError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    host, port = server.address
    print(f"[relay] listening on tcp://{host}:{port} -> {target}")
    try:
        server.serve_forever()
    except ServerFailure as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="peerrelay",
        description=(
            "Transparent TCP relay: every connection accepted on a local port is paired "
            "with an outbound connection and bytes are copied both ways unmodified."
        ),
    )
    parser.add_argument("--log-level", default=env_str("PEERRELAY_LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="cmd", required=True)
    _add_relay(sub)
    _add_echo(sub)

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    if args.cmd == "relay":
        try:
            locator = TcpServiceLocator(args.target, connect_timeout=args.connect_timeout)
        except PeerLocatorError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        return _serve(args, locator, str(args.target))

    if args.cmd == "ziti-relay":
        # imported here so plain TCP relays never load the Ziti SDK
        from peerrelay.ziti_locator import ZitiServiceLocator

        try:
            locator = ZitiServiceLocator.from_identity(args.identity, args.service)
        except RuntimeError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        return _serve(args, locator, f"ziti service {args.service!r}")

    if args.cmd == "echo-server":
        run_echo_server(Endpoint(args.bind, args.port))
        return 0

    if args.cmd == "echo-client":
        data = run_echo_client(Endpoint(args.host, args.port), args.message.encode("utf-8"))
        print(data.decode("utf-8", errors="replace"))
        return 0

    print(f"Unknown command: {args.cmd}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
