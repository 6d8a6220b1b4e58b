#!/usr/bin/env python3
"""
cassia-client command line tool.

Talks to a gateway directly or, with --ac, through an AC (optionally to one
managed gateway selected with --gateway). One-shot commands print JSON to
stdout; stream commands print one JSON line per event until Ctrl+C.
"""
import argparse
import asyncio
import json
import signal
import sys

from . import __version__
from .ac import AccessController
from .config_loader import Config
from .gateway import Gateway
from .logging_setup import get_logger, setup_logging

logger = get_logger(__name__)

STREAM_COMMANDS = {
    "scan": ("scan", "scan"),
    "notify": ("listen_notify", "notify"),
    "connections": ("listen_connection_state", "connection_state"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cassia-client", description="Cassia gateway / AC client")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("--address", help="Gateway or AC address (host, host:port or URL)")
    parser.add_argument("--ac", action="store_true", help="Address is an AC")
    parser.add_argument("--developer", help="AC developer key")
    parser.add_argument("--secret", help="AC developer secret")
    parser.add_argument("--gateway", help="MAC of the gateway to address through the AC")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "command",
        choices=["info", "devices", "gateways", *STREAM_COMMANDS],
        help="What to do",
    )
    parser.add_argument("--active", type=int, choices=[0, 1], help="Active scan (scan only)")
    return parser


def apply_args(cfg: Config, args: argparse.Namespace) -> Config:
    """Command line values override the config file"""
    if args.address:
        cfg.address = args.address
    if args.ac:
        cfg.mode = "ac"
    if args.developer:
        cfg.credentials.developer = args.developer
    if args.secret:
        cfg.credentials.secret = args.secret
    if args.gateway:
        cfg.gateway_mac = args.gateway
    return cfg


def _print_json(value) -> None:
    print(json.dumps(value, ensure_ascii=False), flush=True)


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError) as e:
        # add_signal_handler is unavailable on some platforms, Ctrl+C still raises
        logger.debug("Could not set asyncio signal handlers: %s", e)
    await stop.wait()


async def main(cfg: Config, args: argparse.Namespace) -> int:
    if not cfg.address:
        logger.error("No address configured (use --address or CASSIA_ADDRESS)")
        return 2

    if cfg.mode == "ac":
        root = AccessController(cfg.session_options())
    else:
        root = Gateway(cfg.session_options())

    async with root:
        if isinstance(root, AccessController) and cfg.credentials.configured:
            await root.auth(
                cfg.credentials.developer,
                cfg.credentials.secret,
                cfg.credentials.auto_refresh,
            )

        target = root
        if isinstance(root, AccessController) and cfg.gateway_mac:
            target = root.gateway(cfg.gateway_mac)

        try:
            if args.command == "gateways":
                if not isinstance(root, AccessController):
                    logger.error("'gateways' needs --ac")
                    return 2
                _print_json(await root.get_all_gateways())
            elif args.command == "info":
                _print_json(await target.get_info())
            elif args.command == "devices":
                _print_json(await target.get_connected_devices())
            else:
                method, event_name = STREAM_COMMANDS[args.command]
                target.events.error.on(lambda e: logger.error("Stream error: %s", e))
                target.events.channel(event_name).on(_print_json)
                kwargs = {"active": args.active} if args.command == "scan" else {}
                handle = await getattr(target, method)(**kwargs)
                logger.info("Listening for %s events, Ctrl+C to stop", event_name)
                waiter = asyncio.create_task(_wait_for_shutdown())
                closed = asyncio.create_task(handle.wait_closed())
                await asyncio.wait({waiter, closed}, return_when=asyncio.FIRST_COMPLETED)
                waiter.cancel()
                closed.cancel()
        finally:
            if target is not root:
                await target.close()
    return 0


def run() -> None:
    args = build_parser().parse_args()
    setup_logging(verbose=args.verbose, simple_format=not args.verbose)

    cfg = apply_args(Config.load(args.config), args)

    try:
        sys.exit(asyncio.run(main(cfg, args)))
    except KeyboardInterrupt:
        logger.info("Manually stopped with Ctrl+C")
    except Exception as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    run()
