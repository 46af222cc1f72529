"""uiembed - embeddable editor host process.

Speaks msgpack-rpc to an attached UI over stdin/stdout (``--embed``) or over
a listen address (``--listen``). Logging never goes to stdout, which may be
the RPC channel.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from uiembed.config import EmbedConfig, default_config_path
from uiembed.errors import BindError
from uiembed.host import EditorHost
from uiembed.rpc.session import Session

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [uiembed] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uiembed",
        description="Editor host that external UIs attach to over msgpack-rpc",
    )
    parser.add_argument("--embed", action="store_true", help="Wait for a UI on stdin/stdout (or --listen)")
    parser.add_argument("--headless", action="store_true", help="Do not wait for a UI")
    parser.add_argument(
        "--listen",
        nargs="?",
        const="",
        default=None,
        metavar="ADDR",
        help="Accept UIs on a socket path or host:port (a new path under socket_dir if ADDR is omitted)",
    )
    parser.add_argument(
        "--cmd",
        action="append",
        default=[],
        metavar="CMD",
        help="Run CMD before any config (repeatable)",
    )
    parser.add_argument(
        "-c",
        dest="command",
        action="append",
        default=[],
        metavar="CMD",
        help="Run CMD after startup (repeatable)",
    )
    parser.add_argument("--clean", action="store_true", help="Skip the user config file")
    parser.add_argument("--config", default=None, metavar="PATH", help="YAML config file")
    parser.add_argument("--log-file", default=None, metavar="PATH", help="Log to PATH instead of stderr")
    parser.add_argument("--log-level", default=None, metavar="LEVEL", help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--trace", default=None, metavar="PATH", help="JSONL protocol trace")
    return parser


def load_config(args: argparse.Namespace) -> EmbedConfig:
    """
    Config file (explicit, or the user's unless ``--clean``), env, then flags.

    Raises:
        ValueError: explicit config missing, or config invalid
    """
    path: Optional[Path]
    if args.config:
        path = Path(args.config)
        if not path.exists():
            raise ValueError(f"config file not found: {path}")
    else:
        path = None if args.clean else default_config_path()

    config = EmbedConfig.load(path)
    if args.log_file:
        config.log_file = args.log_file
    if args.log_level:
        config.log_level = args.log_level.upper()
    if args.trace:
        config.trace_path = args.trace
    return config


def setup_logging(config: EmbedConfig) -> None:
    """Root logger on stderr or ``config.log_file``."""
    level = getattr(logging, config.log_level.upper(), None)
    if not isinstance(level, int):
        level = logging.WARNING

    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        handlers=[handler],
        force=True,
    )


async def _accept_loop(host: EditorHost, address: str) -> None:
    while True:
        try:
            channel_id = await host.channels.listen_channel(address)
        except BindError as e:
            logger.info(f"[CLI] Stopped accepting on {address}: {e.embed_message}")
            return
        logger.info(f"[CLI] Peer on {address} is channel {channel_id}")


async def _stop_when_closed(session: Session, stop: asyncio.Event) -> None:
    await session.wait_closed()
    logger.info(f"[CLI] Channel {session.channel_id} closed ({session.close_reason}), exiting")
    stop.set()


async def serve(args: argparse.Namespace, config: EmbedConfig) -> int:
    """Run the host until the UI goes away or a signal arrives."""
    host = EditorHost(config, wait_for_ui=args.embed)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"[CLI] No handler for signal {sig}")

    tasks: List[asyncio.Task] = []
    address = args.listen
    if address == "":
        address = host.channels.generate_address()
    try:
        if address is not None:
            try:
                await host.channels.listen(address)
            except BindError as e:
                logger.error(f"[CLI] {e.embed_message}")
                print(f"uiembed: {e.embed_message}", file=sys.stderr)
                return 1
            if not args.listen:
                # generated address, the UI needs to learn it
                print(f"uiembed: listening on {address}", file=sys.stderr, flush=True)

        await host.run(pre_commands=args.cmd, commands=args.command)

        if address is not None:
            tasks.append(asyncio.create_task(_accept_loop(host, address)))
        if args.embed and address is None:
            channel_id = await host.channels.stdio_channel()
            session = host.channels.channel_for(channel_id)
            tasks.append(asyncio.create_task(_stop_when_closed(session, stop)))
        elif address is None:
            # headless without a listen address: nothing left to serve
            return 0

        await stop.wait()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await host.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not (args.embed or args.headless):
        parser.print_usage(sys.stderr)
        print("uiembed: no built-in terminal UI, use --embed or --headless", file=sys.stderr)
        return 2

    try:
        config = load_config(args)
    except ValueError as e:
        print(f"uiembed: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    logger.info(f"[CLI] Starting ({'embed' if args.embed else 'headless'})")

    try:
        return asyncio.run(serve(args, config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
