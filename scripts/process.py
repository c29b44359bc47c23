"""
Process plumbing shared by the redis configuration commands:
logging setup, pid files, start/stop and signal handling.
"""
import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

import structlog

from config.settings import Settings, load_settings, split_servers

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1


def base_parser(description: str, default_pid_file: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("command", choices=["start", "stop"])
    parser.add_argument("--redis-servers", default="", help="Comma separated host:port list")
    parser.add_argument("--servers", default="", help="Broker servers carrying the system channel")
    parser.add_argument("--config", default=None, help="YAML settings file (default: $BEETLE_CONFIG)")
    parser.add_argument("--pid-file", default=default_pid_file, help="Where start writes its pid")
    parser.add_argument("--log-level", default=None, help="debug, info, warning, error")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Settings file first, command line options win."""
    settings = load_settings(args.config)
    if args.redis_servers:
        settings.failover.redis_servers = split_servers(args.redis_servers)
    if args.servers:
        settings.brokers.servers = split_servers(args.servers)
    if getattr(args, "redis_retry_timeout", None) is not None:
        settings.failover.retry_timeout = args.redis_retry_timeout
    if args.log_level:
        settings.log_level = args.log_level
    if args.pid_file:
        settings.failover.pid_file = args.pid_file
    return settings


def configure_logging(level: str):
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


def write_pid_file(path: str):
    Path(path).write_text(str(os.getpid()))


def remove_pid_file(path: str):
    Path(path).unlink(missing_ok=True)


def stop_process(pid_file: str) -> int:
    """Send SIGTERM to the process recorded in pid_file."""
    path = Path(pid_file)
    if not path.exists():
        logger.error("pid_file_missing", pid_file=pid_file)
        return EXIT_FAILURE
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, signal.SIGTERM)
    except (ValueError, ProcessLookupError, PermissionError) as e:
        logger.error("stop_failed", pid_file=pid_file, error=str(e))
        return EXIT_FAILURE
    logger.info("stop_requested", pid=pid)
    return EXIT_OK


async def run_until_signalled(service) -> None:
    """start() the service, wait for SIGINT/SIGTERM, then stop() it."""
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopped.set)

    task = service.start()
    waiter = asyncio.create_task(stopped.wait())
    await asyncio.wait([task, waiter], return_when=asyncio.FIRST_COMPLETED)
    waiter.cancel()
    await service.stop()
