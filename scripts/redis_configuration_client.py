#!/usr/bin/env python3
"""
Redis Configuration Client — follows master announcements outside of an
application process and records the current master in a file.

Usage:
    beetle-redis-configuration-client start --redis-servers=redis1:6379,redis2:6379
    beetle-redis-configuration-client start --redis-servers=... --redis-master-file=/var/run/beetle/master
    beetle-redis-configuration-client stop
"""
import asyncio
import os
import sys
from pathlib import Path

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from failover.configuration_client import RedisConfigurationClient
from models.schemas import MasterAnnouncement
from scripts.process import (
    EXIT_FAILURE, EXIT_OK, base_parser, configure_logging, remove_pid_file,
    run_until_signalled, settings_from_args, stop_process, write_pid_file,
)

logger = structlog.get_logger()

DEFAULT_PID_FILE = "redis_configuration_client.pid"


def build_parser():
    parser = base_parser("Beetle redis configuration client", DEFAULT_PID_FILE)
    parser.add_argument("--redis-master-file", default="",
                        help="File that always holds the current master address")
    return parser


def master_file_writer(path: str):
    def write(announcement: MasterAnnouncement):
        Path(path).write_text(announcement.address)
        logger.info("redis_master_file_updated", path=path, master=announcement.address)
    return write


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    configure_logging(settings.log_level)

    if args.command == "stop":
        return stop_process(settings.failover.pid_file)

    if not settings.redis_servers:
        logger.error("configuration_client_not_started", error="no redis servers configured")
        return EXIT_FAILURE

    client = RedisConfigurationClient(settings)
    if args.redis_master_file:
        client.add_listener(master_file_writer(args.redis_master_file))

    async def serve():
        await client.determine_initial_master()
        await run_until_signalled(client)

    write_pid_file(settings.failover.pid_file)
    try:
        asyncio.run(serve())
    finally:
        remove_pid_file(settings.failover.pid_file)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
