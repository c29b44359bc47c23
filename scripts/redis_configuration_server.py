#!/usr/bin/env python3
"""
Redis Configuration Server — watches the redis servers of the
deduplication store and switches the master when it goes away.

Usage:
    beetle-redis-configuration-server start --redis-servers=redis1:6379,redis2:6379
    beetle-redis-configuration-server start --redis-servers=... --redis-retry-timeout=10
    beetle-redis-configuration-server stop
"""
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from failover.configuration_server import RedisConfigurationServer
from models.errors import BeetleError
from scripts.process import (
    EXIT_FAILURE, EXIT_OK, base_parser, configure_logging, remove_pid_file,
    run_until_signalled, settings_from_args, stop_process, write_pid_file,
)

logger = structlog.get_logger()

DEFAULT_PID_FILE = "redis_configuration_server.pid"


def build_parser():
    parser = base_parser("Beetle redis configuration server", DEFAULT_PID_FILE)
    parser.add_argument("--redis-retry-timeout", type=float, default=None,
                        help="Seconds without answer before a server counts as down")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    configure_logging(settings.log_level)

    if args.command == "stop":
        return stop_process(settings.failover.pid_file)

    try:
        server = RedisConfigurationServer(settings)
    except BeetleError as e:
        logger.error("configuration_server_not_started", error=str(e))
        return EXIT_FAILURE

    write_pid_file(settings.failover.pid_file)
    try:
        asyncio.run(run_until_signalled(server))
    finally:
        remove_pid_file(settings.failover.pid_file)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
