"""Tests for the redis configuration command line entry points."""
import os
import signal
from unittest.mock import patch

import pytest

from scripts import redis_configuration_client, redis_configuration_server
from scripts.process import EXIT_FAILURE, EXIT_OK, settings_from_args, stop_process


class TestArguments:
    def test_server_options(self, tmp_path):
        args = redis_configuration_server.build_parser().parse_args([
            "start", "--redis-servers=r1:6379,r2:6379", "--redis-retry-timeout=3",
            f"--pid-file={tmp_path / 'server.pid'}",
        ])
        settings = settings_from_args(args)

        assert args.command == "start"
        assert settings.failover.redis_servers == ["r1:6379", "r2:6379"]
        assert settings.failover.retry_timeout == 3.0
        assert settings.failover.pid_file == str(tmp_path / "server.pid")

    def test_client_options(self):
        args = redis_configuration_client.build_parser().parse_args([
            "start", "--redis-servers=r1:6379", "--servers=b1:5672,b2:5672",
            "--redis-master-file=/tmp/master",
        ])
        settings = settings_from_args(args)

        assert settings.redis_servers == ["r1:6379"]
        assert settings.brokers.servers == ["b1:5672", "b2:5672"]
        assert args.redis_master_file == "/tmp/master"

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            redis_configuration_server.build_parser().parse_args(["restart"])


class TestCommands:
    def test_server_needs_two_redis_servers(self, tmp_path):
        pid_file = tmp_path / "server.pid"
        code = redis_configuration_server.main(["start", "--redis-servers=r1:6379", f"--pid-file={pid_file}"])
        assert code == EXIT_FAILURE
        assert not pid_file.exists()

    def test_client_needs_redis_servers(self, tmp_path):
        config = tmp_path / "beetle.yaml"
        config.write_text("dedup:\n  redis_servers: \"\"\n")
        pid_file = tmp_path / "client.pid"
        code = redis_configuration_client.main(["start", f"--config={config}", f"--pid-file={pid_file}"])
        assert code == EXIT_FAILURE
        assert not pid_file.exists()

    def test_stop_without_pid_file(self, tmp_path):
        assert stop_process(str(tmp_path / "missing.pid")) == EXIT_FAILURE

    def test_stop_signals_recorded_process(self, tmp_path):
        pid_file = tmp_path / "server.pid"
        pid_file.write_text("4242")
        with patch("scripts.process.os.kill") as kill:
            assert stop_process(str(pid_file)) == EXIT_OK
        kill.assert_called_once_with(4242, signal.SIGTERM)

    def test_stop_with_stale_pid(self, tmp_path):
        pid_file = tmp_path / "server.pid"
        pid_file.write_text("4242")
        with patch("scripts.process.os.kill", side_effect=ProcessLookupError):
            assert stop_process(str(pid_file)) == EXIT_FAILURE

    def test_stop_command(self, tmp_path):
        pid_file = tmp_path / "client.pid"
        pid_file.write_text(str(os.getpid()))
        with patch("scripts.process.os.kill") as kill:
            code = redis_configuration_client.main(["stop", f"--pid-file={pid_file}"])
        assert code == EXIT_OK
        kill.assert_called_once()
