#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
End-to-End tests for zabbix_mongodb_stats.py

The command line and sender tests run anywhere with a POSIX shell. The
MongoDB tests need Docker containers and are skipped when they are not
running.

Usage:
    # Single node tests
    docker run -d --name mongo-single -p 27017:27017 mongo:7
    python -m pytest tests/test_e2e.py -v -k "single"

    # ReplicaSet tests (members named mongo1..mongo3, mongo1 on localhost:27017)
    docker network create mongo-rs
    docker run -d --name mongo1 --hostname mongo1 --network mongo-rs -p 27017:27017 mongo:7 --replSet rs0 --bind_ip_all
    docker run -d --name mongo2 --hostname mongo2 --network mongo-rs mongo:7 --replSet rs0 --bind_ip_all
    docker run -d --name mongo3 --hostname mongo3 --network mongo-rs mongo:7 --replSet rs0 --bind_ip_all
    docker exec mongo1 mongosh --quiet --eval 'rs.initiate({_id: "rs0", members: [
        {_id: 0, host: "mongo1:27017"}, {_id: 1, host: "mongo2:27017"}, {_id: 2, host: "mongo3:27017"}]})'
    sleep 30
    python -m pytest tests/test_e2e.py -v -k "replicaset"
"""

import os
import stat
import subprocess
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from zabbix_mongodb_stats import MetricForwarder, PollConfiguration, PollLoop

# Path to the agent script
SCRIPT = os.path.join(os.path.dirname(__file__), "..", "zabbix_mongodb_stats.py")


def run_agent(*args, timeout=30):
    """Run the agent script and return (exit_code, stdout, stderr)."""
    cmd = [sys.executable, SCRIPT] + list(args)
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    return result.returncode, result.stdout.strip(), result.stderr.strip()


def is_container_running(container_name):
    """Check if a Docker container is running."""
    try:
        result = subprocess.run(
            ["docker", "inspect", "--format", "{{.State.Running}}", container_name],
            capture_output=True, text=True
        )
    except FileNotFoundError:
        return False
    return result.stdout.strip() == "true"


@pytest.fixture
def fake_sender(tmp_path):
    """Build a zabbix_sender stand-in that saves stdin and exits with a given code."""
    received = tmp_path / "received.txt"

    def build(exit_code=0):
        script = tmp_path / f"zabbix_sender_{exit_code}"
        script.write_text(f"#!/bin/sh\ncat > '{received}'\necho 'sent: 1; skipped: 0'\nexit {exit_code}\n")
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return str(script)

    build.received = received
    return build


# =====================================================================
# Command line
# =====================================================================

class TestCommandLine:

    def test_help(self):
        code, out, _ = run_agent("--help")
        assert code == 0
        assert "--db-host" in out
        assert "--zabbix-server" in out

    def test_version(self):
        code, out, _ = run_agent("--version")
        assert code == 0
        assert "zabbix_mongodb_stats" in out

    def test_zabbix_server_required(self):
        code, _, err = run_agent("-N")
        assert code == 2
        assert "--zabbix-server" in err


# =====================================================================
# zabbix_sender boundary
# =====================================================================

@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestSender:

    def test_block_reaches_sender_stdin(self, fake_sender):
        block = "db1 mongodb.uptime 500\ndb1 mongodb.mem.resident 64\n"
        fwd = MetricForwarder("zbx.example.com", sender=fake_sender(0))
        assert fwd.send(block) is True
        assert fake_sender.received.read_text() == block

    def test_exit_255_means_unreachable(self, fake_sender):
        fwd = MetricForwarder("zbx.example.com", sender=fake_sender(255))
        assert fwd.send("db1 mongodb.ok 1\n") is False

    def test_partial_failure_still_counts_as_sent(self, fake_sender):
        fwd = MetricForwarder("zbx.example.com", sender=fake_sender(2))
        assert fwd.send("db1 mongodb.ok 1\n") is True


# =====================================================================
# Single Node Tests
# =====================================================================

class TestSingleNode:
    """A standalone mongod answers hello without 'secondary', like mongos."""

    @pytest.fixture(autouse=True)
    def check_single_running(self):
        if not is_container_running("mongo-single"):
            pytest.skip("Single node container not running")

    def test_cycle_sends_server_stats(self, fake_sender):
        config = PollConfiguration(
            hostname="e2e", zabbix_server="zbx", sender=fake_sender(0), timeout=5,
        )
        loop = PollLoop(config)
        loop.conn_manager.connect()
        try:
            loop.run_cycle()
        finally:
            loop.conn_manager.close()

        received = fake_sender.received.read_text()
        assert "e2e mongodb.uptime " in received
        assert "e2e mongodb.connections.current " in received
        assert "mongodb.repl_lag" not in received


# =====================================================================
# ReplicaSet Tests
# =====================================================================

class TestReplicaSet:

    @pytest.fixture(autouse=True)
    def check_rs_running(self):
        if not is_container_running("mongo1"):
            pytest.skip("ReplicaSet containers not running")

    def test_cycle_sends_member_status(self, fake_sender):
        config = PollConfiguration(
            hostname="mongo1", zabbix_server="zbx", sender=fake_sender(0), timeout=5,
        )
        loop = PollLoop(config)
        loop.conn_manager.connect()
        try:
            loop.run_cycle()
        finally:
            loop.conn_manager.close()

        received = fake_sender.received.read_text()
        assert "mongo1 mongodb.opcounters.query " in received
        assert "mongo1 mongodb.health 1" in received
        assert "mongo1 mongodb.repl_lag " in received
