#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
zabbix_mongodb_stats.py - MongoDB statistics agent for Zabbix.

Polls a MongoDB server (mongod or mongos) every 10 seconds, flattens
serverStatus and replSetGetStatus into "host key value" lines and pushes
them to a Zabbix server through zabbix_sender.

Metric keys:
    mongodb.<key>                       flat serverStatus fields
    mongodb.<key>.<subkey>              nested serverStatus sections
    mongodb.<key>.<subkey>.<subsubkey>  globalLock / indexCounters queues
    mongodb.primary.opcounters.<op>     opcounters, primary only
    mongodb.health / state / repl_lag   replica set member status
"""

import argparse
import logging
import os
import signal
import socket
import subprocess
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

import daemon
import daemon.pidfile

try:
    from bson.son import SON
    from pymongo import MongoClient
    from pymongo.read_preferences import ReadPreference
    from pymongo.errors import OperationFailure, PyMongoError
except ImportError:
    print("pymongo is not installed. Install it with: pip install 'pymongo>=4.0,<5.0'")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

__version__ = "26.10.18"

PROG_NAME = "zabbix_mongodb_stats"

METRIC_PREFIX = "mongodb"

STATUS_DATABASE = "test"
ADMIN_DATABASE = "admin"

# Seconds
COLLECT_RETRY_DELAY = 5
RECONNECT_DELAY = 5
SEND_RETRY_DELAY = 10
POLL_INTERVAL = 10
STOP_TIMEOUT = 30
STOP_POLL_INTERVAL = 0.5

DAEMON_COMMANDS = ("start", "stop", "restart", "status", "run")

# LSB status code for "program is not running"
STATUS_NOT_RUNNING = 3

# zabbix_sender exits with 255 when the server cannot be reached
SENDER_UNREACHABLE = 255

RS_STATE_PRIMARY = 1

log = logging.getLogger(__name__)


class ZabbixMongoStatsError(Exception):
    """Base class for errors raised by this agent."""


class MissingPrimaryError(ZabbixMongoStatsError):
    """No replica set member reports PRIMARY, so lag has no reference."""


def render_value(value):
    """Return the text Zabbix receives for a value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def metric_line(hostname, key, value):
    """Format one sender line: '<host> mongodb.<key> <value>'."""
    return f"{hostname} {METRIC_PREFIX}.{key} {render_value(value)}"


# ---------------------------------------------------------------------------
# PollConfiguration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PollConfiguration:
    """Settings read once at startup."""

    hostname: str
    zabbix_server: str
    db_host: str = "localhost"
    db_port: int = 27017
    zabbix_port: int = None
    sender: str = "zabbix_sender"
    username: str = None
    password: str = None
    auth_source: str = "admin"
    tls: bool = False
    tls_insecure: bool = False
    timeout: int = 10
    debug: bool = False
    daemonize: bool = True
    pidfile_dir: str = "/tmp"

    @classmethod
    def from_args(cls, args):
        return cls(
            hostname=args.host,
            zabbix_server=args.zabbix_server,
            db_host=args.db_host,
            db_port=args.db_port,
            zabbix_port=args.zabbix_port,
            sender=args.sender,
            username=args.username,
            password=args.password,
            auth_source=args.auth_source,
            tls=args.tls,
            tls_insecure=args.tls_insecure,
            timeout=args.timeout,
            debug=args.debug,
            daemonize=args.daemonize and args.command != "run",
            pidfile_dir=args.pidfile_dir,
        )

    @property
    def db_address(self):
        return f"{self.db_host}:{self.db_port}"

    @property
    def pidfile_path(self):
        return os.path.join(self.pidfile_dir, f"{PROG_NAME}.pid")

    @property
    def output_path(self):
        return os.path.join(self.pidfile_dir, f"{PROG_NAME}.output")


# ---------------------------------------------------------------------------
# MongoConnectionManager
# ---------------------------------------------------------------------------

class MongoConnectionManager:
    """Creates, checks and recreates the connection to a single node."""

    def __init__(self, host="localhost", port=27017, username=None, password=None,
                 auth_source="admin", tls=False, tls_insecure=False, timeout=10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.auth_source = auth_source
        self.tls = tls
        self.tls_insecure = tls_insecure
        self.timeout = timeout
        self.client = None

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.db_host,
            port=config.db_port,
            username=config.username,
            password=config.password,
            auth_source=config.auth_source,
            tls=config.tls,
            tls_insecure=config.tls_insecure,
            timeout=config.timeout,
        )

    @property
    def address(self):
        return f"{self.host}:{self.port}"

    def _build_client_kwargs(self):
        """Build keyword arguments for MongoClient."""
        kwargs = {
            "serverSelectionTimeoutMS": self.timeout * 1000,
            "connectTimeoutMS": self.timeout * 1000,
            "socketTimeoutMS": self.timeout * 1000,
            # Talk to this node only, even when it is a secondary
            "directConnection": True,
            "read_preference": ReadPreference.SECONDARY_PREFERRED,
        }
        if self.username:
            kwargs["username"] = self.username
            kwargs["authSource"] = self.auth_source
        if self.password:
            kwargs["password"] = self.password
        if self.tls:
            kwargs["tls"] = True
            if self.tls_insecure:
                kwargs["tlsAllowInvalidCertificates"] = True
                kwargs["tlsAllowInvalidHostnames"] = True
        return kwargs

    def connect(self):
        """Create the MongoClient. pymongo connects lazily, so this never blocks."""
        self.client = MongoClient(self.host, self.port, **self._build_client_kwargs())
        return self.client

    def reconnect(self):
        """Drop the current client and build a fresh one."""
        log.debug("Reconnecting to MongoDB server %s", self.address)
        self.close()
        return self.connect()

    def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None

    def is_active(self):
        """Return True if the node answers a ping."""
        if self.client is None:
            return False
        try:
            self.client.admin.command("ping")
        except PyMongoError as e:
            log.debug("Ping to %s failed: %s", self.address, e)
            return False
        return True

    def run_command(self, database, command):
        """Run a command once; return the response or None on failure."""
        try:
            log.debug("Connecting to MongoDB server %s (%s)", self.address, database)
            log.debug(" * Running command (%r)", command)
            return self.client[database].command(command)
        except PyMongoError as e:
            log.warning("Could not connect to MongoDB server (%s): %s", self.address, e)
            return None


# ---------------------------------------------------------------------------
# StatsCollector
# ---------------------------------------------------------------------------

def is_routing_node_response(response):
    """mongos says it is master but has no secondary field."""
    return _master_flag(response) and "secondary" not in response


def is_primary_response(response):
    """A replica member that is master and explicitly not secondary."""
    return (_master_flag(response)
            and "secondary" in response
            and response["secondary"] is False)


def _master_flag(response):
    return response.get("ismaster", response.get("isWritablePrimary", False)) is True


class StatsCollector:
    """Runs the status commands, retrying every 5 seconds until they succeed."""

    def __init__(self, conn_manager, retry_delay=COLLECT_RETRY_DELAY):
        self.conn_manager = conn_manager
        self.retry_delay = retry_delay

    def _run_until_success(self, database, command):
        response = self.conn_manager.run_command(database, command)
        while response is None:
            time.sleep(self.retry_delay)
            response = self.conn_manager.run_command(database, command)
        return response

    def server_status(self):
        """serverStatus including the repl section."""
        return self._run_until_success(STATUS_DATABASE, SON([("serverStatus", 1), ("repl", 1)]))

    def replica_status(self):
        """replSetGetStatus. mongos does not support it."""
        return self._run_until_success(ADMIN_DATABASE, SON([("replSetGetStatus", 1)]))

    def is_master(self):
        """Return the node's hello/isMaster response.

        Servers too old to know 'hello' fail it with OperationFailure; any
        other failure is retried like the other status calls.
        """
        while True:
            try:
                log.debug(" * Running command (hello)")
                return self.conn_manager.client[STATUS_DATABASE].command("hello")
            except OperationFailure:
                response = self.conn_manager.run_command(STATUS_DATABASE, SON([("isMaster", 1)]))
                if response is not None:
                    return response
            except PyMongoError as e:
                log.warning("Could not connect to MongoDB server (%s): %s",
                            self.conn_manager.address, e)
            time.sleep(self.retry_delay)

    def is_routing_node(self):
        return is_routing_node_response(self.is_master())

    def is_primary(self):
        return is_primary_response(self.is_master())


# ---------------------------------------------------------------------------
# StatsFlattener
# ---------------------------------------------------------------------------

class StatsFlattener:
    """Turns a serverStatus document into Zabbix sender lines.

    Which keys are reported, and how deep, is fixed by SCHEMA. Keys the
    table does not know are skipped, so new serverStatus sections never
    break the agent.
    """

    FLAT = "flat"
    SINGLE = "single"
    DOUBLE = "double"

    FLAT_KEYS = ("version", "process", "uptime", "uptimeEstimate", "localTime",
                 "writeBacksQueued", "ok")
    SINGLE_KEYS = ("mem", "connections", "cursors", "backgroundFlushing", "network",
                   "opcounters", "asserts", "extra_info")
    DOUBLE_KEYS = ("indexCounters", "globalLock")
    # Sub-keys of DOUBLE_KEYS sections that are expanded one more level
    DOUBLE_SUBKEYS = ("currentQueue", "activeClients", "btree")

    SCHEMA = {
        **dict.fromkeys(FLAT_KEYS, FLAT),
        **dict.fromkeys(SINGLE_KEYS, SINGLE),
        **dict.fromkeys(DOUBLE_KEYS, DOUBLE),
    }

    PASSES = (FLAT, SINGLE, DOUBLE)

    def __init__(self, hostname):
        self.hostname = hostname

    def flatten(self, doc, primary=False):
        """Return the lines for one serverStatus document."""
        policies = {
            self.FLAT: self._flat,
            self.SINGLE: self._single,
            self.DOUBLE: self._double,
        }
        lines = []
        for category in self.PASSES:
            for key, value in doc.items():
                if self.SCHEMA.get(key) == category:
                    lines.extend(policies[category](key, value))

        # Extra copy of the opcounters for the primary-only aggregate graphs
        opcounters = doc.get("opcounters")
        if primary and isinstance(opcounters, Mapping):
            for op, value in opcounters.items():
                lines.append(self._line(f"primary.opcounters.{op}", value))
        return lines

    def _line(self, key, value):
        return metric_line(self.hostname, key, value)

    def _flat(self, key, value):
        return [self._line(key, value)]

    def _single(self, key, section):
        if not isinstance(section, Mapping):
            return self._flat(key, section)
        return [self._line(f"{key}.{sub}", value) for sub, value in section.items()]

    def _double(self, key, section):
        if not isinstance(section, Mapping):
            return self._flat(key, section)
        lines = []
        for sub, value in section.items():
            if sub in self.DOUBLE_SUBKEYS:
                lines.extend(self._single(f"{key}.{sub}", value))
            else:
                # Structured values keep their default string form
                lines.append(self._line(f"{key}.{sub}", value))
        return lines


def flatten(doc, hostname, primary=False):
    """Shortcut for StatsFlattener(hostname).flatten(doc, primary)."""
    return StatsFlattener(hostname).flatten(doc, primary=primary)


# ---------------------------------------------------------------------------
# ReplicationLagCalculator
# ---------------------------------------------------------------------------

def member_host(name):
    """'db1.example.com:27017' -> 'db1'"""
    return name.split(".", 1)[0].split(":", 1)[0]


def find_primary_optime(members):
    """Return the optimeDate of the first PRIMARY member, or None."""
    for member in members:
        if int(member.get("state", -1)) == RS_STATE_PRIMARY:
            return member.get("optimeDate")
    return None


def replication_lag(primary_optime, member_optime):
    """Seconds the member is behind the primary. Negative when it is ahead."""
    lag = primary_optime - member_optime
    if isinstance(lag, timedelta):
        return lag.total_seconds()
    return lag


class ReplicationLagCalculator:
    """Reports health, state and lag of the local replica set member."""

    def __init__(self, hostname):
        self.hostname = hostname

    def lag_lines(self, members):
        """Return the lines for the member named like the reporting host.

        Raises MissingPrimaryError if that member exists but no member is
        PRIMARY.
        """
        members = list(members)
        primary_optime = find_primary_optime(members)
        lines = []
        for member in members:
            if member_host(member.get("name", "")) != self.hostname:
                continue
            if primary_optime is None:
                raise MissingPrimaryError(
                    f"No PRIMARY in replica set, cannot compute lag for {member['name']}"
                )
            lag = replication_lag(primary_optime, member["optimeDate"])
            lines.append(metric_line(self.hostname, "health", int(member["health"])))
            lines.append(metric_line(self.hostname, "state", member["state"]))
            lines.append(metric_line(self.hostname, "repl_lag", lag))
        return lines


def compute_lag_lines(members, hostname):
    """Shortcut for ReplicationLagCalculator(hostname).lag_lines(members)."""
    return ReplicationLagCalculator(hostname).lag_lines(members)


# ---------------------------------------------------------------------------
# MetricForwarder
# ---------------------------------------------------------------------------

class MetricForwarder:
    """Feeds a block of lines to zabbix_sender on its stdin."""

    def __init__(self, zabbix_server, zabbix_port=None, sender="zabbix_sender"):
        self.zabbix_server = zabbix_server
        self.zabbix_port = zabbix_port
        self.sender = sender

    def command(self):
        cmd = [self.sender, "-v", "-z", self.zabbix_server]
        if self.zabbix_port:
            cmd += ["-p", str(self.zabbix_port)]
        cmd += ["-r", "-i", "-"]
        return cmd

    def send(self, block):
        """Send the block. Returns False only if the server was unreachable.

        zabbix_sender also exits nonzero when some items were rejected; only
        255 means nothing reached the server.
        """
        log.debug("%s", block)
        try:
            proc = subprocess.Popen(
                self.command(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            log.error("Could not run %s: %s", self.sender, e)
            return False

        try:
            stdout, _ = proc.communicate(block)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        log.debug("stdout     : %s", (stdout or "").strip())

        if proc.returncode == SENDER_UNREACHABLE:
            log.warning("Could not connect to Zabbix server (%s)", self.zabbix_server)
            return False
        return True


# ---------------------------------------------------------------------------
# PollLoop
# ---------------------------------------------------------------------------

class PollLoop:
    """connect -> poll -> send -> sleep, forever."""

    def __init__(self, config, conn_manager=None, forwarder=None):
        self.config = config
        self.conn_manager = conn_manager or MongoConnectionManager.from_config(config)
        self.collector = StatsCollector(self.conn_manager)
        self.flattener = StatsFlattener(config.hostname)
        self.lag_calculator = ReplicationLagCalculator(config.hostname)
        self.forwarder = forwarder or MetricForwarder(
            config.zabbix_server, config.zabbix_port, config.sender
        )

    def collect(self):
        """Gather one cycle's lines from the database."""
        server_status = self.collector.server_status()
        hello = self.collector.is_master()
        lines = self.flattener.flatten(server_status, primary=is_primary_response(hello))

        # No replication stats on mongos
        if is_routing_node_response(hello):
            return lines

        replica_status = self.collector.replica_status()
        try:
            lines += self.lag_calculator.lag_lines(replica_status.get("members", []))
        except MissingPrimaryError as e:
            log.warning("%s; skipping replication lag this cycle", e)
        return lines

    def forward(self, block):
        """Send the block, retrying every 10 seconds until it goes through."""
        while not self.forwarder.send(block):
            time.sleep(SEND_RETRY_DELAY)

    def run_cycle(self):
        if not self.conn_manager.is_active():
            self.conn_manager.reconnect()
            time.sleep(RECONNECT_DELAY)

        lines = self.collect()
        block = "\n".join(lines) + "\n"
        self.forward(block)

    def run(self):
        log.debug("Polling MongoDB server %s as '%s', sending to %s",
                 self.config.db_address, self.config.hostname, self.config.zabbix_server)
        self.conn_manager.connect()
        try:
            while True:
                self.run_cycle()
                time.sleep(POLL_INTERVAL)
        finally:
            self.conn_manager.close()


# ---------------------------------------------------------------------------
# Argument Parsing
# ---------------------------------------------------------------------------

def parse_arguments(argv=None):
    """Parse command-line arguments."""
    # -h is the database host, so help lives on --help only
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Send MongoDB serverStatus and replica set stats to Zabbix",
        add_help=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run in the foreground with debug output
  %(prog)s -N -D -z zabbix.example.com

  # Report a secondary under its short name
  %(prog)s -s db2 -h db2.example.com -p 27018 -z zabbix.example.com

  # Daemon control (pidfile in --pidfile-dir)
  %(prog)s -z zabbix.example.com start
  %(prog)s status
  %(prog)s stop
        """
    )

    parser.add_argument("--help", action="help",
                        help="Show this help message and exit")
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")

    parser.add_argument("-N", "--no-daemonize", dest="daemonize", action="store_false",
                        default=True, help="Don't run as a daemon")
    parser.add_argument("--pidfile-dir", default="/tmp",
                        help="Directory for the pid and output files (default: /tmp)")
    parser.add_argument("-s", "--host", default=socket.gethostname(),
                        help="Hostname used in stats (default: this host's name)")

    # MongoDB
    parser.add_argument("-h", "--db-host", default="localhost",
                        help="MongoDB hostname (default: localhost)")
    parser.add_argument("-p", "--db-port", type=int, default=27017,
                        help="MongoDB port (default: 27017)")
    parser.add_argument("-u", "--username", default=None,
                        help="Username for authentication")
    parser.add_argument("--password", default=None,
                        help="Password for authentication")
    parser.add_argument("--auth-source", default="admin",
                        help="Authentication database (default: admin)")
    parser.add_argument("--tls", action="store_true", default=False,
                        help="Enable TLS/SSL connection")
    parser.add_argument("--tls-insecure", action="store_true", default=False,
                        help="Disable TLS certificate verification")
    parser.add_argument("--timeout", type=int, default=10,
                        help="Connection timeout in seconds (default: 10)")

    # Zabbix
    parser.add_argument("-z", "--zabbix-server", default=None,
                        help="Zabbix server name (required by start, restart and run)")
    parser.add_argument("--zabbix-port", type=int, default=None,
                        help="Zabbix server trapper port (default: sender's default)")
    parser.add_argument("--sender", default="zabbix_sender",
                        help="Path to zabbix_sender (default: zabbix_sender)")

    parser.add_argument("-D", "--debug", action="store_true", default=False,
                        help="Run in debug mode")

    parser.add_argument("command", nargs="?", default="start", choices=DAEMON_COMMANDS,
                        help="Daemon control command (default: start). "
                             "'run' stays in the foreground like -N")

    args = parser.parse_args(argv)

    # stop and status only need the pidfile
    if args.command in ("start", "restart", "run") and not args.zabbix_server:
        parser.error("the following arguments are required: -z/--zabbix-server")

    return args


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def setup_logging(debug=False):
    """Log to stdout. Only this module's logger, pymongo's stays quiet."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if debug else logging.INFO)


def _terminate(signum, frame):
    raise SystemExit(0)


def daemon_context(config):
    """DaemonContext with a pidfile; output goes to <pidfile-dir>/<prog>.output."""
    output = open(config.output_path, "a", buffering=1)
    return daemon.DaemonContext(
        pidfile=daemon.pidfile.TimeoutPIDLockFile(config.pidfile_path),
        stdout=output,
        stderr=output,
        signal_map={signal.SIGTERM: _terminate},
    )


def process_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def running_pid(config):
    """Return the pid of a running agent, or None.

    A pidfile whose process is gone (crash, kill -9) is removed, otherwise
    the lock would refuse every later start.
    """
    lock = daemon.pidfile.TimeoutPIDLockFile(config.pidfile_path)
    pid = lock.read_pid()
    if pid is None:
        return None
    if process_alive(pid):
        return pid
    log.debug("Removing stale pidfile %s (pid %d)", config.pidfile_path, pid)
    lock.break_lock()
    return None


def status_daemon(config):
    pid = running_pid(config)
    if pid is None:
        print(f"{PROG_NAME}: not running")
        return STATUS_NOT_RUNNING
    print(f"{PROG_NAME}: running [pid {pid}]")
    return 0


def stop_daemon(config):
    """Send SIGTERM to the running agent and wait for it to exit."""
    pid = running_pid(config)
    if pid is None:
        print(f"{PROG_NAME}: not running")
        return 0

    os.kill(pid, signal.SIGTERM)
    for _ in range(int(STOP_TIMEOUT / STOP_POLL_INTERVAL)):
        if not process_alive(pid):
            print(f"{PROG_NAME}: stopped [pid {pid}]")
            return 0
        time.sleep(STOP_POLL_INTERVAL)

    print(f"{PROG_NAME}: pid {pid} did not stop within {STOP_TIMEOUT}s", file=sys.stderr)
    return 1


def start_daemon(config):
    """Detach and run the poll loop, unless an agent is already running."""
    pid = running_pid(config)
    if pid is not None:
        print(f"{PROG_NAME}: already running [pid {pid}]", file=sys.stderr)
        return 1

    with daemon_context(config):
        return run(config)


def run(config):
    """Run the poll loop until a signal or Ctrl-C stops it."""
    setup_logging(config.debug)
    try:
        PollLoop(config).run()
    except (KeyboardInterrupt, SystemExit):
        log.debug("Stopped")
    return 0


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    config = PollConfiguration.from_args(args)

    if args.command == "status":
        return status_daemon(config)
    if args.command == "stop":
        return stop_daemon(config)
    if args.command == "restart":
        code = stop_daemon(config)
        if code:
            return code

    if not config.daemonize:
        signal.signal(signal.SIGTERM, _terminate)
        return run(config)

    return start_daemon(config)


if __name__ == "__main__":
    sys.exit(main())
