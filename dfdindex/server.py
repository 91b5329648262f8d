"""Starting, supervising and stopping an index server."""

from __future__ import annotations

import argparse
import logging
import sqlite3
import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import Optional

from dfdindex.connection import WorkerRegistry
from dfdindex.database import Database, DatabaseError
from dfdindex.migration import MigrationError, join_network
from dfdindex.sourceinfo import SourceInfo
from dfdindex.workers import ServerContext, control_loop, listen_loop, worker_loop

log = logging.getLogger(__name__)

WORKER_THREADS = 4
DEFAULT_DB_PATH = "dfd-serv.db"
SUPERVISE_INTERVAL = 5.0
SETUP_WAIT = 1.0
LISTEN_WAIT = 2.0
JOIN_TIMEOUT = 1.0

_SETUP_FAILURE = "Setup is failing. Does this machine have the resources to be a server?"


class _Runtime:
    """The threads of one running server and the means to start, watch and stop them."""

    def __init__(self, context: ServerContext) -> None:
        self.context = context
        self._stop = threading.Event()
        self._control: Optional[threading.Thread] = None
        self._listener: Optional[threading.Thread] = None

    def _spawn_worker(self, index: int) -> None:
        registry = self.context.registry
        writer = index == registry.writer_index
        thread = threading.Thread(
            target=worker_loop,
            args=(self.context, index, writer),
            name=f"worker-{index}",
            daemon=True,
        )
        with registry.state_lock:
            registry.workers[index] = thread
        thread.start()

    def start_workers(self) -> None:
        """Start the worker pool and the control thread."""
        for index in range(self.context.registry.worker_count):
            self._spawn_worker(index)
        self._control = threading.Thread(
            target=control_loop, args=(self.context,), name="control", daemon=True
        )
        self._control.start()

    def wait_for_setup(self, timeout: float) -> bool:
        """Wait until every worker and election listener is ready."""
        context = self.context
        count = context.registry.worker_count
        with context.setup_cond:
            return context.setup_cond.wait_for(
                lambda: context.setup_workers == count
                and context.setup_election_workers == count - 1,
                timeout=timeout,
            )

    def start_listener(self, ip: str, port: int, timeout: float = LISTEN_WAIT) -> None:
        """Start accepting clients; raise RuntimeError if the port cannot be bound."""
        context = self.context
        errors: list[OSError] = []

        def serve() -> None:
            try:
                listen_loop(context, ip, port)
            except OSError as exc:
                errors.append(exc)
                log.critical("CRITICAL FAILURE, COULD NOT BIND LISTENER: %s", exc)

        thread = threading.Thread(target=serve, name="listener", daemon=True)
        self._listener = thread
        thread.start()
        deadline = time.monotonic() + timeout
        while not context.listening.wait(0.01):
            if not thread.is_alive() or time.monotonic() > deadline:
                reason = f": {errors[0]}" if errors else ""
                raise RuntimeError(f"could not bind listener on {ip}:{port}{reason}")
        bound = context.listen_address
        if bound is not None:
            context.our_address = replace(context.our_address, port=bound[1])

    def start(self, ip: str, port: int, setup_wait: float = SETUP_WAIT) -> None:
        """Start workers, then the listener once the pool is ready."""
        self.start_workers()
        if not self.wait_for_setup(setup_wait):
            raise RuntimeError(_SETUP_FAILURE)
        self.start_listener(ip, port)

    def join(self, server: SourceInfo) -> list[SourceInfo]:
        """Join the network through a known server; return the servers now known."""
        context = self.context
        try:
            return join_network(
                server,
                context.db,
                context.known_servers,
                context.known_lock,
                context.our_address,
                context.temp_path,
            )
        except MigrationError as exc:
            log.error("could not join network through %s:%s: %s", server.ip_addr, server.port, exc)
            with context.known_lock:
                return list(context.known_servers)

    def restart_failed_workers(self) -> list[int]:
        """Restart every read worker marked down; return their indexes."""
        context = self.context
        registry = context.registry
        restarted = []
        with registry.election_lock:
            for index in range(registry.writer_index):
                with registry.state_lock:
                    if registry.stats[index]:
                        continue
                    thread = registry.workers[index]
                if thread is not None:
                    thread.join(JOIN_TIMEOUT)
                    if thread.is_alive():
                        continue
                with context.setup_cond:
                    context.setup_workers = max(0, context.setup_workers - 1)
                    context.setup_election_workers = max(0, context.setup_election_workers - 1)
                log.info("RESTARTING THREAD: %d", index)
                self._spawn_worker(index)
                restarted.append(index)
        return restarted

    def supervise(self, interval: float = SUPERVISE_INTERVAL) -> None:
        """Check the pool every interval until stopped."""
        while not self._stop.wait(interval):
            self.restart_failed_workers()

    def stop(self) -> None:
        """Signal every thread to finish and wait for them."""
        self.context.running.clear()
        self._stop.set()
        with self.context.registry.state_lock:
            workers = list(self.context.registry.workers)
        current = threading.current_thread()
        for thread in (self._listener, self._control, *workers):
            if thread is not None and thread is not current and thread.ident is not None:
                thread.join(JOIN_TIMEOUT)


def run_server(
    ip: str,
    port: int,
    connect_ip: str = "",
    connect_port: int = 0,
    db_path: str = DEFAULT_DB_PATH,
) -> None:
    """Run an index server until interrupted, optionally joining an existing network."""
    with Database(db_path) as db:
        context = ServerContext(
            db=db,
            registry=WorkerRegistry(WORKER_THREADS),
            our_address=SourceInfo(ip_addr=ip, port=port),
        )
        runtime = _Runtime(context)
        try:
            runtime.start(ip, port)
            if connect_ip:
                runtime.join(SourceInfo(ip_addr=connect_ip, port=connect_port))
            print("SERVER SETUP COMPLETE.", flush=True)
            runtime.supervise()
        except KeyboardInterrupt:
            log.info("server interrupted")
        finally:
            runtime.stop()


def _port(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a port number: {text!r}") from None
    if not 0 <= value <= 0xFFFF:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return value


def _address(text: str) -> SourceInfo:
    host, sep, port = text.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected IP:PORT, got {text!r}")
    return SourceInfo(ip_addr=host, port=_port(port))


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dfdindex-server", description="Run a file index server."
    )
    parser.add_argument("ip", help="address to listen on")
    parser.add_argument("port", type=_port, help="port to listen on")
    parser.add_argument(
        "--connect", type=_address, metavar="IP:PORT", help="join the network of this server"
    )
    parser.add_argument("--db", default=DEFAULT_DB_PATH, help="index database file")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point; returns the exit status."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    connect: Optional[SourceInfo] = args.connect
    try:
        run_server(
            args.ip,
            args.port,
            connect.ip_addr if connect else "",
            connect.port if connect else 0,
            args.db,
        )
    except (RuntimeError, DatabaseError, sqlite3.Error, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())