import argparse
import asyncio
import concurrent.futures
import json
import logging
import os
import sys

# Allows running the script directly (e.g. `python tru_monitor`) by putting the
# project root on the path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tru_monitor import config
from tru_monitor.aggregator import FederationAggregator
from tru_monitor.anonymizer import FederationAnonymizer
from tru_monitor.bus import create_bus
from tru_monitor.database import AggregatorStore
from tru_monitor.federation_client import FederationClient
from tru_monitor.log_parser import LogParser
from tru_monitor.log_reader import FileLogSource, TcpLogSource
from tru_monitor.monitor import NodeMonitor
from tru_monitor.relay import run_relay
from tru_monitor.stats_publisher import StatsPublisher

# --- Centralized Logging Configuration ---
log = logging.getLogger("TruMonitor")


def parse_log_source(location: str, from_start: bool = False):
    """
    A log source is either a file path (/path/to/worker.log, ./worker.log) or
    a network address of a log forwarder (host:port).
    """
    if location.startswith('/') or location.startswith('.') or os.path.exists(location):
        if not os.path.exists(location):
            log.warning(f"Log file does not currently exist at '{location}' (may be created later).")
        return FileLogSource(location, from_start=from_start)

    host, _, port_str = location.rpartition(':')
    try:
        port = int(port_str)
    except ValueError:
        port = 0
    if not host or not 1 <= port <= 65535:
        log.critical(f"Invalid log source: '{location}'. Expected a file path or 'host:port'.")
        sys.exit(1)
    return TcpLogSource(host, port)


async def run_node(source, bus_url: str, credentials_path: str):
    anonymizer = FederationAnonymizer.load_or_create(credentials_path)
    bus = create_bus(bus_url)
    if not await bus.connect():
        log.warning("Federation bus unavailable; monitoring locally and dropping federation messages.")
    client = FederationClient(bus, anonymizer)
    monitor = NodeMonitor(source, client)
    log.info(f"Node monitor running as {anonymizer.node_id}")
    try:
        await monitor.run()
    finally:
        await client.close()


async def run_aggregator(bus_url: str, db_path: str, interval: float) -> int:
    store = AggregatorStore(db_path)
    store.init_db()
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=config.DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {config.DB_THREAD_POOL_SIZE} workers")

    bus = create_bus(bus_url)
    if not await bus.connect():
        log.critical(f"Failed to connect to federation bus at {bus_url}. Exiting.")
        executor.shutdown(wait=True)
        return 1

    aggregator = FederationAggregator(bus, store, executor)
    publisher = StatsPublisher(store, bus, executor, interval=interval)
    await aggregator.start()
    publisher.start()
    log.info("Federation aggregator is running")
    try:
        await asyncio.Event().wait()
    finally:
        await publisher.stop()
        await aggregator.stop()
        await bus.close()
        executor.shutdown(wait=True)
    return 0


def parse_file(path: str, out=None) -> int:
    """Parses a whole log file and writes one JSON object per event."""
    out = out or sys.stdout
    if not os.path.exists(path):
        log.critical(f"Log file not found: {path}")
        return 1
    count = 0
    with open(path, 'r', errors='replace') as f:
        for event in LogParser().parse(f):
            out.write(json.dumps(event.to_dict()) + '\n')
            count += 1
    log.info(f"Parsed {count} events from {path}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="TrueBit worker monitor with privacy-preserving federation",
        epilog="""
Examples:
  # Tail a local worker log and publish anonymized events
  %(prog)s node --log-source /var/log/truebit/worker.log --bus-url ws://relay:9086/bus

  # Read from a remote log forwarder
  %(prog)s node --log-source 192.168.1.100:9999

  # Run the network aggregator
  %(prog)s aggregator --bus-url ws://relay:9086/bus --db /data/aggregator.db

  # Run the WebSocket bus relay
  %(prog)s relay --port 9086

  # One-shot parse of a log file into JSON lines
  %(prog)s parse ./worker.log
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    commands = parser.add_subparsers(dest='command', required=True)

    node = commands.add_parser('node', help="Monitor a worker log and publish to the federation.")
    node.add_argument('--log-source', required=True, help="Log file path or forwarder 'host:port'.")
    node.add_argument('--bus-url', default=config.BUS_URL, help="Bus URL (ws://... or memory://).")
    node.add_argument('--credentials', default=config.CREDENTIALS_FILE, help="Node credentials file.")
    node.add_argument('--from-start', action='store_true', help="Read an existing log file from the start.")

    aggregator = commands.add_parser('aggregator', help="Aggregate federation messages into network stats.")
    aggregator.add_argument('--bus-url', default=config.BUS_URL)
    aggregator.add_argument('--db', default=config.DATABASE_FILE, help="SQLite database path.")
    aggregator.add_argument('--interval', type=float, default=config.STATS_PUBLISH_INTERVAL_SECONDS,
                            help="Seconds between stats snapshots.")

    relay = commands.add_parser('relay', help="Run the WebSocket bus relay.")
    relay.add_argument('--host', default='0.0.0.0')
    relay.add_argument('--port', type=int, default=9086)

    parse = commands.add_parser('parse', help="Parse a log file and print JSON lines.")
    parse.add_argument('path')

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    try:
        if args.command == 'node':
            source = parse_log_source(args.log_source, from_start=args.from_start)
            asyncio.run(run_node(source, args.bus_url, args.credentials))
        elif args.command == 'aggregator':
            sys.exit(asyncio.run(run_aggregator(args.bus_url, args.db, args.interval)))
        elif args.command == 'relay':
            run_relay(args.host, args.port)
        elif args.command == 'parse':
            sys.exit(parse_file(args.path))
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down.")


if __name__ == "__main__":
    main()
