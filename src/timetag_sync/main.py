#!/usr/bin/env python3
"""
timetag-sync: Master/Slave Synchronized Time-Tagging

Main entry point. Two nodes, each with a multi-channel time tagger, run
synchronized acquisitions:

1. The master asks the slave to prepare and waits for ready_for_trigger
2. The master broadcasts a trigger and both nodes acquire for a duration
3. Each node merges its channel streams into one time-ordered file
4. The slave sends (the leading fraction of) its data back to the master
5. The master estimates the slave-master offset and writes a sync report

Usage:
    # Slave node (runs until SIGINT/SIGTERM)
    timetag-sync slave --config /etc/timetag-sync/slave.toml

    # Master node, three consecutive sessions
    timetag-sync master --config /etc/timetag-sync/master.toml --sessions 3

    # Offline alignment of two recorded files
    timetag-sync align master_results.bin slave_results.bin --full

Architecture:

    ┌──────────── master ─────────────┐        ┌───────────── slave ─────────────┐
    │ time tagger ─▶ listeners/merger │        │ listeners/merger ◀─ time tagger │
    │        │                        │ trigger│                        │        │
    │        ▼            coordinator ├───────▶│ coordinator            ▼        │
    │  master_results.bin     ▲       │◀───────┤ status, sync   slave_results.bin│
    │        │                │       │◀───────┤ file transfer                   │
    │        ▼                │       │        └─────────────────────────────────┘
    │  offset estimator ─▶ sync report│
    └─────────────────────────────────┘
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import toml
import zmq

# Set up logging before imports that use it
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('timetag-sync')

from .coordinator.config import SyncConfig
from .errors import SyncError
from .engine.alignment import align_files
from .output.health_server import HealthServer
from .output.timestamp_files import convert
from .timing.offset_estimator import OffsetEstimator


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from TOML file."""
    if config_path:
        if not Path(config_path).exists():
            logger.warning(f"Config file {config_path} not found, using defaults")
        else:
            with open(config_path, 'r') as f:
                return toml.load(f)

    # Default configuration
    return SyncConfig().to_sections()


def build_config(args: argparse.Namespace) -> SyncConfig:
    """Config file values overridden by command-line flags."""
    config = SyncConfig.from_dict(load_config(args.config))
    overrides = {
        'output_dir': args.output_dir,
        'health_port': args.health_port,
        'instrument': getattr(args, 'instrument', None),
        'duration': getattr(args, 'duration', None),
        'slave_address': getattr(args, 'slave_address', None),
        'master_address': getattr(args, 'master_address', None),
    }
    channels = getattr(args, 'channels', None)
    if channels:
        overrides['channels'] = tuple(channels)
    return config.with_overrides(**overrides)


def _install_signal_handlers(coordinator):
    def handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        coordinator.request_stop()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def _start_health_server(config: SyncConfig, coordinator) -> Optional[HealthServer]:
    if config.health_port <= 0:
        return None
    server = HealthServer(port=config.health_port)
    server.set_coordinator(coordinator)
    server.start()
    return server


def run_master(args: argparse.Namespace) -> int:
    from .coordinator.master import MasterCoordinator

    config = build_config(args)
    master = MasterCoordinator(config)
    _install_signal_handlers(master)
    health = None
    try:
        master.start()
        health = _start_health_server(config, master)
        reports = master.run_sessions(args.sessions)
    finally:
        if health:
            health.stop()
        master.stop()

    for report in reports:
        if report.offset is not None:
            logger.info(f"Session {report.sequence_id}: offset {report.offset.mean_offset:.1f} ps, "
                        f"quality {report.offset.quality_percent:.1f}%")
        else:
            logger.info(f"Session {report.sequence_id}: no offset estimate")
    return 0 if len(reports) == args.sessions else 1


def run_slave(args: argparse.Namespace) -> int:
    from .coordinator.slave import SlaveCoordinator

    config = build_config(args)
    slave = SlaveCoordinator(config)
    _install_signal_handlers(slave)
    health = None
    try:
        slave.start()
        health = _start_health_server(config, slave)
        slave.serve_forever()
    finally:
        if health:
            health.stop()
        slave.stop()
    return 0


def run_align(args: argparse.Namespace) -> int:
    estimator = OffsetEstimator(sync_fraction=args.sync_fraction)
    output_dir = Path(args.output_dir) if args.output_dir else Path(args.master).parent
    report = align_files(
        Path(args.master),
        Path(args.slave),
        output_dir,
        estimator,
        slave_is_leading=not args.full,
        text_output=not args.no_text,
    )
    print(report.to_json())
    return 0 if report.offset is not None or report.alignment is not None else 1


def run_convert(args: argparse.Namespace) -> int:
    path = convert(args.src, args.dst)
    logger.info(f"Wrote {path}")
    return 0


def _add_common(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--config', '-c',
        help='Path to TOML configuration file'
    )
    parser.add_argument(
        '--output-dir', '-o',
        help='Output directory (overrides config)'
    )
    parser.add_argument(
        '--health-port',
        type=int,
        help='HTTP port for health monitoring endpoint (0 to disable)'
    )
    parser.add_argument(
        '--instrument',
        choices=['time_controller', 'simulated'],
        help='Time tagger backend (overrides config)'
    )


def _channel_list(value: str):
    return [int(c) for c in value.split(',') if c.strip()]


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='timetag-sync',
        description='timetag-sync: Master/Slave Synchronized Time-Tagging',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start the slave responder
    timetag-sync slave --config slave.toml

    # Run five sessions against the slave at 10.0.0.2
    timetag-sync master --slave-address 10.0.0.2 --sessions 5

    # Both roles on one host with simulated instruments
    timetag-sync slave --instrument simulated -o /tmp/slave &
    timetag-sync master --instrument simulated -o /tmp/master

    # Convert a binary timestamp file to text
    timetag-sync convert master_results.bin master_results.txt
        """
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    sub = parser.add_subparsers(dest='command')

    master = sub.add_parser('master', help='Run synchronized acquisition sessions')
    _add_common(master)
    master.add_argument('--sessions', '-n', type=int, default=1,
                        help='Number of consecutive sessions (default: 1)')
    master.add_argument('--duration', '-t', type=float,
                        help='Acquisition duration in seconds (overrides config)')
    master.add_argument('--channels', type=_channel_list,
                        help='Comma-separated channel list, e.g. 1,2,3,4')
    master.add_argument('--slave-address',
                        help='Slave host name or address (overrides config)')
    master.set_defaults(func=run_master)

    slave = sub.add_parser('slave', help='Run the slave responder until interrupted')
    _add_common(slave)
    slave.add_argument('--master-address',
                       help='Master host name or address (overrides config)')
    slave.set_defaults(func=run_slave)

    align = sub.add_parser('align', help='Estimate offset between two recorded files')
    align.add_argument('master', help='Master binary timestamp file')
    align.add_argument('slave', help='Slave binary timestamp file')
    align.add_argument('--output-dir', '-o',
                       help='Output directory (default: next to the master file)')
    align.add_argument('--sync-fraction', type=float, default=0.1,
                       help='Leading fraction used for estimation (default: 0.1)')
    align.add_argument('--full', action='store_true',
                       help='Slave file holds full data; take its leading fraction')
    align.add_argument('--no-text', action='store_true',
                       help='Skip text mirrors of the output files')
    align.set_defaults(func=run_align)

    conv = sub.add_parser('convert', help='Convert timestamp files between text and binary')
    conv.add_argument('src', help='Source file (.bin or .txt)')
    conv.add_argument('dst', help='Destination file (.bin or .txt)')
    conv.set_defaults(func=run_convert)

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except (OSError, ValueError, SyncError, zmq.ZMQError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
