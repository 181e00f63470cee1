#!/usr/bin/env python3
"""Main entry point for Health Device Bridge.

Discovers and connects health devices, analyzes their data and keeps a
durable queue that is synchronized to a remote endpoint in batches.

Usage:
    # Discover devices
    python -m src.main scan --duration-ms 10000

    # Stream one device for five minutes and print the summary
    python -m src.main monitor fitbit_001 --minutes 5

    # Flush the sync queue once
    python -m src.main sync

    # Run until interrupted, auto-connecting configured devices
    python -m src.main daemon

    # Inspect or change the tunable configuration
    python -m src.main config show
    python -m src.main config set sync_interval_minutes=30 offline_mode=false
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import copy
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import yaml

from src.analyzer import AnalysisResult
from src.config_manager import ConfigurationManager
from src.errors import ConfigValidationError, PipelineError
from src.integration_manager import IntegrationManager, create_integration_manager
from src.local_store import LocalStore
from src.models import HealthDataPoint

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    "storage": {
        "database_path": "./data/health_bridge.db",
    },
    "devices": {
        "adapter": "simulated",
        "emission_interval_seconds": 60,
        "health_devices_only": True,
        "auto_connect": [],
    },
    "sync": {
        "transport": "none",
        "endpoint": None,
        "ping_url": None,
        "api_key": None,
        "timeout_seconds": 10,
        "batch_size": 50,
        "max_queue_size": 1000,
        "retry_delay_seconds": 1.0,
        "connectivity_check_seconds": 30,
    },
    "mqtt": {
        "enabled": False,
        "host": "localhost",
        "port": 1883,
        "username": None,
        "password": None,
        "base_topic": "health_bridge",
    },
    "garmin": {
        "tokens_path": "./data/tokens",
    },
    "sensors": {
        "poll_interval_seconds": 1.0,
        "iio_path": "/sys/bus/iio/devices",
    },
    "logging": {
        "level": "INFO",
        "file": None,
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    },
}


def load_config(config_path: str | None = None) -> dict:
    """Load configuration from file or use defaults.

    Args:
        config_path: Path to YAML config file

    Returns:
        Configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f)
            if user_config and isinstance(user_config, dict):
                # Deep merge user config into defaults
                for section, values in user_config.items():
                    section_config = config.get(section)
                    if (
                        section_config is not None
                        and isinstance(section_config, dict)
                        and isinstance(values, dict)
                    ):
                        section_config.update(values)
                    else:
                        config[section] = values

    return config


def setup_logging(config: dict) -> None:
    """Setup logging based on configuration.

    Args:
        config: Configuration dictionary
    """
    log_config = config.get("logging", {})
    level = getattr(logging, log_config.get("level", "INFO").upper())
    format_str = log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=format_str, handlers=handlers)


def parse_assignments(pairs: list[str]) -> dict[str, Any]:
    """Parse ``KEY=VALUE`` arguments; values are read as YAML scalars/lists.

    Raises:
        ConfigValidationError: If an argument has no ``=``
    """
    updates: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigValidationError(f"Expected KEY=VALUE, got {pair!r}")
        try:
            updates[key.strip()] = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Cannot parse value for {key}: {e}", field=key.strip()) from e
    return updates


def print_analysis(point: HealthDataPoint, analysis: AnalysisResult | None) -> None:
    line = f"  {point.timestamp:%H:%M:%S} | {point.device_id or 'host':<18} | {point.type.value:<15} | {point}"
    if analysis is not None:
        line += f" | {analysis.category}"
    print(line)


def print_summary(summary_dict: dict) -> None:
    print(f"\n{'=' * 60}")
    print("Health Summary")
    print(f"{'=' * 60}")
    print(f"Data points:       {summary_dict['data_points']}")
    print(f"Avg heart rate:    {summary_dict['average_heart_rate'] or '-'}")
    print(f"Daily steps avg:   {summary_dict['daily_steps_average'] or '-'} (goal {summary_dict['daily_step_goal']})")
    print(f"Activity level:    {summary_dict['activity_level']}")
    print(f"Sleep quality:     {summary_dict['sleep_quality']}")
    print(f"Blood pressure:    {summary_dict['blood_pressure_category'] or '-'}")
    for name, trend in summary_dict["trends"].items():
        print(f"Trend {name + ':':<12} {trend['trend']}")
    tcm = summary_dict.get("tcm_insights")
    if tcm:
        print(f"Constitution:      {tcm['constitution']}")
        print(f"Qi level:          {tcm['qi_level']} ({tcm['qi_score']})")
        for recommendation in tcm["recommendations"]:
            print(f"  - {recommendation}")
        print(f"Seasonal advice:   {tcm['seasonal_advice']}")
    print(f"{'=' * 60}\n")


async def cmd_scan(args: argparse.Namespace, config: dict) -> int:
    """Handle scan command.

    Args:
        args: Parsed command line arguments
        config: Configuration dictionary

    Returns:
        Exit code
    """
    manager = create_integration_manager(config)
    try:
        init = await manager.initialize()
        if not init.success:
            logger.error(f"Initialization failed: {init.error}")
            return 1

        duration = args.duration_ms or manager.get_configuration().bluetooth_scan_duration
        print(f"\nScanning for devices ({duration / 1000:.0f}s)...\n")
        result = await manager.scan_for_devices(duration)
        if not result.success:
            logger.error(f"Scan failed: {result.error}")
            return 1

        if not result.data:
            print("No devices found.")
            return 0

        print(f"Found {len(result.data)} device(s):\n")
        print(f"{'ID':<20} {'Name':<28} {'Type':<18} {'RSSI':>5}  Services")
        print("-" * 90)
        for device in result.data:
            rssi = device.rssi if device.rssi is not None else "-"
            print(
                f"{device.id:<20} {device.name:<28} {device.device_type.value:<18} "
                f"{rssi:>5}  {', '.join(device.services)}"
            )
        print()
        return 0
    finally:
        await manager.cleanup()


async def cmd_monitor(args: argparse.Namespace, config: dict) -> int:
    """Handle monitor command."""
    if args.interval:
        config["devices"]["emission_interval_seconds"] = args.interval
    manager = create_integration_manager(config)
    try:
        init = await manager.initialize()
        if not init.success:
            logger.error(f"Initialization failed: {init.error}")
            return 1

        manager.add_analysis_listener(print_analysis)
        result = await manager.connect_device(args.device_id)
        if not result.success:
            logger.error(f"Could not connect to {args.device_id}: {result.error}")
            return 1

        print(f"\nMonitoring {result.data} for {args.minutes} minute(s), Ctrl+C to stop early\n")
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.sleep(args.minutes * 60)

        summary = await manager.get_health_summary()
        if summary.success:
            print_summary(summary.data.to_dict())
        return 0
    finally:
        await manager.cleanup()


async def cmd_sync(args: argparse.Namespace, config: dict) -> int:
    """Handle sync command."""
    manager = create_integration_manager(config)
    try:
        init = await manager.initialize()
        if not init.success:
            logger.error(f"Initialization failed: {init.error}")
            return 1

        queued = manager.get_sync_status().queue_size
        result = await manager.sync_now()
        sync_result = result.data

        print(f"\n{'=' * 60}")
        print("Sync Summary")
        print(f"{'=' * 60}")
        print(f"Queued items:   {queued}")
        if sync_result is not None:
            print(f"Synced:         {sync_result.synced_count}")
            print(f"Failed:         {sync_result.failed_count}")
        if result.error:
            print(f"Error:          {result.error}")
        print(f"Still queued:   {manager.get_sync_status().queue_size}")
        print(f"{'=' * 60}\n")

        return 0 if result.success else 1
    finally:
        await manager.cleanup()


async def run_daemon(manager: IntegrationManager, auto_connect: list[str]) -> None:
    """Run until SIGINT/SIGTERM.

    Args:
        manager: Initialized integration manager
        auto_connect: Device ids to connect at startup
    """
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Handle shutdown signals
    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    for device_id in auto_connect:
        result = await manager.connect_device(device_id)
        if result.success:
            logger.info(f"Auto-connected {device_id}")
        else:
            logger.error(f"Auto-connect of {device_id} failed: {result.error}")

    # Items left over from the previous run
    if manager.get_sync_status().queue_size:
        await manager.sync_now()

    logger.info("Daemon running")
    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    logger.info("Daemon stopped")


async def cmd_daemon(args: argparse.Namespace, config: dict) -> int:
    """Handle daemon command."""
    manager = create_integration_manager(config)
    try:
        init = await manager.initialize()
        if not init.success:
            logger.error(f"Initialization failed: {init.error}")
            return 1

        if manager.publisher is not None and await asyncio.to_thread(manager.publisher.connect):
            await asyncio.to_thread(manager.publisher.publish_status, "online", "Bridge started")

        await run_daemon(manager, config.get("devices", {}).get("auto_connect") or [])
        return 0
    finally:
        await manager.cleanup()


async def cmd_config(args: argparse.Namespace, config: dict) -> int:
    """Handle config show/set commands."""
    store = LocalStore(config.get("storage", {}).get("database_path", "./data/health_bridge.db"))
    config_manager = ConfigurationManager(store)
    await config_manager.initialize()

    if args.config_command == "set":
        try:
            await config_manager.update_configuration(parse_assignments(args.assignments))
        except ConfigValidationError as e:
            print(f"Invalid configuration: {e.message}")
            return 1

    print(config_manager.export_configuration())
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Health device integration and sync bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="config/config.yaml",
        help="Path to config file (default: config/config.yaml)",
    )
    parser.add_argument(
        "--debug",
        "-d",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Discover devices")
    scan_parser.add_argument(
        "--duration-ms",
        type=int,
        help="Scan duration in milliseconds (default: configured bluetooth_scan_duration)",
    )

    # Monitor command
    monitor_parser = subparsers.add_parser("monitor", help="Stream and analyze one device")
    monitor_parser.add_argument("device_id", help="Device to connect")
    monitor_parser.add_argument(
        "--minutes",
        "-m",
        type=float,
        default=1.0,
        help="How long to monitor (default: 1)",
    )
    monitor_parser.add_argument(
        "--interval",
        "-i",
        type=float,
        help="Emission interval in seconds (overrides config)",
    )

    # Sync command
    subparsers.add_parser("sync", help="Flush the sync queue once")

    # Daemon command
    subparsers.add_parser("daemon", help="Run continuously")

    # Config command
    config_parser = subparsers.add_parser("config", help="Show or update device integration config")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the current configuration")
    set_parser = config_sub.add_parser("set", help="Update fields, e.g. sync_interval_minutes=30")
    set_parser.add_argument("assignments", nargs="+", metavar="KEY=VALUE")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Load config
    config = load_config(args.config)

    # Setup logging
    if args.debug:
        config["logging"]["level"] = "DEBUG"
    setup_logging(config)

    commands = {
        "scan": cmd_scan,
        "monitor": cmd_monitor,
        "sync": cmd_sync,
        "daemon": cmd_daemon,
        "config": cmd_config,
    }

    # Run command
    try:
        exit_code = asyncio.run(commands[args.command](args, config))
        sys.exit(exit_code)

    except KeyboardInterrupt:
        print("\nCancelled.")
        sys.exit(130)
    except (PipelineError, ValueError) as e:
        logger.error(f"Fatal error: {e}")
        if args.debug:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
