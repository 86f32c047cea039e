#!/usr/bin/env python3
"""
netup - UDP Latency and Uptime Probe
Entry point hosting the client and server roles.
"""

import signal
import sys
import time
from pathlib import Path
from typing import Optional

import click

from .client.probe_client import ProbeClient
from .core.config import Config
from .core.events import EventChannel
from .core.logger import get_logger, setup_logging
from .monitor.stats import Monitor
from .recorder.recorder import Recorder
from .server.responder import EchoPolicy, Responder

DEFAULT_CONFIG = Path('config.toml')

logger = get_logger('cli')


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def load_config(config_file: Optional[str]) -> Config:
    """Load the given file, ./config.toml if present, or the defaults."""
    if config_file:
        return Config.from_file(Path(config_file))
    if DEFAULT_CONFIG.exists():
        return Config.from_file(DEFAULT_CONFIG)
    return Config.default()


@click.command()
@click.option('--role', type=click.Choice(['client', 'server']),
              required=True, help='Role to run')
@click.option('--config', '-c', 'config_file', default=None,
              type=click.Path(exists=True, dir_okay=False),
              help='Configuration file path (default: ./config.toml if present)')
@click.option('--remote', '-r', help='Responder address for the client, host:port')
@click.option('--bind', '-b', help='Local address to bind, host:port')
@click.option('--policy', type=click.Choice(['source', 'return_port']),
              help='Echo addressing policy for the server')
@click.option('--addressed', is_flag=True,
              help='Prefix probes with the client return port')
@click.option('--export', '-e', 'export_path', type=click.Path(dir_okay=False),
              help='CSV file receiving the probe history')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
def main(role: str, config_file: Optional[str], remote: Optional[str], bind: Optional[str],
         policy: Optional[str], addressed: Optional[bool], export_path: Optional[str],
         verbose: bool):
    """netup - UDP Latency and Uptime Probe"""

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        cfg = load_config(config_file)

        # Command line overrides
        if remote:
            cfg.client.remote = remote
        if bind and role == 'client':
            cfg.client.bind = bind
        if bind and role == 'server':
            cfg.server.bind = bind
        if policy:
            cfg.server.policy = policy
        if addressed:
            cfg.client.addressed = True
        if export_path:
            cfg.recorder.export_path = export_path
        cfg.validate()

        setup_logging(cfg.logging, verbose)

        logger.info(f"Starting netup in {role} mode")

        if role == 'client':
            run_client(cfg)
        elif role == 'server':
            run_server(cfg)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        if verbose:
            logger.exception("Full traceback:")
        sys.exit(1)


def run_client(config: Config):
    """Run the probe client together with its recorder and monitor."""
    events = EventChannel()
    client = ProbeClient(
        remote_address=config.client.remote_address,
        events=events,
        bind_address=config.client.bind_address,
        interval_ms=config.client.interval_ms,
        port_range=(config.client.port_range_start, config.client.port_range_end),
        addressed=config.client.addressed,
        idle_sleep=config.client.idle_sleep,
    )
    recorder = Recorder(
        events,
        export_path=Path(config.recorder.export_path) if config.recorder.export_path else None,
        export_interval=config.recorder.export_interval,
        max_delay_ms=config.recorder.max_delay_ms,
        retain_ms=config.recorder.retain_ms,
    )
    monitor = Monitor(
        recorder,
        lookback_ms=config.recorder.lookback_ms,
        max_silence_ms=config.recorder.max_silence_ms,
        interval=config.recorder.summary_interval,
    )

    try:
        recorder.start()
        monitor.start()
        client.start()
        logger.info("Probe client started successfully")

        # Keep running until interrupted
        while True:
            time.sleep(1)
            if recorder.failure is not None:
                raise recorder.failure

    finally:
        client.stop()
        monitor.stop()
        recorder.stop()
        logger.info(f"Probe client stopped: {client.get_status()}")


def run_server(config: Config):
    """Run the echo responder."""
    responder = Responder(
        config.server.bind_address,
        policy=EchoPolicy(config.server.policy),
    )

    try:
        responder.start()
        logger.info("Responder started successfully")

        # Keep running until interrupted
        while True:
            time.sleep(1)

    finally:
        responder.stop()
        logger.info(f"Responder stopped: {responder.get_status()}")


if __name__ == '__main__':
    main()
