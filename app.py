#!/usr/bin/env python3
"""
Threat Scan Service - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Wires every component into one controlled runtime.

- HTTP API (FastAPI served by uvicorn)
- In-process bus with the poll worker and alert dispatcher
- Weekly digest scheduler

============================================================
USAGE
============================================================
    python app.py --mode full
    python app.py --mode api --port 8080
    python app.py --mode digest --once

Configuration comes from environment variables (a .env file is
loaded when present). See scan_engine/config.py.

============================================================
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

import uvicorn

from digest import DigestScheduler, WeeklyDigestAggregator
from notifications import (
    AlertDispatcher,
    FcmPushClient,
    SendGridEmailClient,
    TwilioSmsClient,
    WebhookNotifier,
)
from scan_api import create_app
from scan_engine import (
    ConsentGate,
    CredentialProvider,
    InMemoryMessageBus,
    PollWorker,
    QuotaLedger,
    ResolutionClient,
    ResultRecorder,
    ScanEngineConfig,
    ScanOrchestrator,
    SystemClock,
    ThresholdResolver,
)
from storage import Database, ScanStore


MODES = ("full", "api", "digest")


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "json") -> logging.Logger:
    """
    Set up structured logging on stdout.

    Args:
        level: Log level
        log_format: Output format (json or text)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("threat_scan")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="threat-scan",
        description="Image threat scanning service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Runtime Modes:
  full    - API, poll worker, alert dispatcher and weekly digest
  api     - API, poll worker and alert dispatcher (no digest)
  digest  - Weekly digest only

Examples:
  %(prog)s --mode full
  %(prog)s --mode digest --once
        """
    )

    # --------------------------------------------------------
    # Mode Selection
    # --------------------------------------------------------
    parser.add_argument(
        "--mode", "-m",
        type=str,
        choices=MODES,
        default="full",
        help="Runtime mode (default: full)",
    )

    # --------------------------------------------------------
    # Server Options
    # --------------------------------------------------------
    server_group = parser.add_argument_group("Server Options")

    server_group.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Bind address (default: 0.0.0.0)",
    )

    server_group.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Bind port (default: 8000)",
    )

    # --------------------------------------------------------
    # Digest Options
    # --------------------------------------------------------
    digest_group = parser.add_argument_group("Digest Options")

    digest_group.add_argument(
        "--once",
        action="store_true",
        help="Run the digest once and exit (digest mode)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="json",
        help="Log format (default: json)",
    )

    parser.add_argument(
        "--validate-config",
        action="store_true",
        help="Validate configuration and exit",
    )

    return parser


# ============================================================
# WIRING
# ============================================================

class ThreatScanApplication:
    """
    Holds every wired component for one process.
    """

    def __init__(self, config: ScanEngineConfig):
        self.config = config
        self.clock = SystemClock()

        self.database = Database(config.database)
        self.store = ScanStore(self.database, self.clock)
        self.bus = InMemoryMessageBus(config.bus)

        # Scan pipeline
        self.credentials = CredentialProvider(config.resolution.credential_ref, clock=self.clock)
        self.client = ResolutionClient(config.resolution, self.credentials, self.clock)
        self.thresholds = ThresholdResolver(self.store, config.thresholds, clock=self.clock)
        self.recorder = ResultRecorder(
            self.store, self.thresholds, self.bus, config.alerts, self.clock
        )
        self.orchestrator = ScanOrchestrator(
            store=self.store,
            quota=QuotaLedger(self.store, config.quota, self.clock),
            consent=ConsentGate(self.store),
            client=self.client,
            recorder=self.recorder,
            bus=self.bus,
            config=config,
            clock=self.clock,
        )
        self.poll_worker = PollWorker(
            self.store, self.client, self.recorder, config.resolution.poll, self.clock
        )

        # Alert channels
        self.sms = TwilioSmsClient(config.alerts.sms)
        self.push = FcmPushClient(config.alerts.push)
        self.webhooks = WebhookNotifier(
            max_in_flight=config.alerts.webhook_max_in_flight,
            timeout_seconds=config.alerts.webhook_timeout_seconds,
            user_agent=config.alerts.webhook_user_agent,
        )
        self.dispatcher = AlertDispatcher(
            self.store, self.sms, self.push, self.webhooks, config.alerts
        )

        # Digest
        self.email = SendGridEmailClient(config.digest.email)
        self.aggregator = WeeklyDigestAggregator(
            self.store, self.email, config.digest, self.clock
        )
        self.scheduler = DigestScheduler(self.aggregator, config.digest, self.clock)

        self.poll_worker.subscribe(self.bus)
        self.dispatcher.subscribe(self.bus)

    async def start(self, mode: str) -> None:
        await self.database.connect()
        if mode in ("full", "api"):
            await self.bus.start()
        if mode == "full":
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.bus.stop()
        for closable in (self.client, self.sms, self.push, self.webhooks, self.email):
            await closable.close()
        await self.database.disconnect()


# ============================================================
# RUNTIME
# ============================================================

async def _serve_api(application: ThreatScanApplication, host: str, port: int) -> None:
    api = create_app(application.orchestrator)
    server = uvicorn.Server(uvicorn.Config(api, host=host, port=port, log_config=None))
    await server.serve()


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def run_application(args) -> int:
    """
    Run the service.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)

    config = ScanEngineConfig.from_env()
    application = ThreatScanApplication(config)

    try:
        await application.start(args.mode)

        if args.mode == "digest":
            if args.once:
                report = await application.aggregator.run()
                print(json.dumps(report.to_dict(), indent=2))
                return 0
            application.scheduler.start()
            await _wait_for_shutdown()
            return 0

        logger.info(f"Serving on {args.host}:{args.port} (mode={args.mode})")
        await _serve_api(application, args.host, args.port)
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await application.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_format)

    if args.validate_config:
        errors = ScanEngineConfig.from_env().validate()
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1 if errors else 0

    return asyncio.run(run_application(args))


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
