from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import time
from pathlib import Path

import httpx
import structlog
import yaml

from process_checks.alerts import TelegramAlertSink
from process_checks.config import MonitorSettings, load_config
from process_checks.evaluator import build_evaluator
from process_checks.history import HealthHistoryStore, RestartAttemptCounter
from process_checks.pm2_client import Pm2Client, ProcessManager, ProviderError
from process_checks.remediation import RemediationController, resolve_self_identity
from process_checks.scheduler import MonitorScheduler
from process_checks.status import build_status_message


logger = structlog.get_logger("pm2-health-monitor")


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_scheduler(
    settings: MonitorSettings,
    http_client: httpx.AsyncClient,
    manager: ProcessManager | None = None,
) -> MonitorScheduler:
    manager = manager or Pm2Client(
        binary=settings.pm2_binary,
        command_timeout_seconds=settings.command_timeout_seconds,
        ping_timeout_seconds=settings.ping_timeout_seconds,
    )
    identity = resolve_self_identity(settings.self_process_name, exclude=settings.exclude_self_from_operations)
    alerts = TelegramAlertSink(
        http_client,
        bot_token=settings.alerting.bot_token,
        destinations=settings.alerting.destinations(),
        timeout_seconds=settings.alerting.send_timeout_seconds,
    )
    store = HealthHistoryStore()
    controller = RemediationController(
        manager,
        alerts,
        store,
        RestartAttemptCounter(),
        identity=identity,
        restart_threshold=settings.restart_threshold,
        escalation_threshold=settings.escalation_threshold,
        cooldown_seconds=settings.alerting.cooldown_seconds,
        recovery_checks=settings.recovery_checks,
    )
    return MonitorScheduler(
        manager,
        build_evaluator(settings, manager, http_client),
        controller,
        alerts,
        store=store,
        cpu_threshold_percent=settings.cpu_threshold_percent,
        memory_threshold_mb=settings.memory_threshold_mb,
        monitor_interval_seconds=settings.monitor_interval_seconds,
        health_check_enabled=settings.health_check_enabled,
        health_check_interval_seconds=settings.health_check_interval_seconds,
    )


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await stop.wait()


async def run_monitor(settings: MonitorSettings, *, once: bool = False, status_only: bool = False) -> int:
    async with httpx.AsyncClient() as http_client:
        scheduler = build_scheduler(settings, http_client)

        if status_only:
            try:
                processes = await scheduler.manager.list()
            except ProviderError as e:
                logger.error("Could not list PM2 processes", error=str(e), command=e.command)
                return 1
            print(build_status_message(processes, now=time.time()), end="")
            return 0

        if once:
            basic = await scheduler.run_basic_pass()
            logger.info("Basic check", evaluated=len(basic.evaluated), alerts=basic.alerts_sent, error=basic.fetch_error)
            if settings.health_check_enabled:
                report = await scheduler.run_health_pass()
                return 1 if report.fetch_error else 0
            return 1 if basic.fetch_error else 0

        scheduler.start()
        try:
            await _wait_for_shutdown()
        finally:
            scheduler.shutdown()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="PM2 process health monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("PM2_MONITOR_CONFIG", str(Path(__file__).with_name("config.yaml"))),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one basic and one health pass and exit")
    parser.add_argument("--status", action="store_true", help="Print a PM2 status overview and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        settings = load_config(args.config)
    except (ValueError, yaml.YAMLError) as e:
        logger.error("Invalid configuration", config=args.config, error=str(e))
        return 2

    return asyncio.run(run_monitor(settings, once=bool(args.once), status_only=bool(args.status)))


if __name__ == "__main__":
    raise SystemExit(main())
