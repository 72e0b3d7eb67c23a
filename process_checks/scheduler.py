"""Periodic basic-threshold and deep-health passes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from process_checks.alerts import AlertSink, build_high_cpu_alert, build_high_memory_alert
from process_checks.evaluator import HealthEvaluator
from process_checks.history import HealthHistoryStore
from process_checks.pm2_client import ProcessManager, ProviderError
from process_checks.remediation import RemediationController, RemediationOutcome


logger = structlog.get_logger(__name__)

BASIC_JOB_ID = "basic-threshold-check"
HEALTH_JOB_ID = "deep-health-check"


@dataclass
class PassReport:
    skipped: bool = False
    fetch_error: str | None = None
    evaluated: list[str] = field(default_factory=list)
    unhealthy: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    outcomes: list[RemediationOutcome] = field(default_factory=list)
    alerts_sent: int = 0


class MonitorScheduler:
    """
    Owns the health state and drives both monitoring loops.

    Only the deep-health pass mutates the history store and restart counters, and it
    never runs concurrently with itself: a tick that fires while a pass is in flight
    is dropped, not queued.
    """

    def __init__(
        self,
        manager: ProcessManager,
        evaluator: HealthEvaluator,
        controller: RemediationController,
        alerts: AlertSink,
        *,
        store: HealthHistoryStore,
        cpu_threshold_percent: float = 80.0,
        memory_threshold_mb: float = 80.0,
        monitor_interval_seconds: float = 30.0,
        health_check_enabled: bool = True,
        health_check_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.manager = manager
        self.evaluator = evaluator
        self.controller = controller
        self.alerts = alerts
        self.store = store
        self.cpu_threshold_percent = float(cpu_threshold_percent)
        self.memory_threshold_mb = float(memory_threshold_mb)
        self.monitor_interval_seconds = float(monitor_interval_seconds)
        self.health_check_enabled = bool(health_check_enabled)
        self.health_check_interval_seconds = float(health_check_interval_seconds)
        self.clock = clock
        self._health_pass_in_flight = False
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def health_pass_in_flight(self) -> bool:
        return self._health_pass_in_flight

    async def run_basic_pass(self) -> PassReport:
        report = PassReport()
        try:
            processes = await self.manager.list()
        except ProviderError as e:
            logger.warning("Basic check: could not list processes", error=str(e))
            report.fetch_error = str(e)
            return report

        for proc in processes:
            if not proc.is_online:
                continue
            report.evaluated.append(proc.name)
            if proc.cpu_percent > self.cpu_threshold_percent:
                await self.alerts.send(build_high_cpu_alert(proc.name, proc.cpu_percent, self.cpu_threshold_percent))
                report.alerts_sent += 1
            memory_mb = round(proc.memory_mb)
            if memory_mb > self.memory_threshold_mb:
                await self.alerts.send(build_high_memory_alert(proc.name, memory_mb, self.memory_threshold_mb))
                report.alerts_sent += 1
        logger.debug("Basic check complete", processes=len(report.evaluated), alerts=report.alerts_sent)
        return report

    async def run_health_pass(self) -> PassReport:
        if self._health_pass_in_flight:
            logger.info("Deep health check still running; skipping this tick")
            return PassReport(skipped=True)

        self._health_pass_in_flight = True
        started = time.perf_counter()
        try:
            return await self._health_pass()
        finally:
            self._health_pass_in_flight = False
            logger.debug("Deep health check finished", elapsed_seconds=round(time.perf_counter() - started, 3))

    async def _health_pass(self) -> PassReport:
        report = PassReport()
        try:
            processes = await self.manager.list()
        except ProviderError as e:
            logger.warning("Health check: could not list processes", error=str(e))
            report.fetch_error = str(e)
            return report

        self.store.forget_missing(p.name for p in processes)

        for proc in processes:
            if not proc.is_online:
                continue
            name = proc.name
            try:
                verdict = await self.evaluator.evaluate(proc, self.store, self.clock())
                outcome = await self.controller.handle(verdict, self.clock())
            except Exception as e:
                logger.exception("Health evaluation failed", process=name)
                report.errors[name] = f"{type(e).__name__}: {e}"
                continue
            report.evaluated.append(name)
            report.outcomes.append(outcome)
            if not verdict.healthy:
                report.unhealthy.append(name)

        logger.info(
            "Health check complete",
            mode=self.evaluator.mode,
            evaluated=len(report.evaluated),
            unhealthy=report.unhealthy,
            errors=len(report.errors),
        )
        return report

    async def _basic_job(self) -> None:
        try:
            await self.run_basic_pass()
        except Exception:
            logger.exception("Basic check crashed")

    async def _health_job(self) -> None:
        try:
            await self.run_health_pass()
        except Exception:
            logger.exception("Health check crashed")

    def start(self) -> None:
        """Register both loops on an AsyncIOScheduler bound to the running event loop."""
        if self._scheduler is not None:
            logger.warning("Scheduler already running")
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._basic_job,
            trigger=IntervalTrigger(seconds=self.monitor_interval_seconds),
            id=BASIC_JOB_ID,
            name="Basic CPU/memory threshold check",
            coalesce=True,
        )
        if self.health_check_enabled:
            # The in-flight flag decides what gets dropped, so let overlapping ticks reach it.
            scheduler.add_job(
                self._health_job,
                trigger=IntervalTrigger(seconds=self.health_check_interval_seconds),
                id=HEALTH_JOB_ID,
                name="Deep health check",
                max_instances=2,
                coalesce=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Monitoring started",
            interval_seconds=self.monitor_interval_seconds,
            health_check_enabled=self.health_check_enabled,
            health_check_interval_seconds=self.health_check_interval_seconds,
            mode=self.evaluator.mode,
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Monitoring stopped")
