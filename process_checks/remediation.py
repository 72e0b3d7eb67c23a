from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Mapping

import structlog

from process_checks.alerts import (
    AlertSink,
    build_health_alert,
    build_manual_intervention_alert,
    build_restart_failed_alert,
    build_restart_performed_alert,
)
from process_checks.history import HealthHistoryStore, HealthRecord, RestartAttemptCounter
from process_checks.models import HealthVerdict
from process_checks.pm2_client import ALL_PROCESSES, ProcessManager, ProviderError


logger = structlog.get_logger(__name__)


class SelfExclusionError(RuntimeError):
    """A lifecycle operation targeted the monitor's own PM2 process."""


@dataclass(frozen=True)
class SelfIdentity:
    name: str | None
    exclude: bool = True

    @property
    def active(self) -> bool:
        return bool(self.exclude and self.name)

    def is_self(self, name: str) -> bool:
        return self.active and name == self.name


def resolve_self_identity(
    configured_name: str | None,
    *,
    exclude: bool = True,
    environ: Mapping[str, str] | None = None,
) -> SelfIdentity:
    """
    Work out which PM2 process we are.

    Explicit configuration wins; otherwise PM2 exports `name` (alongside `pm_id`) into the
    environment of every process it manages. If neither is available exclusion is disabled.
    """
    env = os.environ if environ is None else environ
    name = str(configured_name or "").strip() or None
    if name is None and "pm_id" in env:
        name = str(env.get("name") or "").strip() or None

    identity = SelfIdentity(name=name, exclude=bool(exclude))
    if exclude and name is None:
        logger.warning(
            "SELF-EXCLUSION DISABLED: own PM2 process name is unknown; bulk restart/stop/start "
            "may hit this monitor. Set PM2_PROCESS_NAME to fix."
        )
    elif not exclude:
        logger.warning("Self-exclusion turned off by configuration", self_name=name)
    else:
        logger.info("Self-exclusion active", self_name=name)
    return identity


def exclude_self(names: Iterable[str], identity: SelfIdentity) -> list[str]:
    return [n for n in names if not identity.is_self(n)]


@dataclass(frozen=True)
class RemediationOutcome:
    name: str
    healthy: bool
    alerted: bool = False
    # None | restarted | restart_failed | manual_intervention | skipped_self | recovered
    action: str | None = None


class RemediationController:
    """
    Per-process Healthy -> Unhealthy(n) -> Escalated state machine.

    Health alerts are rate limited by `cooldown_seconds`; restart and escalation alerts
    are not, since they are already bounded by the restart threshold.
    """

    def __init__(
        self,
        manager: ProcessManager,
        alerts: AlertSink,
        store: HealthHistoryStore,
        restart_attempts: RestartAttemptCounter,
        *,
        identity: SelfIdentity,
        restart_threshold: int = 5,
        escalation_threshold: int = 3,
        cooldown_seconds: float = 300.0,
        recovery_checks: int = 3,
    ) -> None:
        self.manager = manager
        self.alerts = alerts
        self.store = store
        self.restart_attempts = restart_attempts
        self.identity = identity
        self.restart_threshold = max(1, int(restart_threshold))
        self.escalation_threshold = max(1, int(escalation_threshold))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.recovery_checks = max(1, int(recovery_checks))

    def _cooldown_elapsed(self, record: HealthRecord, now: float) -> bool:
        if record.last_alert_time is None:
            return True
        return (float(now) - float(record.last_alert_time)) >= self.cooldown_seconds

    async def handle(self, verdict: HealthVerdict, now: float) -> RemediationOutcome:
        name = verdict.name
        if verdict.healthy:
            record = self.store.mark_healthy(name, now)
            if self.restart_attempts.get(name) > 0 and record.consecutive_healthy_checks >= self.recovery_checks:
                logger.info(
                    "Process recovered after auto-restart",
                    process=name,
                    restart_attempts=self.restart_attempts.get(name),
                )
                self.restart_attempts.reset(name)
                return RemediationOutcome(name=name, healthy=True, action="recovered")
            return RemediationOutcome(name=name, healthy=True)

        record = self.store.mark_unhealthy(name, now)
        logger.info(
            "Process unhealthy",
            process=name,
            reasons=verdict.reasons,
            consecutive=record.consecutive_unhealthy_checks,
        )

        alerted = False
        if self._cooldown_elapsed(record, now):
            await self.alerts.send(build_health_alert(name, verdict.reasons, record.consecutive_unhealthy_checks))
            record.last_alert_time = float(now)
            alerted = True

        action = None
        if record.consecutive_unhealthy_checks >= self.escalation_threshold:
            action = await self._escalate(name, verdict.reasons, record, now)
        return RemediationOutcome(name=name, healthy=False, alerted=alerted, action=action)

    async def _escalate(self, name: str, reasons: list[str], record: HealthRecord, now: float) -> str:
        if self.identity.is_self(name):
            logger.warning("Not auto-restarting the monitor's own process", process=name)
            return "skipped_self"

        attempts = self.restart_attempts.get(name)
        if attempts >= self.restart_threshold:
            logger.error("Restart threshold reached; manual intervention required", process=name)
            await self.alerts.send(build_manual_intervention_alert(name, self.restart_threshold))
            self.restart_attempts.reset(name)
            return "manual_intervention"

        try:
            await self.manager.restart(name)
        except Exception as e:
            logger.warning("Auto-restart failed", process=name, error=str(e))
            await self.alerts.send(build_restart_failed_alert(name, str(e) or type(e).__name__))
            return "restart_failed"

        attempt = self.restart_attempts.increment(name)
        logger.info("Auto-restarted process", process=name, attempt=attempt, threshold=self.restart_threshold)
        await self.alerts.send(build_restart_performed_alert(name, attempt, self.restart_threshold, reasons))
        # Assume recovery; the next pass re-validates.
        record.consecutive_unhealthy_checks = 0
        record.last_healthy_time = float(now)
        return "restarted"

    def _refuse_self(self, op: str, name: str) -> None:
        if self.identity.is_self(name):
            logger.warning("Refusing lifecycle operation on the monitor itself", op=op, process=name)
            raise SelfExclusionError(f"refusing to {op} the monitor's own process {name!r}")

    async def restart_process(self, name: str) -> None:
        self._refuse_self("restart", name)
        await self.manager.restart(name)

    async def stop_process(self, name: str) -> None:
        self._refuse_self("stop", name)
        await self.manager.stop(name)

    async def start_process(self, name: str) -> None:
        self._refuse_self("start", name)
        await self.manager.start(name)

    async def reload_process(self, name: str) -> None:
        self._refuse_self("reload", name)
        await self.manager.reload(name)

    async def _bulk(self, op: str) -> list[str]:
        action = getattr(self.manager, op)
        if not self.identity.active:
            logger.warning("Bulk operation without self-exclusion", op=op)
            await action(ALL_PROCESSES)
            return [ALL_PROCESSES]

        processes = await self.manager.list()
        targets = exclude_self([p.name for p in processes], self.identity)
        failures: list[str] = []
        for name in targets:
            try:
                await action(name)
            except ProviderError as e:
                logger.warning("Bulk operation failed for process", op=op, process=name, error=str(e))
                failures.append(name)
        logger.info("Bulk operation complete", op=op, targets=len(targets), failed=len(failures))
        if failures:
            raise ProviderError(f"{op} failed for: {', '.join(failures)}", command=f"{op} all")
        return targets

    async def restart_all(self) -> list[str]:
        return await self._bulk("restart")

    async def stop_all(self) -> list[str]:
        return await self._bulk("stop")

    async def start_all(self) -> list[str]:
        return await self._bulk("start")
