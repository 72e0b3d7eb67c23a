from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import structlog

from process_checks.models import ProcessSnapshot, ProcessStatus


logger = structlog.get_logger(__name__)

ALL_PROCESSES = "all"

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_LOG_TS_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\s*")
_LOG_HEADER_RE = re.compile(r"(^\[TAILING\])|(last \d+ lines:?$)")


class ProviderError(RuntimeError):
    """PM2 could not be reached, a command failed, or its output could not be parsed."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class ProcessManager(Protocol):
    async def list(self) -> list[ProcessSnapshot]: ...

    async def restart(self, name: str) -> None: ...

    async def stop(self, name: str) -> None: ...

    async def start(self, name: str) -> None: ...

    async def reload(self, name: str) -> None: ...

    async def ping(self, name: str) -> None: ...

    async def logs(self, name: str, lines: int = 20, error_only: bool = False) -> list[str]: ...


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[list[str], float], Awaitable[CommandResult]]


async def _reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def run_command(argv: list[str], timeout_seconds: float) -> CommandResult:
    command = " ".join(argv)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProviderError(f"executable not found: {argv[0]}", command=command) from e
    except OSError as e:
        raise ProviderError(f"failed to spawn: {type(e).__name__}: {e}", command=command) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=max(0.1, float(timeout_seconds)))
    except asyncio.TimeoutError as e:
        await _reap(proc)
        raise ProviderError(f"timed out after {timeout_seconds:g}s", command=command) from e
    except BaseException:
        # Cancelled by a caller's deadline: the child must not outlive us.
        await _reap(proc)
        raise

    return CommandResult(
        returncode=int(proc.returncode or 0),
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _coerce_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


def _coerce_float(value: Any, *, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return float(default)


def _decode_jlist(text: str) -> Any:
    s = (text or "").strip()
    if not s:
        return []
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        # PM2 sometimes prints update notices (themselves starting with "[PM2]") before the payload.
        offset = 0
        for line in s.splitlines(keepends=True):
            if offset and line.startswith("["):
                try:
                    return json.loads(s[offset:])
                except json.JSONDecodeError:
                    pass
            offset += len(line)
        raise


def parse_process_entry(entry: Any) -> ProcessSnapshot | None:
    if not isinstance(entry, dict):
        return None
    name = str(entry.get("name") or "").strip()
    if not name:
        return None

    env = entry.get("pm2_env") if isinstance(entry.get("pm2_env"), dict) else {}
    monit = entry.get("monit") if isinstance(entry.get("monit"), dict) else {}

    pid = _coerce_int(entry.get("pid"), default=0)
    pm_uptime = env.get("pm_uptime")
    started_at = _coerce_float(pm_uptime) / 1000.0 if pm_uptime else None
    pm_id = entry.get("pm_id")

    return ProcessSnapshot(
        name=name,
        pid=pid if pid > 0 else None,
        status=ProcessStatus.parse(env.get("status")),
        cpu_percent=max(0.0, _coerce_float(monit.get("cpu"))),
        memory_bytes=max(0, _coerce_int(monit.get("memory"))),
        restart_count=max(0, _coerce_int(env.get("restart_time"))),
        started_at=started_at,
        pm_id=_coerce_int(pm_id) if pm_id is not None else None,
        exec_mode=str(env.get("exec_mode")) if env.get("exec_mode") else None,
        script_path=str(env.get("pm_exec_path")) if env.get("pm_exec_path") else None,
    )


def parse_process_list(raw: Any) -> list[ProcessSnapshot]:
    """
    Decode `pm2 jlist` output (already JSON-decoded).

    Malformed entries (not an object, missing name) are logged and skipped; a payload
    that is not a list at all is a ProviderError.
    """
    if not isinstance(raw, list):
        raise ProviderError(f"unexpected process list payload: {type(raw).__name__}")

    out: list[ProcessSnapshot] = []
    for idx, entry in enumerate(raw):
        snap = parse_process_entry(entry)
        if snap is None:
            logger.warning("Skipping malformed process entry", index=idx, entry_type=type(entry).__name__)
            continue
        out.append(snap)
    return out


def clean_log_lines(text: str) -> list[str]:
    if not text or "No logs found" in text:
        return []
    out: list[str] = []
    for line in text.splitlines():
        cleaned = _LOG_TS_PREFIX_RE.sub("", _ANSI_RE.sub("", line)).strip()
        if not cleaned or _LOG_HEADER_RE.search(cleaned):
            continue
        out.append(cleaned)
    return out


class Pm2Client:
    """
    ProcessManager backed by the PM2 CLI.

    The daemon connection is checked lazily with `pm2 ping`; any failed command clears
    the connected flag so the next call re-establishes it instead of trusting a broken daemon.
    """

    def __init__(
        self,
        *,
        binary: str = "pm2",
        command_timeout_seconds: float = 30.0,
        ping_timeout_seconds: float = 5.0,
        runner: CommandRunner | None = None,
    ) -> None:
        self.binary = binary
        self.command_timeout_seconds = float(command_timeout_seconds)
        self.ping_timeout_seconds = float(ping_timeout_seconds)
        self._runner: CommandRunner = runner or run_command
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def _ensure_connected(self, timeout_seconds: float) -> None:
        if self._connected:
            return
        result = await self._runner([self.binary, "ping"], min(self.command_timeout_seconds, timeout_seconds))
        if result.returncode != 0:
            raise ProviderError(
                f"PM2 daemon unreachable: {(result.stderr or result.stdout).strip()[:300]}",
                command=f"{self.binary} ping",
            )
        self._connected = True
        logger.debug("Connected to PM2 daemon")

    async def _pm2(self, *args: str, timeout_seconds: float | None = None) -> CommandResult:
        argv = [self.binary, *args]
        timeout = self.command_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        try:
            await self._ensure_connected(timeout)
            result = await self._runner(argv, timeout)
        except (ProviderError, asyncio.CancelledError):
            self._connected = False
            raise
        if result.returncode != 0:
            self._connected = False
            detail = (result.stderr or result.stdout).strip()[:300]
            raise ProviderError(f"exit code {result.returncode}: {detail}", command=" ".join(argv))
        return result

    async def list(self) -> list[ProcessSnapshot]:
        result = await self._pm2("jlist")
        try:
            raw = _decode_jlist(result.stdout)
        except json.JSONDecodeError as e:
            self._connected = False
            raise ProviderError(f"invalid jlist JSON: {e}", command=f"{self.binary} jlist") from e
        return parse_process_list(raw)

    async def restart(self, name: str) -> None:
        await self._pm2("restart", name)

    async def stop(self, name: str) -> None:
        await self._pm2("stop", name)

    async def start(self, name: str) -> None:
        await self._pm2("start", name)

    async def reload(self, name: str) -> None:
        await self._pm2("reload", name)

    async def ping(self, name: str) -> None:
        result = await self._pm2("pid", name, timeout_seconds=self.ping_timeout_seconds)
        pid = _coerce_int(result.stdout.strip().splitlines()[-1] if result.stdout.strip() else "", default=0)
        if pid <= 0:
            raise ProviderError(f"no live pid for {name}", command=f"{self.binary} pid {name}")

    async def logs(self, name: str, lines: int = 20, error_only: bool = False) -> list[str]:
        args = ["logs", name, "--lines", str(max(1, int(lines))), "--nostream"]
        if error_only:
            args.append("--err")
        started = time.perf_counter()
        result = await self._pm2(*args)
        logger.debug(
            "Fetched process logs",
            process=name,
            error_only=error_only,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        return clean_log_lines(result.stdout)
