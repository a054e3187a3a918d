"""
leadscout.process_tracker

Which OS processes belong to which job, and how to kill them.

Every browser we launch carries two extra flags (the browser ignores them):

    --scraper-id=<TOOL_TAG>   this tool
    --job-id=<job id>         the job that launched it

Those tags are the source of truth. The in-memory registry is a convenience
that is lost on restart; `find_and_kill_job_processes()` always rescans the
OS for the tags, so it works with an empty registry.

Safety rules:
- a registered PID that no longer shows up in a tag scan is re-read before
  we touch it; if its command line lost our tags (PID reuse), it is refused
- kills are tree-aware (process group on POSIX, /T on Windows)
- enumeration and kill failures are counted and logged, never raised
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .cancellation import CancellationToken, sleep_with_cancellation
from .config import TOOL_TAG

logger = logging.getLogger(__name__)

CMD_TIMEOUT_S = 15.0
STATUS_CACHE_TTL_S = 5.0

CHROME_BASE_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
)

_HEADLESS_RE = re.compile(r"(chrome|chromium|headless_shell|chrome-headless-shell).*--headless", re.I)


@dataclass
class ProcessInfo:
    pid: int
    name: str
    command_line: str


@dataclass
class TrackedProcess:
    pid: int
    job_id: str
    method: str  # "spawned" | "tag_match"
    command_line: str = ""


@dataclass
class KillReport:
    found: int = 0
    killed: int = 0
    failed: int = 0
    refused: int = 0
    not_found: int = 0
    pids: List[int] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"found={self.found} killed={self.killed} failed={self.failed} "
            f"refused={self.refused} not_found={self.not_found}"
        )


@dataclass
class TrackerStatus:
    os_type: str
    registered: Dict[str, List[int]]
    running: List[ProcessInfo]

    @property
    def summary(self) -> str:
        reg = sum(len(p) for p in self.registered.values())
        pids = ", ".join(str(p.pid) for p in self.running) or "none"
        return (
            f"OS: {self.os_type} | Registered PIDs: {reg} | "
            f"Running scraper processes: {len(self.running)} | PIDs: {pids}"
        )


async def _run(cmd: Sequence[str], timeout: float = CMD_TIMEOUT_S) -> Optional[Tuple[int, str]]:
    """
    Run an OS tool, return (returncode, stdout).

    None means the tool could not be run at all (missing, permission, timeout).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError, OSError) as e:
        logger.debug("cannot run %s: %s", cmd[0], e)
        return None

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.0fs", cmd[0], timeout)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        return None

    return proc.returncode or 0, (out or b"").decode("utf-8", errors="replace")


# --- platform backends -------------------------------------------------

class ProcessBackend:
    """One OS family's way to list, inspect and kill processes."""

    os_type = "unknown"

    async def list_processes(self) -> List[ProcessInfo]:
        raise NotImplementedError

    async def get_command_line(self, pid: int) -> Optional[str]:
        raise NotImplementedError

    async def kill_tree(self, pid: int) -> bool:
        raise NotImplementedError


class PosixPsBackend(ProcessBackend):
    """Linux: procps `ps`."""

    os_type = "linux"
    list_cmd: Tuple[str, ...] = ("ps", "-eo", "pid=,args=")
    tree_cmd: Tuple[str, ...] = ("ps", "-eo", "pid=,ppid=")

    @staticmethod
    def _parse(out: str) -> List[ProcessInfo]:
        procs: List[ProcessInfo] = []
        for line in out.splitlines():
            line = line.strip()
            if not line:
                continue
            head, _, args = line.partition(" ")
            try:
                pid = int(head)
            except ValueError:
                continue
            args = args.strip()
            name = os.path.basename(args.split(" ", 1)[0]) if args else ""
            procs.append(ProcessInfo(pid=pid, name=name, command_line=args))
        return procs

    async def list_processes(self) -> List[ProcessInfo]:
        res = await _run(self.list_cmd)
        if res is None:
            return []
        rc, out = res
        if rc != 0:
            logger.warning("process listing exited rc=%s", rc)
            return []
        return self._parse(out)

    async def get_command_line(self, pid: int) -> Optional[str]:
        res = await _run(("ps", "-o", "args=", "-p", str(int(pid))))
        if res is None:
            return None
        rc, out = res
        out = out.strip()
        if rc != 0 or not out:
            return None
        return out

    async def _descendants(self, pid: int) -> List[int]:
        res = await _run(self.tree_cmd)
        if res is None or res[0] != 0:
            return []
        children: Dict[int, List[int]] = {}
        for line in res[1].splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            try:
                child, parent = int(parts[0]), int(parts[1])
            except ValueError:
                continue
            children.setdefault(parent, []).append(child)

        out: List[int] = []
        stack = list(children.get(pid, []))
        while stack:
            c = stack.pop()
            out.append(c)
            stack.extend(children.get(c, []))
        return out

    async def kill_tree(self, pid: int) -> bool:
        pid = int(pid)
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            return True
        except OSError as e:
            logger.warning("getpgid(%s) failed: %s", pid, e)
            pgid = None

        # group leader (how playwright launches browsers): kill the whole group
        if pgid == pid and pgid != os.getpgid(0):
            try:
                os.killpg(pgid, signal.SIGKILL)
                return True
            except ProcessLookupError:
                return True
            except OSError as e:
                logger.warning("killpg(%s) failed, falling back to pid: %s", pgid, e)

        ok = True
        for target in (await self._descendants(pid)) + [pid]:
            try:
                os.kill(target, signal.SIGKILL)
            except ProcessLookupError:
                continue
            except OSError as e:
                logger.warning("kill(%s) failed: %s", target, e)
                if target == pid:
                    ok = False
        return ok


class MacPsBackend(PosixPsBackend):
    """macOS: BSD `ps` wants -ax to see processes without a tty."""

    os_type = "darwin"
    list_cmd = ("ps", "-axo", "pid=,command=")
    tree_cmd = ("ps", "-axo", "pid=,ppid=")


class WindowsCimBackend(ProcessBackend):
    """Windows: PowerShell Get-CimInstance, taskkill /T for the tree."""

    os_type = "windows"

    _PS = ("powershell", "-NoProfile", "-NonInteractive", "-Command")

    @staticmethod
    def _parse(out: str) -> List[ProcessInfo]:
        out = (out or "").strip()
        if not out:
            return []
        try:
            data = json.loads(out)
        except ValueError:
            logger.warning("unparseable Get-CimInstance output")
            return []
        if isinstance(data, dict):
            data = [data]
        procs: List[ProcessInfo] = []
        for item in data or []:
            try:
                pid = int(item.get("ProcessId"))
            except (TypeError, ValueError):
                continue
            procs.append(
                ProcessInfo(
                    pid=pid,
                    name=str(item.get("Name") or ""),
                    command_line=str(item.get("CommandLine") or ""),
                )
            )
        return procs

    async def _query(self, where: str = "") -> List[ProcessInfo]:
        flt = f" -Filter \"{where}\"" if where else ""
        script = (
            f"Get-CimInstance Win32_Process{flt} | "
            "Select-Object ProcessId,Name,CommandLine | ConvertTo-Json -Compress"
        )
        res = await _run(self._PS + (script,))
        if res is None or res[0] != 0:
            return []
        return self._parse(res[1])

    async def list_processes(self) -> List[ProcessInfo]:
        return await self._query()

    async def get_command_line(self, pid: int) -> Optional[str]:
        procs = await self._query(f"ProcessId={int(pid)}")
        if not procs:
            return None
        return procs[0].command_line or None

    async def kill_tree(self, pid: int) -> bool:
        res = await _run(("taskkill", "/F", "/T", "/PID", str(int(pid))))
        if res is None:
            return False
        rc, out = res
        if rc != 0 and "not found" not in out.lower():
            logger.warning("taskkill pid=%s rc=%s", pid, rc)
            return False
        return True


def default_backend() -> ProcessBackend:
    if sys.platform.startswith("win"):
        return WindowsCimBackend()
    if sys.platform == "darwin":
        return MacPsBackend()
    return PosixPsBackend()


# --- tracker -----------------------------------------------------------

def _split_args(command_line: Optional[str]) -> List[str]:
    # windows command lines quote the executable and sometimes single args
    return [a.strip("\"'") for a in (command_line or "").split()]


class ProcessTracker:
    def __init__(
        self,
        backend: Optional[ProcessBackend] = None,
        *,
        tool_tag: str = TOOL_TAG,
        scan_delay_s: float = 1.0,
        cache_ttl_s: float = STATUS_CACHE_TTL_S,
    ):
        self.backend = backend or default_backend()
        self.tool_tag = tool_tag
        self.scan_delay_s = scan_delay_s
        self.cache_ttl_s = cache_ttl_s
        self._registry: Dict[str, Dict[int, TrackedProcess]] = {}
        self._cache: Optional[List[ProcessInfo]] = None
        self._cache_at = 0.0

    # tags

    @property
    def tool_arg(self) -> str:
        return f"--scraper-id={self.tool_tag}"

    @staticmethod
    def job_arg(job_id: str) -> str:
        return f"--job-id={job_id}"

    def chrome_args(self, job_id: str) -> List[str]:
        return list(CHROME_BASE_ARGS) + [self.tool_arg, self.job_arg(job_id)]

    def is_tool_process(self, command_line: str) -> bool:
        return self.tool_arg in _split_args(command_line)

    def is_job_process(self, command_line: str, job_id: str) -> bool:
        args = _split_args(command_line)
        return self.tool_arg in args and self.job_arg(job_id) in args

    # scanning

    def invalidate(self) -> None:
        self._cache = None

    async def scan(self, *, fresh: bool = False) -> List[ProcessInfo]:
        now = time.monotonic()
        if not fresh and self._cache is not None and now - self._cache_at < self.cache_ttl_s:
            return self._cache
        try:
            procs = await self.backend.list_processes()
        except Exception:
            logger.exception("process enumeration failed")
            procs = []
        own = os.getpid()
        procs = [p for p in procs if p.pid != own]
        self._cache = procs
        self._cache_at = now
        return procs

    async def tool_processes(self, *, fresh: bool = False) -> List[ProcessInfo]:
        return [p for p in await self.scan(fresh=fresh) if self.is_tool_process(p.command_line)]

    async def job_matches(self, job_id: str, *, fresh: bool = False) -> List[ProcessInfo]:
        return [p for p in await self.scan(fresh=fresh) if self.is_job_process(p.command_line, job_id)]

    # registry

    def register_pid(self, job_id: str, pid: int, *, method: str = "spawned", command_line: str = "") -> None:
        procs = self._registry.setdefault(job_id, {})
        if pid not in procs:
            procs[pid] = TrackedProcess(pid=int(pid), job_id=job_id, method=method, command_line=command_line)
            logger.debug("registered pid=%s job_id=%s method=%s", pid, job_id, method)
        self.invalidate()

    def unregister_pid(self, job_id: str, pid: int) -> None:
        procs = self._registry.get(job_id)
        if procs is None:
            return
        procs.pop(int(pid), None)
        if not procs:
            self._registry.pop(job_id, None)
        self.invalidate()

    def clear_job(self, job_id: str) -> None:
        self._registry.pop(job_id, None)
        self.invalidate()

    def job_processes(self, job_id: str) -> List[TrackedProcess]:
        return list(self._registry.get(job_id, {}).values())

    def registered_jobs(self) -> Dict[str, List[int]]:
        return {job: sorted(procs) for job, procs in self._registry.items() if procs}

    def job_process_info(self, job_id: str) -> List[Dict[str, object]]:
        """Descriptors to persist with the job row."""
        return [asdict(p) for p in self.job_processes(job_id)]

    def restore(self, job_id: str, descriptors: Iterable[Dict[str, object]]) -> int:
        """Re-seed the registry from persisted descriptors (after a restart)."""
        n = 0
        for d in descriptors:
            try:
                pid = int(d["pid"])  # type: ignore[arg-type]
            except (KeyError, TypeError, ValueError):
                continue
            self.register_pid(
                job_id,
                pid,
                method=str(d.get("method") or "tag_match"),
                command_line=str(d.get("command_line") or ""),
            )
            n += 1
        return n

    async def register_job_processes(
        self,
        job_id: str,
        *,
        delay_s: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[TrackedProcess]:
        """Wait for the browser to settle, then register every process carrying the job tag."""
        wait = self.scan_delay_s if delay_s is None else delay_s
        if wait > 0:
            await sleep_with_cancellation(wait, token)
        matches = await self.job_matches(job_id, fresh=True)
        if token is not None:
            token.throw_if_cancelled()
        for p in matches:
            self.register_pid(job_id, p.pid, method="tag_match", command_line=p.command_line)
        tracked = self.job_processes(job_id)
        logger.info("job_id=%s tracked %d browser process(es)", job_id, len(tracked))
        return tracked

    # killing

    async def _kill(self, pid: int) -> bool:
        try:
            return await self.backend.kill_tree(pid)
        except Exception:
            logger.exception("kill_tree(%s) raised", pid)
            return False

    async def safe_kill(self, pid: int, job_id: Optional[str] = None) -> str:
        """
        Kill `pid` only if its current command line still carries our tag
        (and the job tag, when given).

        Returns "killed", "failed", "refused" or "not_found".
        """
        try:
            cmd = await self.backend.get_command_line(pid)
        except Exception:
            logger.exception("get_command_line(%s) raised", pid)
            cmd = None
        if cmd is None:
            return "not_found"

        ok_tag = self.is_job_process(cmd, job_id) if job_id else self.is_tool_process(cmd)
        if not ok_tag:
            logger.warning("refusing to kill pid=%s: command line no longer carries our tag", pid)
            return "refused"

        return "killed" if await self._kill(pid) else "failed"

    async def find_and_kill_job_processes(self, job_id: str) -> KillReport:
        report = KillReport()

        matches = await self.job_matches(job_id, fresh=True)
        seen = set()
        for p in matches:
            seen.add(p.pid)
            report.found += 1
            report.pids.append(p.pid)
            if await self._kill(p.pid):
                report.killed += 1
            else:
                report.failed += 1

        for tracked in self.job_processes(job_id):
            if tracked.pid in seen:
                continue
            outcome = await self.safe_kill(tracked.pid, job_id)
            if outcome == "not_found":
                report.not_found += 1
                continue
            if outcome == "refused":
                report.refused += 1
                continue
            report.found += 1
            report.pids.append(tracked.pid)
            if outcome == "killed":
                report.killed += 1
            else:
                report.failed += 1

        self.clear_job(job_id)
        if report.found or report.refused:
            logger.info("job_id=%s process cleanup %s", job_id, report.summary())
        return report

    async def kill_all_scraper_processes(self) -> KillReport:
        report = KillReport()
        for p in await self.tool_processes(fresh=True):
            report.found += 1
            report.pids.append(p.pid)
            if await self._kill(p.pid):
                report.killed += 1
            else:
                report.failed += 1
        self._registry.clear()
        self.invalidate()
        logger.info("kill-all-scraper %s", report.summary())
        return report

    async def kill_all_headless_browsers(self) -> KillReport:
        """Kill every headless chrome/chromium on the host, ours or not."""
        report = KillReport()
        for p in await self.scan(fresh=True):
            if not _HEADLESS_RE.search(p.command_line or ""):
                continue
            report.found += 1
            report.pids.append(p.pid)
            if await self._kill(p.pid):
                report.killed += 1
            else:
                report.failed += 1
        self._registry.clear()
        self.invalidate()
        logger.warning("kill-all-headless %s", report.summary())
        return report

    # status

    async def prune(self) -> int:
        """Drop registered PIDs that are no longer alive."""
        alive = {p.pid for p in await self.scan(fresh=True)}
        dropped = 0
        for job_id, procs in list(self._registry.items()):
            for pid in list(procs):
                if pid not in alive:
                    self.unregister_pid(job_id, pid)
                    dropped += 1
        return dropped

    async def status(self) -> TrackerStatus:
        dropped = await self.prune()
        if dropped:
            logger.info("pruned %d dead pid(s) from the registry", dropped)
        return TrackerStatus(
            os_type=self.backend.os_type,
            registered=self.registered_jobs(),
            running=await self.tool_processes(),
        )
