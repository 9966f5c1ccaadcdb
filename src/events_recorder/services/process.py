"""Encoder subprocess supervision: spawn, drain output, watch for exit, stop with escalation.

One supervisor per camera. Live pids are persisted to the camera's pid store
so a restarted service can terminate encoders left behind by a crash.
"""

import json
import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from events_recorder.constants import DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS
from events_recorder.models import StopOutcome

ORPHAN_POLL_SECONDS = 0.1

logger = logging.getLogger('events-recorder')


class ProcessAlreadyRunningError(RuntimeError):
    """A live process with the same name is already supervised."""


class PidStore:
    """JSON file of {name: {"pid": int, "executable": str}} for live encoders."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> dict:
        with self._lock:
            return self._read()

    def add(self, name: str, pid: int, executable: str) -> None:
        with self._lock:
            data = self._read()
            data[name] = {"pid": pid, "executable": executable}
            self._write(data)

    def remove(self, name: str, pid: int | None = None) -> None:
        with self._lock:
            data = self._read()
            entry = data.get(name)
            if entry is None or (pid is not None and entry.get("pid") != pid):
                return
            del data[name]
            self._write(data)

    def clear(self) -> None:
        with self._lock:
            self._write({})

    def _read(self) -> dict:
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable pid store {self.path}: {e}")
            return {}

    def _write(self, data: dict) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)


@dataclass(eq=False)
class ProcessHandle:
    """A supervised subprocess. exit_code is None while it runs."""
    name: str
    args: list[str]
    popen: subprocess.Popen
    started_at: float = field(default_factory=time.time)
    on_exit: Callable | None = None
    stop_requested: bool = False
    exit_code: int | None = None
    _threads: list[threading.Thread] = field(default_factory=list, repr=False)
    _watcher: threading.Thread | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.popen.pid

    def is_alive(self) -> bool:
        return self.popen.poll() is None

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at


class ProcessSupervisor:
    """Owns the encoder subprocesses of one camera."""

    def __init__(self, pid_store_path: str, log=None):
        self.pid_store = PidStore(pid_store_path)
        self._log = log or logger
        self._processes: dict[str, ProcessHandle] = {}
        self._markers: list[tuple[re.Pattern, Callable[[re.Match], None]]] = []
        self._lock = threading.RLock()

    def add_marker(self, pattern: str, callback: Callable[[re.Match], None]) -> None:
        """Call callback(match) for every stderr line matching pattern."""
        with self._lock:
            self._markers.append((re.compile(pattern), callback))

    def get(self, name: str) -> ProcessHandle | None:
        with self._lock:
            return self._processes.get(name)

    def is_running(self, name: str) -> bool:
        handle = self.get(name)
        return handle is not None and handle.is_alive()

    def start(self, name: str, args: list[str], on_exit: Callable | None = None) -> ProcessHandle:
        """Spawn a supervised process.

        on_exit(handle, exit_code, abnormal) is called from the watcher thread
        once the process has exited and its output has been drained. abnormal
        is True for a non-zero exit that was not requested through stop().
        """
        with self._lock:
            existing = self._processes.get(name)
            if existing is not None and existing.is_alive():
                raise ProcessAlreadyRunningError(f"{name} is already running (pid {existing.pid})")

            self._log.debug(f"Starting {name}: {' '.join(args)}")
            popen = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
            handle = ProcessHandle(name=name, args=list(args), popen=popen, on_exit=on_exit)
            self._processes[name] = handle

        try:
            self.pid_store.add(name, popen.pid, args[0])
        except OSError as e:
            self._log.warning(f"Could not record pid for {name}: {e}")

        handle._threads = [
            threading.Thread(target=self._drain, args=(handle, popen.stdout, False),
                             daemon=True, name=f"{name}-stdout"),
            threading.Thread(target=self._drain, args=(handle, popen.stderr, True),
                             daemon=True, name=f"{name}-stderr"),
        ]
        handle._watcher = threading.Thread(target=self._watch, args=(handle,),
                                           daemon=True, name=f"{name}-watch")
        for t in handle._threads:
            t.start()
        handle._watcher.start()
        self._log.info(f"Started {name} (pid {popen.pid})")
        return handle

    def stop(self, handle: ProcessHandle, timeout: float = DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS) -> StopOutcome:
        """SIGTERM, wait up to timeout, then SIGKILL. Returns how the process ended."""
        handle.stop_requested = True
        outcome = StopOutcome.EXITED
        proc = handle.popen
        try:
            if proc.poll() is None:
                proc.terminate()
                proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._log.warning(f"{handle.name} did not terminate within {timeout:.1f}s, killing (pid {proc.pid})")
            proc.kill()
            proc.wait()
            outcome = StopOutcome.KILLED

        watcher = handle._watcher
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join(timeout=timeout)
        self._forget(handle)
        self._log.debug(f"Stopped {handle.name}: {outcome.name.lower()} (code {proc.returncode})")
        return outcome

    def stop_all(self, timeout: float = DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS) -> dict[str, StopOutcome]:
        """Stop every live process synchronously."""
        with self._lock:
            handles = list(self._processes.values())
        return {h.name: self.stop(h, timeout) for h in handles}

    def run(self, name: str, args: list[str], timeout: float) -> subprocess.CompletedProcess:
        """Run a short-lived encoder to completion.

        On timeout the child is killed and subprocess.TimeoutExpired propagates.
        """
        self._log.debug(f"Running {name}: {' '.join(args)}")
        proc = subprocess.run(args, capture_output=True, timeout=timeout)
        if proc.returncode != 0:
            tail = (proc.stderr or b"").decode('utf-8', errors='replace').strip()[-1000:]
            self._log.warning(f"{name} exited with code {proc.returncode}: {tail}")
        return proc

    def reap_orphans(self, timeout: float = DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS) -> list[int]:
        """SIGTERM every pid left in the store by a previous run and wait for it to exit.

        Pids still alive after timeout are killed. The store is cleared afterwards.
        """
        reaped = []
        terminated = []
        for name, entry in self.pid_store.load().items():
            pid = entry.get("pid") if isinstance(entry, dict) else None
            if not isinstance(pid, int) or pid <= 0:
                continue
            if not _looks_like(pid, entry.get("executable")):
                self._log.debug(f"Stale pid {pid} for {name} no longer belongs to the encoder")
                continue
            try:
                os.kill(pid, signal.SIGTERM)
                reaped.append(pid)
                terminated.append((name, pid))
                self._log.info(f"Terminated orphaned {name} (pid {pid})")
            except ProcessLookupError:
                pass
            except PermissionError as e:
                self._log.warning(f"Cannot terminate orphaned {name} (pid {pid}): {e}")

        deadline = time.monotonic() + timeout
        while terminated:
            terminated = [(name, pid) for name, pid in terminated if _is_alive(pid)]
            if not terminated or time.monotonic() >= deadline:
                break
            time.sleep(ORPHAN_POLL_SECONDS)
        for name, pid in terminated:
            self._log.warning(f"Orphaned {name} (pid {pid}) ignored SIGTERM, killing")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        self.pid_store.clear()
        return reaped

    def _forget(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._processes.get(handle.name) is handle:
                del self._processes[handle.name]
        try:
            self.pid_store.remove(handle.name, handle.pid)
        except OSError as e:
            self._log.warning(f"Could not clear pid for {handle.name}: {e}")

    def _drain(self, handle: ProcessHandle, stream, scan_markers: bool) -> None:
        try:
            for raw in iter(stream.readline, b''):
                line = raw.decode('utf-8', errors='replace').rstrip()
                if not line:
                    continue
                self._log.debug(f"{handle.name}: {line}")
                if scan_markers:
                    self._match_markers(line)
        except (OSError, ValueError):
            # Pipe closed by kill.
            pass
        finally:
            stream.close()

    def _match_markers(self, line: str) -> None:
        with self._lock:
            markers = list(self._markers)
        for pattern, callback in markers:
            match = pattern.search(line)
            if match:
                try:
                    callback(match)
                except Exception as e:
                    self._log.error(f"Output marker callback failed: {e}")

    def _watch(self, handle: ProcessHandle) -> None:
        code = handle.popen.wait()
        for t in handle._threads:
            t.join(timeout=2)
        handle.exit_code = code
        abnormal = code != 0 and not handle.stop_requested
        if abnormal:
            self._log.warning(f"{handle.name} exited unexpectedly with code {code}")
        elif not handle.stop_requested:
            self._log.info(f"{handle.name} exited (code {code})")
        self._forget(handle)
        if handle.on_exit is not None:
            try:
                handle.on_exit(handle, code, abnormal)
            except Exception as e:
                self._log.error(f"Exit callback for {handle.name} failed: {e}")


def _is_alive(pid: int) -> bool:
    """False once pid has exited; a zombie awaiting its parent counts as exited."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    try:
        with open(f"/proc/{pid}/stat", 'rb') as f:
            stat = f.read()
    except FileNotFoundError:
        # Without procfs the os.kill check above decides.
        return not os.path.isdir('/proc/self')
    except OSError:
        return True
    fields = stat.rsplit(b')', 1)[-1].split()
    return not fields or fields[0] not in (b'Z', b'X')


def _looks_like(pid: int, executable: str | None) -> bool:
    """True unless /proc shows pid now belongs to a different program."""
    if not executable:
        return True
    try:
        with open(f"/proc/{pid}/cmdline", 'rb') as f:
            cmdline = f.read().split(b'\0')[0].decode('utf-8', errors='replace')
    except FileNotFoundError:
        # Gone already, or no procfs; let os.kill decide.
        return True
    except OSError:
        return True
    return os.path.basename(cmdline) == os.path.basename(executable)
