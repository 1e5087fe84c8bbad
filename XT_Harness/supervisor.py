from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from XT_Harness.drainer import LogSink, StreamDrainer
from XT_Harness.errors import LaunchError, TeardownError
from XT_Harness.logger import setup_logger

LOG_FILENAME = "stdouterr.log"


class ProcessSupervisor:
    """Owns one node process and the two drainers copying its output.

    Usable as a context manager: leaving the block terminates the process
    and joins both drainers, whatever way the block exits.
    """

    def __init__(self, name: str, drain_timeout: float = 10.0):
        self.name = name
        self.drain_timeout = drain_timeout
        self.proc: Optional[subprocess.Popen] = None
        self.sink: Optional[LogSink] = None
        self.drainers: List[StreamDrainer] = []
        self.log_path: Optional[Path] = None
        self._released = False
        self.logger = setup_logger("xt_harness")

    def launch(
        self,
        executable: str,
        arguments: List[str],
        working_directory: str | Path,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.Popen:
        if self.proc is not None:
            raise RuntimeError(f"{self.name} already launched")

        cwd = Path(working_directory)
        self.log_path = cwd / LOG_FILENAME
        full_env = dict(os.environ)
        full_env.update(env or {})
        try:
            sink = LogSink(self.log_path)
        except OSError as exc:
            raise LaunchError(str(executable), f"cannot open log {self.log_path}: {exc}") from exc
        try:
            proc = subprocess.Popen(
                [str(executable), *arguments],
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=full_env,
                start_new_session=hasattr(os, "setsid"),
            )
        except OSError as exc:
            sink.close()
            raise LaunchError(str(executable), exc.strerror or str(exc)) from exc

        self.proc = proc
        self.sink = sink
        self.drainers = [
            StreamDrainer(f"{self.name}-stdout", proc.stdout, self.sink).start(),
            StreamDrainer(f"{self.name}-stderr", proc.stderr, self.sink).start(),
        ]
        self.logger.info(
            "process_launched",
            extra={"extra": {"node": self.name, "pid": proc.pid, "exe": str(executable), "cwd": str(cwd)}},
        )
        return proc

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    def is_alive(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def returncode(self) -> Optional[int]:
        return self.proc.poll() if self.proc else None

    def _kill(self) -> None:
        # the group outlives its leader while any child still holds the pipes
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.proc.pid, signal.SIGKILL)
            elif self.proc.poll() is None:
                self.proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def terminate(self) -> None:
        if self.proc is None or self._released:
            return
        self._kill()
        self.proc.wait()

        stuck = [d.name for d in self.drainers if not d.join(self.drain_timeout)]
        if stuck:
            raise TeardownError([(name, RuntimeError("drainer still running")) for name in stuck])

        if self.sink is not None:
            self.sink.close()
        self._released = True
        self.logger.info(
            "process_terminated",
            extra={"extra": {"node": self.name, "pid": self.proc.pid, "returncode": self.proc.returncode}},
        )

    def wait_drained(self, timeout: float) -> bool:
        """Join the drainers; only meaningful once the process has exited."""
        return all(d.join(timeout) for d in self.drainers)

    def read_log(self) -> str:
        if self.log_path is None or not self.log_path.exists():
            return ""
        return self.log_path.read_text(encoding="utf-8", errors="replace")

    def __enter__(self) -> "ProcessSupervisor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.terminate()
            return
        try:
            self.terminate()
        except TeardownError:
            self.logger.exception("teardown_failed", extra={"extra": {"node": self.name}})
