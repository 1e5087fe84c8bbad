from __future__ import annotations

from typing import List, Tuple


class HarnessError(Exception):
    pass


class ConfigError(HarnessError):
    pass


class LaunchError(HarnessError):
    def __init__(self, executable: str, reason: str):
        super().__init__(f"failed to launch {executable}: {reason}")
        self.executable = executable
        self.reason = reason


class ControlConnectionError(HarnessError, ConnectionError):
    pass


class AuthError(HarnessError):
    pass


class ProtocolError(HarnessError):
    pass


class RemoteCallError(ProtocolError):
    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class ConvergenceTimeout(HarnessError, TimeoutError):
    def __init__(self, description: str, elapsed: float, timeout: float):
        super().__init__(f"{description or 'predicate'} not satisfied after {elapsed:.2f}s (timeout {timeout:.2f}s)")
        self.description = description
        self.elapsed = elapsed
        self.timeout = timeout


class ScenarioAssertionError(HarnessError, AssertionError):
    pass


class TeardownError(HarnessError):
    def __init__(self, failures: List[Tuple[str, BaseException]]):
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"teardown failed for: {names}")
        self.failures = failures
