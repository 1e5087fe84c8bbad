from __future__ import annotations

import threading
from pathlib import Path
from typing import BinaryIO, Optional

CHUNK_SIZE = 1024


class LogSink:
    """Append-only log file shared by the drainers of one node."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh: Optional[BinaryIO] = open(self.path, "ab")
        self._lock = threading.Lock()
        self.bytes_written = 0

    def write(self, data: bytes) -> None:
        with self._lock:
            if self._fh is None:
                raise ValueError(f"log sink closed: {self.path}")
            self._fh.write(data)
            self._fh.flush()
            self.bytes_written += len(data)

    @property
    def closed(self) -> bool:
        return self._fh is None

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None


class StreamDrainer:
    def __init__(self, name: str, stream: BinaryIO, sink: LogSink):
        self.name = name
        self.stream = stream
        self.sink = sink
        self.error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=f"drain-{name}", daemon=True)

    def start(self) -> "StreamDrainer":
        self._thread.start()
        return self

    def _read(self) -> bytes:
        read1 = getattr(self.stream, "read1", None)
        if read1 is not None:
            return read1(CHUNK_SIZE)
        return self.stream.read(CHUNK_SIZE)

    def _run(self) -> None:
        try:
            while True:
                data = self._read()
                if not data:
                    break
                self.sink.write(data)
        except (OSError, ValueError) as exc:
            # stream torn down underneath us; keep it for the supervisor to report
            self.error = exc
        finally:
            self.stream.close()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()
