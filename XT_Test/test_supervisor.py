import io
import sys
import tempfile
import time
from pathlib import Path

import psutil
import pytest

from XT_Harness.convergence import poll
from XT_Harness.drainer import LogSink, StreamDrainer
from XT_Harness.errors import LaunchError, TeardownError
from XT_Harness.supervisor import LOG_FILENAME, ProcessSupervisor


def test_drainer_copies_stream_until_eof():
    with tempfile.TemporaryDirectory() as td:
        sink = LogSink(Path(td) / "out.log")
        drainer = StreamDrainer("t", io.BytesIO(b"x" * 5000), sink).start()
        assert drainer.join(5.0)
        sink.close()
        assert sink.bytes_written == 5000
        assert (Path(td) / "out.log").read_bytes() == b"x" * 5000
        assert drainer.error is None


def test_log_sink_appends_and_close_is_idempotent():
    with tempfile.TemporaryDirectory() as td:
        path = Path(td) / "out.log"
        path.write_bytes(b"old\n")
        sink = LogSink(path)
        sink.write(b"new\n")
        sink.close()
        sink.close()
        assert sink.closed
        assert path.read_bytes() == b"old\nnew\n"
        with pytest.raises(ValueError):
            sink.write(b"late")


def test_launch_missing_executable_raises_launch_error():
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("ghost")
        with pytest.raises(LaunchError) as info:
            sup.launch(str(Path(td) / "does-not-exist"), [], td)
        assert "does-not-exist" in str(info.value)
        assert not sup.is_alive()
        sup.terminate()


def test_output_of_both_streams_lands_in_log():
    script = "import sys; print('hello-out', flush=True); print('hello-err', file=sys.stderr, flush=True)"
    with tempfile.TemporaryDirectory() as td:
        with ProcessSupervisor("echo", drain_timeout=5.0) as sup:
            sup.launch(sys.executable, ["-c", script], td)
            sup.proc.wait(timeout=10)
        log = (Path(td) / LOG_FILENAME).read_text(encoding="utf-8")
        assert "hello-out" in log
        assert "hello-err" in log
        assert sup.sink.closed
        assert all(not d.is_alive() for d in sup.drainers)


def test_terminate_kills_running_process_and_is_idempotent():
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("sleeper", drain_timeout=5.0)
        sup.launch(sys.executable, ["-c", "import time; print('up', flush=True); time.sleep(60)"], td)
        poll(lambda: "up" in sup.read_log(), interval=0.05, timeout=10.0, description="sleeper output")
        assert sup.is_alive()
        started = time.monotonic()
        sup.terminate()
        assert time.monotonic() - started < 10
        assert not sup.is_alive()
        assert sup.returncode() is not None
        sup.terminate()
        assert "up" in sup.read_log()


def test_terminate_after_process_already_exited():
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("quick", drain_timeout=5.0)
        sup.launch(sys.executable, ["-c", "raise SystemExit(3)"], td)
        sup.proc.wait(timeout=10)
        sup.terminate()
        assert sup.returncode() == 3


def test_terminate_kills_grandchildren_holding_the_pipes():
    # the child spawns a sleeper that inherits stdout; only a group kill lets the drainers finish
    script = (
        "import subprocess, sys, time;"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']);"
        "time.sleep(60)"
    )
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("parent", drain_timeout=5.0)
        sup.launch(sys.executable, ["-c", script], td)
        parent = psutil.Process(sup.pid)
        deadline = time.monotonic() + 5
        while not parent.children() and time.monotonic() < deadline:
            time.sleep(0.05)
        family = [parent] + parent.children(recursive=True)
        assert len(family) == 2
        sup.terminate()
        assert all(not d.is_alive() for d in sup.drainers)
        assert _still_running(family) == []


def test_terminate_after_parent_exited_leaving_a_child_on_the_pipes():
    script = (
        "import subprocess, sys;"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']);"
        "print('child', p.pid, flush=True)"
    )
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("forker", drain_timeout=5.0)
        sup.launch(sys.executable, ["-c", script], td)
        sup.proc.wait(timeout=10)
        poll(lambda: "child" in sup.read_log(), interval=0.05, timeout=10.0, description="forker output")
        child = psutil.Process(int(sup.read_log().split()[1]))

        started = time.monotonic()
        sup.terminate()
        assert time.monotonic() - started < 5.0
        assert all(not d.is_alive() for d in sup.drainers)
        assert sup.sink.closed
        assert _still_running([child]) == []
        sup.terminate()


def test_unwritable_log_directory_fails_before_spawning():
    with tempfile.TemporaryDirectory() as td:
        sup = ProcessSupervisor("nowhere")
        with pytest.raises(LaunchError) as info:
            sup.launch(sys.executable, ["-c", "import time; time.sleep(60)"], Path(td) / "missing")
        assert "cannot open log" in str(info.value)
        assert sup.proc is None
        assert sup.sink is None


def _still_running(procs):
    deadline = time.monotonic() + 5
    while True:
        alive = []
        for p in procs:
            try:
                if p.is_running() and p.status() != psutil.STATUS_ZOMBIE:
                    alive.append(p)
            except psutil.NoSuchProcess:
                pass
        if not alive or time.monotonic() > deadline:
            return alive
        time.sleep(0.05)


def test_relaunch_is_rejected():
    with tempfile.TemporaryDirectory() as td:
        with ProcessSupervisor("once", drain_timeout=5.0) as sup:
            sup.launch(sys.executable, ["-c", "pass"], td)
            with pytest.raises(RuntimeError):
                sup.launch(sys.executable, ["-c", "pass"], td)


def test_teardown_error_lists_failures():
    err = TeardownError([("client_001-stdout", RuntimeError("drainer still running"))])
    assert "client_001-stdout" in str(err)
    assert err.failures[0][0] == "client_001-stdout"
