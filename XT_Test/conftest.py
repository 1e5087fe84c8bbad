import random
import socket
import stat
import sys
from pathlib import Path

import pytest

from XT_Harness.config import HarnessConfig

ROOT = Path(__file__).resolve().parent.parent
FAKE_NODE = Path(__file__).resolve().parent / "fake_node.py"


def _port_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


def free_port_block(count: int) -> int:
    for _ in range(100):
        base = random.randint(22000, 60000 - count)
        if all(_port_free(base + i) for i in range(count)):
            return base
    raise RuntimeError(f"no block of {count} free ports")


def write_node_wrapper(path: Path, role: str, extra_args=()) -> Path:
    """Executable shell script that runs fake_node.py in ``role``.

    ``extra_args`` go after the harness-supplied arguments so they win.
    """
    extra = " ".join(extra_args)
    path.write_text(
        "#!/bin/sh\n"
        f'PYTHONPATH="{ROOT}${{PYTHONPATH:+:$PYTHONPATH}}"\n'
        "export PYTHONPATH\n"
        f'exec "{sys.executable}" "{FAKE_NODE}" {role} "$@" {extra}\n',
        encoding="utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fleet_config(tmp_path):
    """Factory for a p2p-mode config whose nodes are fake_node.py processes."""

    def build(participants: int = 3, client_args=(), server_args=()) -> HarnessConfig:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        cfg = HarnessConfig()
        cfg.nodes.client_exe = str(write_node_wrapper(bin_dir / "xt_client", "client", client_args))
        cfg.nodes.server_exe = str(write_node_wrapper(bin_dir / "xt_server", "server", server_args))
        cfg.nodes.config_directory = str(tmp_path / "fleet")
        cfg.nodes.p2p_mode = True
        base = free_port_block(2 * participants + 1)
        cfg.nodes.base_rpc_port = base
        cfg.nodes.p2p_base_port = base + participants
        cfg.nodes.server_port = base + 2 * participants
        sc = cfg.scenario
        sc.participants = participants
        sc.poll_interval = 0.1
        sc.convergence_timeout = 15.0
        sc.startup_timeout = 20.0
        sc.settle_seconds = 0.0
        sc.drain_timeout = 5.0
        return cfg

    return build
