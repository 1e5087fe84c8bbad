from __future__ import annotations

import enum
import shutil
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from XT_Harness.config import HarnessConfig
from XT_Harness.convergence import poll
from XT_Harness.crypto import KeyPair, generate_keypair
from XT_Harness.errors import LaunchError, TeardownError
from XT_Harness.genesis import GenesisAllocation, build_allocation, save_genesis
from XT_Harness.logger import setup_logger
from XT_Harness.supervisor import ProcessSupervisor
from XT_Harness.wallet_store import WalletStore

SERVER_DIRNAME = "XT_Server"
READY_POLL_INTERVAL = 0.1
LOG_TAIL_CHARS = 2000
DRAIN_GRACE_SECONDS = 1.0


class NodeRole(enum.Enum):
    TRUST_DELEGATE = "trust_delegate"
    PARTICIPANT = "participant"


@dataclass
class FleetPlan:
    participant_keys: List[KeyPair]
    delegate_key: KeyPair
    allocation: GenesisAllocation


@dataclass
class NodeDescriptor:
    name: str
    role: NodeRole
    keypair: KeyPair
    working_directory: Path
    rpc_port: Optional[int] = None
    p2p_port: Optional[int] = None
    index: Optional[int] = None
    block_producer: bool = False
    process: Optional[ProcessSupervisor] = field(default=None, repr=False)
    log_path: Optional[Path] = None

    def endpoint(self, host: str) -> str:
        if self.rpc_port is None:
            raise ValueError(f"{self.name} has no control endpoint")
        return f"{host}:{self.rpc_port}"


def plan_fleet(participants: int, initial_balance: int) -> FleetPlan:
    if participants < 1:
        raise ValueError("a fleet needs at least one participant")
    participant_keys = [generate_keypair() for _ in range(participants)]
    delegate_key = generate_keypair()
    return FleetPlan(
        participant_keys=participant_keys,
        delegate_key=delegate_key,
        allocation=build_allocation(participant_keys, initial_balance),
    )


def _fresh_directory(path: Path) -> Path:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
    return path


def port_accepts(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class NodeFleet:
    """One trust-delegate plus N participant processes, torn down together.

    Use as a context manager: once the block is entered every launched
    process is killed on exit, including when provisioning itself fails.
    """

    def __init__(self, config: HarnessConfig):
        self.cfg = config
        self.root = Path(config.nodes.config_directory)
        self.server: Optional[NodeDescriptor] = None
        self.participants: List[NodeDescriptor] = []
        self._launch_order: List[NodeDescriptor] = []
        self.logger = setup_logger("xt_harness")

    @property
    def descriptors(self) -> List[NodeDescriptor]:
        return list(self._launch_order)

    def participant_directory(self, index: int) -> Path:
        return self.root / f"XT_{index:03d}"

    def _launch(self, descriptor: NodeDescriptor, executable: str, arguments: List[str]) -> None:
        supervisor = ProcessSupervisor(descriptor.name, drain_timeout=self.cfg.scenario.drain_timeout)
        supervisor.launch(executable, arguments, descriptor.working_directory)
        descriptor.process = supervisor
        descriptor.log_path = supervisor.log_path
        self._launch_order.append(descriptor)

    def _server_arguments(self, delegate_key: KeyPair) -> List[str]:
        args = ["--trustee-address", delegate_key.address]
        if self.cfg.nodes.p2p_mode:
            args += ["--port", str(self.cfg.nodes.server_port)]
        return args

    def _participant_arguments(self, descriptor: NodeDescriptor, delegate_key: KeyPair) -> List[str]:
        nodes, rpc = self.cfg.nodes, self.cfg.rpc
        args = [
            "--data-dir", str(descriptor.working_directory),
            "--server",
            f"--rpcuser={rpc.user}",
            f"--rpcpassword={rpc.password}",
            "--rpcport", str(descriptor.rpc_port),
            "--trustee-address", delegate_key.address,
        ]
        if descriptor.block_producer:
            args += ["--trustee-private-key", delegate_key.secret]
        if nodes.p2p_mode:
            args += [
                "--p2p",
                "--port", str(descriptor.p2p_port),
                "--connect-to", f"{nodes.host}:{nodes.server_port}",
            ]
        return args

    def provision(self, plan: FleetPlan) -> List[NodeDescriptor]:
        if self._launch_order:
            raise RuntimeError("fleet already provisioned")
        self.root.mkdir(parents=True, exist_ok=True)

        server_dir = _fresh_directory(self.root / SERVER_DIRNAME)
        save_genesis(plan.allocation, server_dir)
        server = NodeDescriptor(
            name="server",
            role=NodeRole.TRUST_DELEGATE,
            keypair=plan.delegate_key,
            working_directory=server_dir,
            p2p_port=self.cfg.nodes.server_port if self.cfg.nodes.p2p_mode else None,
        )
        self._launch(server, self.cfg.nodes.server_exe, self._server_arguments(plan.delegate_key))
        self.server = server

        for i, key in enumerate(plan.participant_keys):
            directory = _fresh_directory(self.participant_directory(i))
            WalletStore(directory).create_wallet(
                passphrase=self.cfg.wallet.passphrase,
                password=self.cfg.wallet.password,
                name=f"participant_{i:03d}",
            )
            descriptor = NodeDescriptor(
                name=f"client_{i:03d}",
                role=NodeRole.PARTICIPANT,
                keypair=key,
                working_directory=directory,
                rpc_port=self.cfg.rpc_port(i),
                p2p_port=self.cfg.p2p_port(i) if self.cfg.nodes.p2p_mode else None,
                index=i,
                block_producer=(i == 0),
            )
            self._launch(descriptor, self.cfg.nodes.client_exe, self._participant_arguments(descriptor, plan.delegate_key))
            self.participants.append(descriptor)

        self.logger.info(
            "fleet_provisioned",
            extra={"extra": {"participants": len(self.participants), "root": str(self.root)}},
        )
        return self.descriptors

    def ensure_running(self, descriptor: NodeDescriptor) -> None:
        proc = descriptor.process
        if proc is None:
            raise LaunchError(descriptor.name, "process not launched")
        if not proc.is_alive():
            proc.wait_drained(DRAIN_GRACE_SECONDS)
            tail = proc.read_log()[-LOG_TAIL_CHARS:]
            raise LaunchError(descriptor.name, f"exited with code {proc.returncode()}; log tail:\n{tail}")

    def wait_for_control_endpoint(self, descriptor: NodeDescriptor) -> float:
        host = self.cfg.nodes.host

        def ready() -> bool:
            self.ensure_running(descriptor)
            return port_accepts(host, descriptor.rpc_port)

        return poll(
            ready,
            interval=READY_POLL_INTERVAL,
            timeout=self.cfg.scenario.startup_timeout,
            description=f"{descriptor.name} control endpoint {descriptor.endpoint(host)}",
        )

    def teardown(self) -> None:
        failures = []
        for descriptor in reversed(self._launch_order):
            proc = descriptor.process
            if proc is None:
                continue
            try:
                proc.terminate()
            except TeardownError as exc:
                failures.extend(exc.failures)
            except OSError as exc:
                failures.append((descriptor.name, exc))
            descriptor.process = None
        self._launch_order.clear()
        self.participants = []
        self.server = None
        if failures:
            raise TeardownError(failures)
        self.logger.info("fleet_torn_down", extra={"extra": {"root": str(self.root)}})

    def __enter__(self) -> "NodeFleet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.teardown()
            return
        try:
            self.teardown()
        except TeardownError:
            self.logger.exception("teardown_failed", extra={"extra": {"root": str(self.root)}})
