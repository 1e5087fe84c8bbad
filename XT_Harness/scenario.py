from __future__ import annotations

import contextlib
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Set

from XT_Harness.config import HarnessConfig
from XT_Harness.control import ControlSession
from XT_Harness.convergence import poll
from XT_Harness.errors import AuthError, ConfigError, ScenarioAssertionError
from XT_Harness.fleet import FleetPlan, NodeDescriptor, NodeFleet, plan_fleet
from XT_Harness.logger import setup_logger

WRONG_PASSPHRASE = "this is not the correct wallet passphrase"
ADDRESS_TEST_LABEL = "address_test_account"
CIRCLE_LABEL = "circle_test"


@dataclass
class TransferRecord:
    source: str
    destination: str
    destination_address: str
    amount: int
    source_balance_before: int
    destination_balance_before: int
    elapsed: float


@dataclass
class ScenarioReport:
    participants: int
    initial_balance: int
    transfers: List[TransferRecord] = field(default_factory=list)
    final_balances: Dict[str, int] = field(default_factory=dict)
    log_paths: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check(condition: bool, node: str, message: str) -> None:
    if not condition:
        raise ScenarioAssertionError(f"{node}: {message}")


class ScenarioDriver:
    """Round-robin transfer scenario over a freshly provisioned fleet.

    Steps run strictly in order, one control call at a time. The fleet is
    torn down on every exit path; a failure in any step aborts the run.
    """

    def __init__(self, config: HarnessConfig, sleep: Callable[[float], None] = time.sleep):
        config.validate()
        if config.scenario.participants < 2:
            raise ConfigError("round-robin transfers need at least 2 participants")
        self.cfg = config
        self.sleep = sleep
        self.logger = setup_logger("xt_harness")
        self.sessions: Dict[str, ControlSession] = {}
        self.issued_addresses: Dict[str, Set[str]] = {}

    def _step(self, message: str, **fields: Any) -> None:
        self.logger.info(message, extra={"extra": fields})

    def run(self) -> ScenarioReport:
        started = time.monotonic()
        sc = self.cfg.scenario
        report = ScenarioReport(participants=sc.participants, initial_balance=sc.initial_balance)

        self._step("generating_keys", participants=sc.participants)
        plan = plan_fleet(sc.participants, sc.initial_balance)

        with NodeFleet(self.cfg) as fleet, contextlib.ExitStack() as sessions:
            self._step("launching_fleet", root=str(fleet.root))
            fleet.provision(plan)
            report.log_paths = {d.name: str(d.log_path) for d in fleet.descriptors}

            self._step("opening_sessions")
            for descriptor in fleet.participants:
                sessions.enter_context(self.open_session(fleet, descriptor))

            self.check_initial_balances(fleet.participants)
            self.check_unlock(fleet.participants)
            self.check_address_generation(fleet.participants)
            self.import_genesis_keys(fleet.participants, plan)
            report.transfers = self.round_robin(fleet.participants)
            report.final_balances = self.check_conservation(fleet.participants)

            self._step("settling", seconds=sc.settle_seconds)
            self.sleep(sc.settle_seconds)

        report.duration = time.monotonic() - started
        self._step("scenario_passed", duration=round(report.duration, 3), transfers=len(report.transfers))
        return report

    def open_session(self, fleet: NodeFleet, descriptor: NodeDescriptor) -> ControlSession:
        fleet.wait_for_control_endpoint(descriptor)
        session = ControlSession(
            descriptor.name,
            connect_timeout=self.cfg.rpc.connect_timeout,
            request_timeout=self.cfg.rpc.request_timeout,
        )
        session.connect(descriptor.endpoint(self.cfg.nodes.host))
        try:
            if not session.login(self.cfg.rpc.user, self.cfg.rpc.password):
                raise AuthError(f"{descriptor.name}: login rejected for user {self.cfg.rpc.user!r}")
        except BaseException:
            session.close()
            raise
        self.sessions[descriptor.name] = session
        self.issued_addresses[descriptor.name] = set()
        return session

    def _new_address(self, descriptor: NodeDescriptor, label: str) -> str:
        address = self.sessions[descriptor.name].get_new_address(label)
        issued = self.issued_addresses[descriptor.name]
        _check(address not in issued, descriptor.name, f"getnewaddress returned a repeated address {address}")
        issued.add(address)
        return address

    def check_initial_balances(self, participants: List[NodeDescriptor]) -> None:
        self._step("verifying_zero_balances")
        for d in participants:
            balance = self.sessions[d.name].get_balance(0)
            _check(balance == 0, d.name, f"expected empty wallet before key import, balance is {balance}")

    def check_unlock(self, participants: List[NodeDescriptor]) -> None:
        self._step("unlocking_wallets")
        for d in participants:
            session = self.sessions[d.name]
            _check(not session.unlock_wallet(WRONG_PASSPHRASE), d.name, "wrong passphrase unlocked the wallet")
            _check(session.unlock_wallet(self.cfg.wallet.passphrase), d.name, "correct passphrase was rejected")

    def check_address_generation(self, participants: List[NodeDescriptor]) -> None:
        self._step("testing_address_generation", label=ADDRESS_TEST_LABEL)
        for d in participants:
            session = self.sessions[d.name]
            before = session.list_receive_addresses()
            _check(not before, d.name, f"expected no receive addresses, found {len(before)}")
            address = self._new_address(d, ADDRESS_TEST_LABEL)
            _check(address not in before, d.name, f"new address {address} was already listed")
            after = session.list_receive_addresses()
            _check(len(after) == len(before) + 1, d.name, f"expected {len(before) + 1} addresses, found {len(after)}")
            _check(all(addr in after for addr in before), d.name, "previously listed addresses disappeared")
            _check(after.get(address) == ADDRESS_TEST_LABEL, d.name,
                   f"address {address} labelled {after.get(address)!r}, expected {ADDRESS_TEST_LABEL!r}")

    def import_genesis_keys(self, participants: List[NodeDescriptor], plan: FleetPlan) -> None:
        self._step("importing_genesis_keys")
        for d in participants:
            session = self.sessions[d.name]
            session.import_private_key(d.keypair.secret)
            session.rescan(0)
            expected = plan.allocation.balance_of(d.keypair.address)
            balance = session.get_balance(0)
            _check(balance == expected, d.name, f"balance after rescan is {balance}, genesis allocated {expected}")

    def round_robin(self, participants: List[NodeDescriptor]) -> List[TransferRecord]:
        sc = self.cfg.scenario
        amount = sc.transfer_amount
        self._step("round_robin_transfers", amount=amount)
        records = []
        for i, source in enumerate(participants):
            destination = participants[(i + 1) % len(participants)]
            dest_session = self.sessions[destination.name]
            dest_address = self._new_address(destination, CIRCLE_LABEL)
            dest_before = dest_session.get_balance(0)
            source_before = self.sessions[source.name].get_balance(0)

            self.sessions[source.name].transfer(amount, dest_address)
            elapsed = poll(
                lambda: dest_session.get_balance(0) == dest_before + amount,
                interval=sc.poll_interval,
                timeout=sc.convergence_timeout,
                description=f"{destination.name} receiving {amount} from {source.name}",
            )
            self.logger.info(
                "transfer_observed",
                extra={"extra": {"source": source.name, "destination": destination.name,
                                 "amount": amount, "elapsed": round(elapsed, 3)}},
            )
            records.append(
                TransferRecord(
                    source=source.name,
                    destination=destination.name,
                    destination_address=dest_address,
                    amount=amount,
                    source_balance_before=source_before,
                    destination_balance_before=dest_before,
                    elapsed=elapsed,
                )
            )
        return records

    def check_conservation(self, participants: List[NodeDescriptor]) -> Dict[str, int]:
        sc = self.cfg.scenario
        expected = sc.initial_balance - sc.transfer_fee
        self._step("verifying_final_balances", expected=expected)
        finals = {}
        for d in participants:
            session = self.sessions[d.name]
            observed: Dict[str, int] = {}

            def settled() -> bool:
                observed["balance"] = session.get_balance(0)
                return observed["balance"] == expected

            poll(
                settled,
                interval=sc.poll_interval,
                timeout=sc.convergence_timeout,
                description=f"{d.name} final balance {expected}",
            )
            finals[d.name] = observed["balance"]
        return finals
