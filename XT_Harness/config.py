from __future__ import annotations

import json
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict

from XT_Harness.errors import ConfigError

CONFIG_SCHEMA_VERSION = 1

MAX_PORT = 65535


def _default_config_directory() -> str:
    return str(Path(tempfile.gettempdir()) / "xt_harness")


DEFAULT_CONFIG = {
    "meta": {
        "config_version": CONFIG_SCHEMA_VERSION,
    },
    "nodes": {
        "client_exe": "xt_client",
        "server_exe": "xt_server",
        "config_directory": _default_config_directory(),
        "host": "127.0.0.1",
        "base_rpc_port": 20100,
        "server_port": 4569,
        "p2p_mode": False,
        "p2p_base_port": 21100,
    },
    "rpc": {
        "user": "test",
        "password": "test",
        "connect_timeout": 5.0,
        "request_timeout": 30.0,
    },
    "wallet": {
        "password": "",
        "passphrase": "testtest",
    },
    "scenario": {
        "participants": 10,
        "initial_balance": 100000000,
        "transfer_amount": 1000000,
        "transfer_fee": 0,
        "poll_interval": 0.5,
        "convergence_timeout": 35.0,
        "startup_timeout": 15.0,
        "settle_seconds": 10.0,
        "drain_timeout": 10.0,
    },
    "app": {
        "log_level": "INFO",
        "log_file": "",
    },
}


@dataclass
class NodesConfig:
    client_exe: str = "xt_client"
    server_exe: str = "xt_server"
    config_directory: str = field(default_factory=_default_config_directory)
    host: str = "127.0.0.1"
    base_rpc_port: int = 20100
    server_port: int = 4569
    p2p_mode: bool = False
    p2p_base_port: int = 21100


@dataclass
class RpcConfig:
    user: str = "test"
    password: str = "test"
    connect_timeout: float = 5.0
    request_timeout: float = 30.0


@dataclass
class WalletConfig:
    password: str = ""
    passphrase: str = "testtest"


@dataclass
class ScenarioConfig:
    participants: int = 10
    initial_balance: int = 100000000
    transfer_amount: int = 1000000
    transfer_fee: int = 0
    poll_interval: float = 0.5
    convergence_timeout: float = 35.0
    startup_timeout: float = 15.0
    settle_seconds: float = 10.0
    drain_timeout: float = 10.0


@dataclass
class AppConfig:
    log_level: str = "INFO"
    log_file: str = ""


@dataclass
class HarnessConfig:
    config_version: int = CONFIG_SCHEMA_VERSION
    nodes: NodesConfig = field(default_factory=NodesConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    scenario: ScenarioConfig = field(default_factory=ScenarioConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def rpc_port(self, index: int) -> int:
        return self.nodes.base_rpc_port + index

    def p2p_port(self, index: int) -> int:
        return self.nodes.p2p_base_port + index

    def validate(self) -> None:
        sc = self.scenario
        if sc.participants < 1:
            raise ConfigError("scenario.participants must be >= 1")
        if sc.initial_balance < 0:
            raise ConfigError("scenario.initial_balance must be >= 0")
        if sc.transfer_amount <= 0:
            raise ConfigError("scenario.transfer_amount must be positive")
        if sc.transfer_fee < 0:
            raise ConfigError("scenario.transfer_fee must be >= 0")
        for name in ("poll_interval", "convergence_timeout", "startup_timeout", "drain_timeout"):
            if getattr(sc, name) <= 0:
                raise ConfigError(f"scenario.{name} must be positive")
        if sc.settle_seconds < 0:
            raise ConfigError("scenario.settle_seconds must be >= 0")

        rpc_range = range(self.nodes.base_rpc_port, self.nodes.base_rpc_port + sc.participants)
        if rpc_range.start < 1 or rpc_range.stop - 1 > MAX_PORT:
            raise ConfigError("nodes.base_rpc_port range does not fit in 1..65535")
        if not 1 <= self.nodes.server_port <= MAX_PORT:
            raise ConfigError("nodes.server_port must be in 1..65535")
        if self.nodes.server_port in rpc_range:
            raise ConfigError("nodes.server_port overlaps the rpc port range")
        if self.nodes.p2p_mode:
            p2p_range = range(self.nodes.p2p_base_port, self.nodes.p2p_base_port + sc.participants)
            if p2p_range.start < 1 or p2p_range.stop - 1 > MAX_PORT:
                raise ConfigError("nodes.p2p_base_port range does not fit in 1..65535")
            if set(p2p_range) & set(rpc_range):
                raise ConfigError("nodes.p2p_base_port range overlaps the rpc port range")
            if self.nodes.server_port in p2p_range:
                raise ConfigError("nodes.server_port overlaps the p2p port range")
        if not self.nodes.client_exe or not self.nodes.server_exe:
            raise ConfigError("nodes.client_exe and nodes.server_exe are required")


def _parse_scalar(value: str) -> Any:
    if value.startswith("[") and value.endswith("]"):
        return json.loads(value)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value.strip('"')


def _parse_min_yaml(text: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    current_section: str | None = None

    for raw in text.splitlines():
        line = raw.rstrip()
        if not line or line.strip().startswith("#"):
            continue
        if not line.startswith(" ") and line.endswith(":"):
            current_section = line[:-1].strip()
            result[current_section] = {}
            continue
        if current_section and line.startswith("  ") and ":" in line:
            key, val = line.strip().split(":", 1)
            result[current_section][key] = _parse_scalar(val.strip())
    return result


def _read_config_data(config_path: Path) -> Dict[str, Any]:
    text = config_path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = _parse_min_yaml(text)
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {config_path}")
    return data


def config_from_dict(data: Dict[str, Any]) -> HarnessConfig:
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    for section in merged:
        if section in data and isinstance(data[section], dict):
            merged[section].update(data[section])

    try:
        return HarnessConfig(
            config_version=int(merged["meta"].get("config_version", CONFIG_SCHEMA_VERSION)),
            nodes=NodesConfig(**merged["nodes"]),
            rpc=RpcConfig(**merged["rpc"]),
            wallet=WalletConfig(**merged["wallet"]),
            scenario=ScenarioConfig(**merged["scenario"]),
            app=AppConfig(**merged["app"]),
        )
    except TypeError as exc:
        raise ConfigError(f"invalid config: {exc}") from exc


def load_config(path: str | Path = "xt_harness.yaml") -> HarnessConfig:
    config_path = Path(path)
    if not config_path.exists():
        return HarnessConfig()
    return config_from_dict(_read_config_data(config_path))


def config_to_dict(cfg: HarnessConfig) -> Dict[str, Any]:
    data = asdict(cfg)
    version = data.pop("config_version")
    return {"meta": {"config_version": version}, **data}


def dump_config(cfg: HarnessConfig) -> str:
    lines = []
    for section, values in config_to_dict(cfg).items():
        lines.append(f"{section}:")
        for key, value in values.items():
            if isinstance(value, str):
                lines.append(f'  {key}: "{value}"')
            elif isinstance(value, bool):
                lines.append(f"  {key}: {'true' if value else 'false'}")
            else:
                lines.append(f"  {key}: {json.dumps(value)}")
        lines.append("")
    return "\n".join(lines)


def ensure_directories(cfg: HarnessConfig) -> None:
    Path(cfg.nodes.config_directory).mkdir(parents=True, exist_ok=True)
    if cfg.app.log_file:
        Path(cfg.app.log_file).parent.mkdir(parents=True, exist_ok=True)
