"""XT fleet harness (node processes, control sessions, convergence checks)."""

__all__ = [
    "errors",
    "logger",
    "config",
    "crypto",
    "wallet_store",
    "genesis",
    "drainer",
    "supervisor",
    "codec",
    "control",
    "convergence",
    "fleet",
    "scenario",
    "cli",
]
