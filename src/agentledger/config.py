"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_HOME = Path.home() / ".agentledger"
DEFAULT_RPC_URL = "https://mainnet.base.org"
# $OPENWORK on Base
DEFAULT_TOKEN_CONTRACT = "0x299c30DD5974BF4D5bFE42C340CA40462816AB07"

HOME_ENV = "AGENTLEDGER_HOME"
RPC_URL_ENV = "AGENTLEDGER_RPC_URL"
TOKEN_CONTRACT_ENV = "AGENTLEDGER_TOKEN_CONTRACT"
WEBHOOK_TIMEOUT_ENV = "AGENTLEDGER_WEBHOOK_TIMEOUT"
RPC_TIMEOUT_ENV = "AGENTLEDGER_RPC_TIMEOUT"
LOG_LEVEL_ENV = "AGENTLEDGER_LOG_LEVEL"


@dataclass
class LedgerConfig:
    home: Path = DEFAULT_HOME
    rpc_url: str = DEFAULT_RPC_URL
    token_contract: str = DEFAULT_TOKEN_CONTRACT
    webhook_timeout_seconds: float = 5.0
    rpc_timeout_seconds: float = 10.0
    log_level: str = "WARNING"

    @property
    def db_path(self) -> Path:
        return self.home / "ledger.sqlite3"

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.WARNING

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        env = os.environ if environ is None else environ
        home = env.get(HOME_ENV)
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            rpc_url=env.get(RPC_URL_ENV) or DEFAULT_RPC_URL,
            token_contract=env.get(TOKEN_CONTRACT_ENV) or DEFAULT_TOKEN_CONTRACT,
            webhook_timeout_seconds=_float_env(env, WEBHOOK_TIMEOUT_ENV, 5.0),
            rpc_timeout_seconds=_float_env(env, RPC_TIMEOUT_ENV, 10.0),
            log_level=env.get(LOG_LEVEL_ENV) or "WARNING",
        )


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value
