import os
from dataclasses import dataclass, field
from typing import Literal, Optional

from dotenv import load_dotenv
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts

from solpack.constants.numeric_constants import (
    DEFAULT_MAX_INSTRUCTION_COUNT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_INTERVAL_SECS,
)
from solpack.tx.rpc_tx_sender import RpcTransactionSender
from solpack.tx.types import SendTransactionOptions

SolpackEnv = Literal["devnet", "mainnet", "localnet"]


@dataclass
class Config:
    env: SolpackEnv
    default_http: str
    default_ws: str


configs = {
    "devnet": Config(
        env="devnet",
        default_http="https://api.devnet.solana.com",
        default_ws="wss://api.devnet.solana.com",
    ),
    "mainnet": Config(
        env="mainnet",
        default_http="https://api.mainnet-beta.solana.com",
        default_ws="wss://api.mainnet-beta.solana.com",
    ),
    "localnet": Config(
        env="localnet",
        default_http="http://127.0.0.1:8899",
        default_ws="ws://127.0.0.1:8900",
    ),
}


@dataclass
class TxConfig:
    commitment: Commitment = Confirmed
    retry_interval: float = DEFAULT_RETRY_INTERVAL_SECS
    max_retries: int = DEFAULT_MAX_RETRIES
    max_instruction_count: int = DEFAULT_MAX_INSTRUCTION_COUNT
    skip_preflight: bool = False

    def send_options(self) -> SendTransactionOptions:
        return SendTransactionOptions(
            commitment=self.commitment,
            send_options=TxOpts(
                skip_confirmation=True,
                skip_preflight=self.skip_preflight,
                preflight_commitment=self.commitment,
            ),
        )


@dataclass
class ClientConfig:
    env: SolpackEnv
    rpc_url: str
    tx: TxConfig = field(default_factory=TxConfig)

    def connection(self) -> RpcTransactionSender:
        return RpcTransactionSender(
            AsyncClient(self.rpc_url),
            self.tx.commitment,
            self.tx.send_options().send_options,
        )


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(env_file: Optional[str] = None) -> ClientConfig:
    """Reads SOLPACK_* variables, after loading `.env` (or `env_file`) into
    the environment. Variables already set win over the file."""
    load_dotenv(env_file)

    env = os.getenv("SOLPACK_ENV", "devnet")
    if env not in configs:
        raise ValueError(f"Unknown SOLPACK_ENV {env}, expected one of {list(configs)}")

    defaults = TxConfig()
    tx = TxConfig(
        commitment=os.getenv("SOLPACK_COMMITMENT", defaults.commitment),
        retry_interval=float(
            os.getenv("SOLPACK_RETRY_INTERVAL", defaults.retry_interval)
        ),
        max_retries=int(os.getenv("SOLPACK_MAX_RETRIES", defaults.max_retries)),
        max_instruction_count=int(
            os.getenv("SOLPACK_MAX_INSTRUCTION_COUNT", defaults.max_instruction_count)
        ),
        skip_preflight=_env_bool(os.getenv("SOLPACK_SKIP_PREFLIGHT", "false")),
    )

    return ClientConfig(
        env=env,
        rpc_url=os.getenv("SOLPACK_RPC_URL", configs[env].default_http),
        tx=tx,
    )
