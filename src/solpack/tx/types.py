from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.rpc.responses import RpcBlockhash
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionStatus

from solpack.async_signer import AnyTransaction, AsyncSigner
from solpack.types import PackingErrorKind, Result


@dataclass
class InstructionWithSigners:
    instruction: Instruction
    signers: list[AsyncSigner] = field(default_factory=list)


InstructionReturn = Callable[
    [AsyncSigner],
    Awaitable[Union[InstructionWithSigners, list[InstructionWithSigners]]],
]


def ix_to_ix_return(ix: Instruction) -> InstructionReturn:
    async def ix_return(_funder: AsyncSigner) -> InstructionWithSigners:
        return InstructionWithSigners(ix, [])

    return ix_return


@dataclass
class InstructionBatch:
    instructions: list[InstructionWithSigners]
    lookup_tables: list[AddressLookupTableAccount]


@dataclass
class PackingError:
    kind: PackingErrorKind
    message: str
    program_id: Optional[Pubkey] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class TransactionReturn:
    transaction: AnyTransaction
    rbh: RpcBlockhash
    commitment: Commitment


@dataclass
class SignatureResult:
    slot: int
    err: Optional[Any]


@dataclass
class SimulationResult:
    err: Optional[Any]
    units_consumed: Optional[int]


@dataclass
class SendTransactionOptions:
    commitment: Optional[Commitment] = None
    send_options: Optional[TxOpts] = None


@dataclass
class SendTransactionResult:
    slot: int
    value: Result


class TransactionSender:
    """The slice of an RPC client needed to build, submit and confirm transactions."""

    commitment: Optional[Commitment]
    opts: Optional[TxOpts]

    @abstractmethod
    async def get_latest_blockhash(
        self, commitment: Optional[Commitment] = None
    ) -> RpcBlockhash:
        pass

    @abstractmethod
    async def get_block_height(self, commitment: Optional[Commitment] = None) -> int:
        pass

    @abstractmethod
    async def get_slot(self, commitment: Optional[Commitment] = None) -> int:
        pass

    @abstractmethod
    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        pass

    @abstractmethod
    async def send_raw_transaction(
        self, raw: bytes, opts: Optional[TxOpts] = None
    ) -> Signature:
        pass

    @abstractmethod
    async def get_signature_statuses(
        self, signatures: Sequence[Signature]
    ) -> list[Optional[TransactionStatus]]:
        pass

    @abstractmethod
    async def confirm_transaction(
        self,
        signature: Signature,
        rbh: RpcBlockhash,
        commitment: Optional[Commitment] = None,
    ) -> SignatureResult:
        pass

    @abstractmethod
    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        pass

    @abstractmethod
    async def get_recent_prioritization_fees(
        self, addresses: Sequence[Pubkey]
    ) -> list[dict]:
        pass


@dataclass
class ConnectionAndCommitment:
    connection: TransactionSender
    commitment: Optional[Commitment] = None


@dataclass
class RbhAndCommitment:
    rbh: RpcBlockhash
    commitment: Commitment


ConnectionOrRbh = Union[ConnectionAndCommitment, RbhAndCommitment]


@dataclass
class BuildTransactionsType:
    ixs: list[InstructionWithSigners]
    connection_or_rbh: ConnectionOrRbh
    lookup_tables: list[AddressLookupTableAccount] = field(default_factory=list)
