import asyncio
from typing import Optional, Sequence

from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.responses import RpcBlockhash
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionErrorFieldless

from solpack.async_signer import (
    AnyTransaction,
    AsyncSigner,
    callback_to_async_signer,
    keypair_to_async_signer,
    partial_sign,
)
from solpack.tx.types import (
    InstructionWithSigners,
    RbhAndCommitment,
    SignatureResult,
    SimulationResult,
    TransactionSender,
)

LAST_VALID_BLOCK_HEIGHT = 1_000


class FakeTransactionSender(TransactionSender):
    """In-memory network: records every send, confirms after `confirm_delay`
    seconds, fails the signatures in `failing_signatures` on chain."""

    def __init__(
        self,
        commitment: Commitment = Confirmed,
        confirm_delay: float = 0.0,
        slot: int = 100,
    ):
        self.commitment = commitment
        self.opts = TxOpts(skip_confirmation=True, preflight_commitment=commitment)
        self.confirm_delay = confirm_delay
        self.slot = slot

        self.sent: list[tuple[bytes, Optional[TxOpts]]] = []
        self.failing_signatures: set[Signature] = set()
        self.confirm_error: Optional[Exception] = None
        self.fail_resends = False
        self.fail_on_chain = False

        self.blockhash_requests = 0
        self.simulated: list[VersionedTransaction] = []
        self.simulation_err = None
        self.units_consumed: Optional[int] = 50_000
        self.fee_requests: list[list[Pubkey]] = []
        self.fees: list[dict] = []
        self.accounts: dict[Pubkey, bytes] = {}

    async def get_latest_blockhash(
        self, commitment: Optional[Commitment] = None
    ) -> RpcBlockhash:
        self.blockhash_requests += 1
        return RpcBlockhash(Hash.new_unique(), LAST_VALID_BLOCK_HEIGHT)

    async def get_block_height(self, commitment: Optional[Commitment] = None) -> int:
        return LAST_VALID_BLOCK_HEIGHT - 150

    async def get_slot(self, commitment: Optional[Commitment] = None) -> int:
        self.slot += 1
        return self.slot

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        return self.accounts.get(pubkey)

    async def send_raw_transaction(
        self, raw: bytes, opts: Optional[TxOpts] = None
    ) -> Signature:
        if self.fail_resends and self.sent:
            self.sent.append((raw, opts))
            raise ConnectionError("node unavailable")
        self.sent.append((raw, opts))
        return VersionedTransaction.from_bytes(raw).signatures[0]

    async def get_signature_statuses(self, signatures: Sequence[Signature]):
        return [None for _ in signatures]

    async def confirm_transaction(
        self,
        signature: Signature,
        rbh: RpcBlockhash,
        commitment: Optional[Commitment] = None,
    ) -> SignatureResult:
        await asyncio.sleep(self.confirm_delay)
        if self.confirm_error is not None:
            raise self.confirm_error
        if self.fail_on_chain or signature in self.failing_signatures:
            return SignatureResult(self.slot, TransactionErrorFieldless.AccountNotFound)
        return SignatureResult(self.slot, None)

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        self.simulated.append(tx)
        return SimulationResult(self.simulation_err, self.units_consumed)

    async def get_recent_prioritization_fees(
        self, addresses: Sequence[Pubkey]
    ) -> list[dict]:
        self.fee_requests.append(list(addresses))
        return self.fees


def fixed_rbh(commitment: Commitment = Confirmed) -> RbhAndCommitment:
    return RbhAndCommitment(
        RpcBlockhash(Hash.new_unique(), LAST_VALID_BLOCK_HEIGHT), commitment
    )


def local_signer() -> AsyncSigner:
    return keypair_to_async_signer(Keypair())


class RecordingSigner:
    """A network backed signer that signs with a local keypair and records
    every call together with the shared `log`."""

    def __init__(self, log: Optional[list] = None, drop_last: bool = False):
        self.keypair = Keypair()
        self.calls: list[int] = []
        self.log = log if log is not None else []
        self.drop_last = drop_last
        self.signer = callback_to_async_signer(self.keypair.pubkey(), self.sign_all)

    async def sign_all(self, txs: list[AnyTransaction]) -> list[AnyTransaction]:
        await asyncio.sleep(0)
        self.calls.append(len(txs))
        self.log.append(self.keypair.pubkey())
        signed = [partial_sign(tx, self.keypair) for tx in txs]
        if self.drop_last:
            return signed[:-1]
        return signed


def logging_local_signer(log: list) -> AsyncSigner:
    signer = local_signer()
    sign_all_fn = signer.sign_all_fn

    async def sign_all(txs):
        log.append(signer.pubkey())
        return await sign_all_fn(txs)

    signer.sign_all_fn = sign_all
    return signer


def readonly_accounts(count: int) -> list[Pubkey]:
    return [Pubkey.new_unique() for _ in range(count)]


def instruction(
    program_id: Pubkey,
    accounts: Sequence[AccountMeta] = (),
    data: bytes = b"",
    signers: Sequence[AsyncSigner] = (),
) -> InstructionWithSigners:
    return InstructionWithSigners(
        Instruction(program_id, data, list(accounts)), list(signers)
    )


def readonly_instruction(
    program_id: Pubkey, keys: Sequence[Pubkey], data: bytes = b""
) -> InstructionWithSigners:
    return instruction(
        program_id,
        [AccountMeta(key, is_signer=False, is_writable=False) for key in keys],
        data,
    )
