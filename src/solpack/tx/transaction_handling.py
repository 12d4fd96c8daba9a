import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union
from urllib.parse import quote

from solana.rpc.commitment import Commitment, Confirmed
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.rpc.responses import RpcBlockhash
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from solpack.async_signer import AnyTransaction, AsyncSigner
from solpack.errors import (
    InvalidSignatureError,
    MissingSignatureError,
    SigningIncompleteError,
)
from solpack.tx.types import (
    BuildTransactionsType,
    ConnectionOrRbh,
    InstructionReturn,
    InstructionWithSigners,
    RbhAndCommitment,
    TransactionReturn,
)
from solpack.utils import normalize_array

logger = logging.getLogger(__name__)

InstructionLike = Union[InstructionReturn, InstructionWithSigners]


def is_versioned_transaction(tx: AnyTransaction) -> bool:
    return isinstance(tx, VersionedTransaction)


def verify_signatures(tx: AnyTransaction):
    """Raises if any required signature of a versioned transaction is missing
    or does not verify against its key. Legacy transactions are left alone."""
    if not is_versioned_transaction(tx):
        return

    message = tx.message
    serialized = to_bytes_versioned(message)
    for index, signature in enumerate(tx.signatures):
        key = message.account_keys[index]
        if signature == Signature.default():
            raise MissingSignatureError(
                f"Missing required signature for key {key} at index {index}"
            )
        if not signature.verify(key, serialized):
            raise InvalidSignatureError(
                f"Signature at index {index} does not verify for key {key}"
            )


def get_signature(tx: AnyTransaction) -> Optional[Signature]:
    """The transaction id: the fee payer's signature, once present."""
    if len(tx.signatures) == 0:
        return None
    signature = tx.signatures[0]
    if signature == Signature.default():
        return None
    return signature


async def resolve_instruction_returns(
    instructions: Union[InstructionLike, Sequence[InstructionLike]],
    funder: AsyncSigner,
) -> list[InstructionWithSigners]:
    """Runs every instruction producer against `funder`, concurrently, and
    flattens the output in order."""
    entries = normalize_array(instructions)

    async def resolve(entry: InstructionLike):
        if isinstance(entry, InstructionWithSigners):
            return entry
        return await entry(funder)

    resolved = await asyncio.gather(*[resolve(entry) for entry in entries])
    output: list[InstructionWithSigners] = []
    for result in resolved:
        if isinstance(result, InstructionWithSigners):
            output.append(result)
        else:
            output.extend(result)
    return output


@dataclass
class SignerEntry:
    signer: AsyncSigner
    transactions: set[int]


SignerMap = dict[Pubkey, SignerEntry]


@dataclass
class BuildTransactionReturn:
    message: MessageV0
    rbh: RpcBlockhash
    commitment: Commitment


async def resolve_blockhash(
    connection_or_rbh: ConnectionOrRbh,
) -> tuple[RpcBlockhash, Commitment]:
    if isinstance(connection_or_rbh, RbhAndCommitment):
        return connection_or_rbh.rbh, connection_or_rbh.commitment

    connection = connection_or_rbh.connection
    commitment = (
        connection_or_rbh.commitment
        or getattr(connection, "commitment", None)
        or Confirmed
    )
    rbh = await connection.get_latest_blockhash(commitment)
    return rbh, commitment


async def build_transactions_from_ix_with_signers(
    transactions: Sequence[BuildTransactionsType],
    fee_payer: Union[AsyncSigner, Pubkey],
) -> tuple[list[BuildTransactionReturn], SignerMap]:
    """Compiles one v0 message per entry and records which transactions every
    distinct signer has to sign. A fee payer signer is registered on all of them.
    """
    signers: SignerMap = {}
    if isinstance(fee_payer, AsyncSigner):
        fee_payer_key = fee_payer.pubkey()
        signers[fee_payer_key] = SignerEntry(fee_payer, set(range(len(transactions))))
    else:
        fee_payer_key = fee_payer

    for index, transaction in enumerate(transactions):
        for ix in transaction.ixs:
            for signer in ix.signers:
                key = signer.pubkey()
                entry = signers.get(key)
                if entry is None:
                    signers[key] = SignerEntry(signer, {index})
                else:
                    entry.transactions.add(index)

    async def build(transaction: BuildTransactionsType) -> BuildTransactionReturn:
        rbh, commitment = await resolve_blockhash(transaction.connection_or_rbh)
        message = MessageV0.try_compile(
            fee_payer_key,
            [ix.instruction for ix in transaction.ixs],
            list(transaction.lookup_tables),
            rbh.blockhash,
        )
        return BuildTransactionReturn(message, rbh, commitment)

    built = await asyncio.gather(*[build(tx) for tx in transactions])
    return list(built), signers


def convert_build_transaction_return(
    tx: BuildTransactionReturn,
) -> TransactionReturn:
    signatures = [Signature.default()] * tx.message.header.num_required_signatures
    return TransactionReturn(
        VersionedTransaction.populate(tx.message, signatures),
        tx.rbh,
        tx.commitment,
    )


def _assert_fully_signed(index: int, tx: AnyTransaction):
    serialized = (
        to_bytes_versioned(tx.message) if is_versioned_transaction(tx) else None
    )
    for position, signature in enumerate(tx.signatures):
        key = tx.message.account_keys[position]
        if signature == Signature.default():
            raise SigningIncompleteError(
                f"Transaction {index} is missing a signature for {key}"
            )
        if serialized is not None and not signature.verify(key, serialized):
            raise SigningIncompleteError(
                f"Transaction {index} has an invalid signature for {key}"
            )


async def sign_transaction_returns(
    unsigned: list[TransactionReturn], signers: SignerMap
) -> list[TransactionReturn]:
    """Asks every signer once for all of its transactions.

    Signers needing an outside round trip go first, one after another, then
    local signers. Each signer sees the output of the ones before it.
    """

    async def sign_entry(entry: SignerEntry):
        indexes = sorted(entry.transactions)
        to_sign = [unsigned[i].transaction for i in indexes]
        signed = await entry.signer.sign_all(to_sign)
        if len(signed) != len(to_sign):
            raise SigningIncompleteError(
                f"Signer {entry.signer.pubkey()} returned {len(signed)} transactions, expected {len(to_sign)}"
            )
        for i, tx in zip(indexes, signed):
            unsigned[i].transaction = tx

    signer_groups = [
        [entry for entry in signers.values() if entry.signer.requires_async],
        [entry for entry in signers.values() if not entry.signer.requires_async],
    ]
    for group in signer_groups:
        for entry in group:
            await sign_entry(entry)

    for index, tx_return in enumerate(unsigned):
        _assert_fully_signed(index, tx_return.transaction)

    logger.info(
        f"Signed {len(unsigned)} transactions with {len(signers)} signers"
    )
    return unsigned


async def build_and_sign_transactions_from_ix_with_signers(
    transactions: Sequence[BuildTransactionsType],
    fee_payer: AsyncSigner,
) -> list[TransactionReturn]:
    built, signers = await build_transactions_from_ix_with_signers(
        transactions, fee_payer
    )
    unsigned = [convert_build_transaction_return(tx) for tx in built]
    return await sign_transaction_returns(unsigned, signers)


async def build_and_sign_transactions(
    transactions: Sequence[
        tuple[
            Union[InstructionLike, Sequence[InstructionLike]],
            ConnectionOrRbh,
            Sequence[AddressLookupTableAccount],
        ]
    ],
    fee_payer: AsyncSigner,
) -> list[TransactionReturn]:
    """Builds and signs several transactions at once.

    Args:
        transactions: `(instructions, connection_or_rbh, lookup_tables)` per transaction
        fee_payer: pays for and signs every transaction
    """
    resolved = await asyncio.gather(
        *[resolve_instruction_returns(ixs, fee_payer) for ixs, _, _ in transactions]
    )
    return await build_and_sign_transactions_from_ix_with_signers(
        [
            BuildTransactionsType(ixs, connection_or_rbh, list(lookup_tables))
            for ixs, (_, connection_or_rbh, lookup_tables) in zip(
                resolved, transactions
            )
        ],
        fee_payer,
    )


async def build_and_sign_transaction(
    instructions: Union[InstructionLike, Sequence[InstructionLike]],
    fee_payer: AsyncSigner,
    connection_or_rbh: ConnectionOrRbh,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> TransactionReturn:
    (transaction,) = await build_and_sign_transactions(
        [(instructions, connection_or_rbh, lookup_tables)], fee_payer
    )
    return transaction


def _explorer_cluster_params(rpc_endpoint: str) -> str:
    return f"cluster=custom&customUrl={quote(rpc_endpoint, safe='')}"


def format_explorer_link(signature: Union[Signature, str], rpc_endpoint: str) -> str:
    return f"https://explorer.solana.com/tx/{signature}?{_explorer_cluster_params(rpc_endpoint)}"


def format_explorer_message_link(tx: AnyTransaction, rpc_endpoint: str) -> str:
    if is_versioned_transaction(tx):
        message_bytes = to_bytes_versioned(tx.message)
    else:
        message_bytes = bytes(tx.message)
    encoded = quote(base64.b64encode(message_bytes).decode("utf-8"), safe="")
    return f"https://explorer.solana.com/tx/inspector?message={encoded}&{_explorer_cluster_params(rpc_endpoint)}"


@dataclass
class PrettyAccount:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass
class PrettyInstruction:
    program_id: str
    keys: list[PrettyAccount]
    data: str


@dataclass
class PrettySignature:
    public_key: str
    signature: Optional[str]


@dataclass
class PrettyTransaction:
    fee_payer: str
    recent_blockhash: str
    signatures: list[PrettySignature]
    instructions: list[PrettyInstruction]


def _message_accounts(
    tx: AnyTransaction, lookup_tables: Sequence[AddressLookupTableAccount]
) -> list[PrettyAccount]:
    message = tx.message
    header = message.header
    static_keys = list(message.account_keys)
    num_signed = header.num_required_signatures
    writable_signed = num_signed - header.num_readonly_signed_accounts
    writable_unsigned_end = len(static_keys) - header.num_readonly_unsigned_accounts

    accounts = [
        PrettyAccount(
            str(key),
            index < num_signed,
            index < writable_signed or num_signed <= index < writable_unsigned_end,
        )
        for index, key in enumerate(static_keys)
    ]

    tables = {lut.key: lut for lut in lookup_tables}
    lookups = list(getattr(message, "address_table_lookups", None) or [])
    writable_loaded: list[PrettyAccount] = []
    readonly_loaded: list[PrettyAccount] = []
    for lookup in lookups:
        table = tables.get(lookup.account_key)
        for table_index in lookup.writable_indexes:
            key = table.addresses[table_index] if table else f"{lookup.account_key}[{table_index}]"
            writable_loaded.append(PrettyAccount(str(key), False, True))
        for table_index in lookup.readonly_indexes:
            key = table.addresses[table_index] if table else f"{lookup.account_key}[{table_index}]"
            readonly_loaded.append(PrettyAccount(str(key), False, False))

    return accounts + writable_loaded + readonly_loaded


def pretty_transaction(
    tx: AnyTransaction,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> PrettyTransaction:
    """Expands a compiled transaction into readable accounts and instructions.

    Keys loaded through lookup tables are resolved when the table is passed
    in, otherwise they are shown as `table[index]`.
    """
    accounts = _message_accounts(tx, lookup_tables)
    message = tx.message
    num_signed = message.header.num_required_signatures

    signatures = [
        PrettySignature(
            accounts[index].pubkey,
            None if signature == Signature.default() else str(signature),
        )
        for index, signature in enumerate(tx.signatures[:num_signed])
    ]
    instructions = [
        PrettyInstruction(
            accounts[ix.program_id_index].pubkey,
            [accounts[account_index] for account_index in bytes(ix.accounts)],
            base64.b64encode(bytes(ix.data)).decode("utf-8"),
        )
        for ix in message.instructions
    ]
    return PrettyTransaction(
        fee_payer=accounts[0].pubkey,
        recent_blockhash=str(message.recent_blockhash),
        signatures=signatures,
        instructions=instructions,
    )
