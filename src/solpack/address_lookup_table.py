import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from construct import Bytes, Int8ul, Int32ul, Int64ul, PrefixedArray, Struct
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from solpack.async_signer import AsyncSigner
from solpack.constants.numeric_constants import (
    LOOKUP_TABLE_EXTEND_CHUNK_SIZE,
    LOOKUP_TABLE_MAX_ADDRESSES,
    MS_PER_SLOT,
)
from solpack.tx.send import send_transaction
from solpack.tx.sizing import build_dynamic_transactions
from solpack.tx.transaction_handling import build_and_sign_transaction
from solpack.tx.types import (
    ConnectionAndCommitment,
    InstructionReturn,
    InstructionWithSigners,
    SendTransactionOptions,
    TransactionSender,
)
from solpack.types import Result, err, is_err, ok
from solpack.utils import chunks

logger = logging.getLogger(__name__)

ADDRESS_LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string(
    "AddressLookupTab1e1111111111111111111111111"
)

LOOKUP_TABLE_META_SIZE = 56

CREATE_LOOKUP_TABLE_LAYOUT = Struct(
    "instruction" / Int32ul,
    "recent_slot" / Int64ul,
    "bump_seed" / Int8ul,
)

EXTEND_LOOKUP_TABLE_LAYOUT = Struct(
    "instruction" / Int32ul,
    "addresses" / PrefixedArray(Int64ul, Bytes(32)),
)

CREATE_LOOKUP_TABLE_INDEX = 0
EXTEND_LOOKUP_TABLE_INDEX = 2


@dataclass
class ExtendTransactionOptions(SendTransactionOptions):
    await_new_slot: bool = False


async def get_address_lookup_table(
    connection: TransactionSender, pubkey: Pubkey
) -> Optional[AddressLookupTableAccount]:
    data = await connection.get_account_data(pubkey)
    if data is None:
        return None
    return decode_address_lookup_table(pubkey, data)


def decode_address_lookup_table(
    pubkey: Pubkey, data: bytes
) -> AddressLookupTableAccount:
    addresses = [
        Pubkey.from_bytes(data[i : i + 32])
        for i in range(LOOKUP_TABLE_META_SIZE, len(data) - 31, 32)
    ]
    return AddressLookupTableAccount(pubkey, addresses)


def derive_lookup_table_address(authority: Pubkey, recent_slot: int) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [bytes(authority), Int64ul.build(recent_slot)],
        ADDRESS_LOOKUP_TABLE_PROGRAM_ID,
    )


def create_lookup_table_ix(
    authority: Pubkey, payer: Pubkey, recent_slot: int
) -> tuple[Instruction, Pubkey]:
    lookup_table, bump_seed = derive_lookup_table_address(authority, recent_slot)
    data = CREATE_LOOKUP_TABLE_LAYOUT.build(
        {
            "instruction": CREATE_LOOKUP_TABLE_INDEX,
            "recent_slot": recent_slot,
            "bump_seed": bump_seed,
        }
    )
    accounts = [
        AccountMeta(lookup_table, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(ADDRESS_LOOKUP_TABLE_PROGRAM_ID, data, accounts), lookup_table


def extend_lookup_table_ix(
    lookup_table: Pubkey,
    authority: Pubkey,
    payer: Optional[Pubkey],
    addresses: Sequence[Pubkey],
) -> Instruction:
    data = EXTEND_LOOKUP_TABLE_LAYOUT.build(
        {
            "instruction": EXTEND_LOOKUP_TABLE_INDEX,
            "addresses": [bytes(address) for address in addresses],
        }
    )
    accounts = [
        AccountMeta(lookup_table, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
    ]
    if payer is not None:
        accounts += [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
    return Instruction(ADDRESS_LOOKUP_TABLE_PROGRAM_ID, data, accounts)


async def create_address_lookup_table(
    connection: TransactionSender,
    authority: AsyncSigner,
    fee_payer: AsyncSigner,
    recent_slot: Optional[int] = None,
    options: Optional[SendTransactionOptions] = None,
) -> Result:
    """Creates a lookup table owned by `authority`.

    Returns:
        Result: `Ok(Pubkey)` of the new table or `Err(str)`
    """
    if recent_slot is None:
        recent_slot = await connection.get_slot(Confirmed)

    ix, lookup_table = create_lookup_table_ix(
        authority.pubkey(), fee_payer.pubkey(), recent_slot
    )
    tx = await build_and_sign_transaction(
        InstructionWithSigners(ix, [authority]),
        fee_payer,
        ConnectionAndCommitment(connection, Confirmed),
    )

    # the derivation slot may not be visible to preflight yet
    send_options = SendTransactionOptions(
        commitment=options.commitment if options else None,
        send_options=TxOpts(skip_confirmation=True, skip_preflight=True),
    )
    response = await send_transaction(tx, connection, send_options)
    if is_err(response.value):
        return err(f"Failed to create address lookup table: {response.value.error}")

    logger.info(f"Created address lookup table {lookup_table}")
    return ok(lookup_table)


def _extend_ix_return(
    lookup_table: Pubkey,
    authority: AsyncSigner,
    fee_payer: AsyncSigner,
    addresses: list[Pubkey],
) -> InstructionReturn:
    async def ix_return(funder: AsyncSigner) -> InstructionWithSigners:
        ix = extend_lookup_table_ix(
            lookup_table, authority.pubkey(), fee_payer.pubkey(), addresses
        )
        return InstructionWithSigners(ix, [funder, fee_payer, authority])

    return ix_return


async def extend_address_lookup_table(
    connection: TransactionSender,
    lookup_table: Pubkey,
    authority: AsyncSigner,
    fee_payer: AsyncSigner,
    addresses: Sequence[Pubkey],
    options: Optional[ExtendTransactionOptions] = None,
) -> Result:
    """Appends `addresses` to a table, as many transactions as it takes.

    With `await_new_slot` set this only returns once the chain has moved past
    the last extension, which is when the new entries become usable.

    Returns:
        Result: `Ok(Pubkey)` of the table or `Err(str)`
    """
    if len(addresses) > LOOKUP_TABLE_MAX_ADDRESSES:
        return err(
            f"Address lookup tables can only hold up to {LOOKUP_TABLE_MAX_ADDRESSES} addresses"
        )

    commitment = (options.commitment if options else None) or Confirmed
    instruction_returns = [
        _extend_ix_return(lookup_table, authority, fee_payer, chunk)
        for chunk in chunks(list(addresses), LOOKUP_TABLE_EXTEND_CHUNK_SIZE)
    ]
    tx_returns = await build_dynamic_transactions(
        instruction_returns,
        fee_payer,
        ConnectionAndCommitment(connection, commitment),
    )
    if is_err(tx_returns):
        return err(f"Failed to build dynamic transactions: {tx_returns.error}")

    results = await asyncio.gather(
        *[send_transaction(tx, connection, options) for tx in tx_returns.value]
    )
    for result in results:
        if is_err(result.value):
            return err(f"Failed to extend address lookup table: {result.value.error}")

    logger.info(
        f"Extended address lookup table {lookup_table} with {len(addresses)} addresses in {len(results)} transactions"
    )

    if options is not None and options.await_new_slot and results:
        newest_slot = max(result.slot for result in results)
        while await connection.get_slot(commitment) <= newest_slot:
            await asyncio.sleep(MS_PER_SLOT / 2 / 1000)

    return ok(lookup_table)


async def create_and_extend_address_lookup_table(
    connection: TransactionSender,
    authority: AsyncSigner,
    fee_payer: AsyncSigner,
    addresses: Sequence[Pubkey],
    recent_slot: Optional[int] = None,
    options: Optional[ExtendTransactionOptions] = None,
) -> Result:
    created = await create_address_lookup_table(
        connection, authority, fee_payer, recent_slot, options
    )
    if is_err(created):
        return created

    return await extend_address_lookup_table(
        connection, created.value, authority, fee_payer, addresses, options
    )
