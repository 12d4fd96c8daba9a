import logging
from dataclasses import dataclass
from typing import Sequence, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from solpack.async_signer import AsyncSigner
from solpack.constants.numeric_constants import (
    BLOCKHASH_LENGTH,
    COMPACT_U16_ONE_BYTE_MAX,
    DEFAULT_MAX_INSTRUCTION_COUNT,
    LOOKUP_TABLE_OVERHEAD,
    MAX_TRANSACTION_SIZE,
    MAX_UNIQUE_KEYS_COUNT,
    MESSAGE_HEADER_LENGTH,
    PUBKEY_LENGTH,
    SIGNATURE_LENGTH,
    VERSION_PREFIX_LENGTH,
)
from solpack.tx.transaction_handling import (
    build_and_sign_transactions_from_ix_with_signers,
    resolve_instruction_returns,
)
from solpack.tx.types import (
    BuildTransactionsType,
    ConnectionOrRbh,
    InstructionBatch,
    InstructionReturn,
    InstructionWithSigners,
    PackingError,
    TransactionReturn,
)
from solpack.types import PackingErrorKind, Result, err, is_err, ok

logger = logging.getLogger(__name__)

LookupTableSet = list[tuple[set[Pubkey], AddressLookupTableAccount]]


@dataclass
class TransactionSize:
    size: int
    lookup_tables: list[AddressLookupTableAccount]
    unique_key_count: int


@dataclass
class StaticAccountSize:
    static_size: int
    static_accounts: int


def length_to_compact16_size(size: int) -> int:
    if size > COMPACT_U16_ONE_BYTE_MAX:
        return 2
    return 1


def contained_in_lut_count(
    keys: set[Pubkey], lookup_table_addresses: set[Pubkey]
) -> tuple[int, set[Pubkey]]:
    """Returns how many of `keys` the table holds, and the keys it doesn't."""
    not_included = keys - lookup_table_addresses
    return len(keys) - len(not_included), not_included


def build_lookup_table_set(
    lookup_tables: Sequence[AddressLookupTableAccount],
) -> LookupTableSet:
    return [(set(lut.addresses), lut) for lut in lookup_tables]


def total_size(
    static_account_size: StaticAccountSize,
    lut_count: int,
    included_accounts: int,
    remaining_static: int,
) -> int:
    """Serialized size of a v0 transaction.

    Args:
        static_account_size: static byte size and static key count of the transaction
        lut_count: number of lookup tables referenced
        included_accounts: number of keys resolved through lookup tables
        remaining_static: eligible keys that still have to be stored in full
    """
    static_count = static_account_size.static_accounts + remaining_static
    return (
        static_account_size.static_size
        + LOOKUP_TABLE_OVERHEAD * lut_count
        + included_accounts  # one index byte per looked up key
        + length_to_compact16_size(static_count)
        + static_count * PUBKEY_LENGTH
    )


def get_transaction_size(
    instructions: Sequence[InstructionWithSigners],
    funder: Pubkey,
    lookup_tables: LookupTableSet = (),
) -> TransactionSize:
    """Computes the exact serialized size of the v0 transaction these
    instructions compile to, without building it.

    When the plain transaction is too large, lookup tables from
    `lookup_tables` are picked greedily to shrink it. Program ids and signers
    are never looked up.
    """
    unique_signers: set[Pubkey] = {funder}
    program_ids: set[Pubkey] = set()
    lut_eligible_keys: set[Pubkey] = set()

    ix_sizes = 0
    for entry in instructions:
        ix = entry.instruction
        accounts = ix.accounts
        data_len = len(ix.data)
        program_ids.add(ix.program_id)
        for meta in accounts:
            if meta.is_signer:
                unique_signers.add(meta.pubkey)
            lut_eligible_keys.add(meta.pubkey)
        ix_sizes += (
            1  # program id index
            + length_to_compact16_size(len(accounts))
            + len(accounts)
            + length_to_compact16_size(data_len)
            + data_len
        )

    ineligible_keys = unique_signers | program_ids
    lut_eligible_keys -= ineligible_keys

    static_size = (
        length_to_compact16_size(len(unique_signers))
        + len(unique_signers) * SIGNATURE_LENGTH
        + MESSAGE_HEADER_LENGTH
        + BLOCKHASH_LENGTH
        + VERSION_PREFIX_LENGTH
        + length_to_compact16_size(len(instructions))
        + ix_sizes
        + 1  # lookup table count
    )

    static_account_size = StaticAccountSize(static_size, len(ineligible_keys))
    best_size = total_size(static_account_size, 0, 0, len(lut_eligible_keys))
    unique_key_count = len(ineligible_keys) + len(lut_eligible_keys)

    if best_size <= MAX_TRANSACTION_SIZE or len(lookup_tables) == 0:
        return TransactionSize(best_size, [], unique_key_count)
    if unique_key_count > MAX_UNIQUE_KEYS_COUNT:
        return TransactionSize(best_size, [], unique_key_count)

    return find_best_lookup_tables(
        static_account_size, best_size, lut_eligible_keys, lookup_tables
    )


def find_best_lookup_tables(
    static_account_size: StaticAccountSize,
    size: int,
    remaining_accounts: set[Pubkey],
    lookup_tables: LookupTableSet,
) -> TransactionSize:
    """Greedy table search.

    Each round takes the first table that brings the transaction within
    budget, or else commits the table that shrinks it the most and goes
    again with the keys that are left. Stops once no table helps. The result
    may still be over budget; callers decide what that means.
    """
    remaining_luts = list(lookup_tables)
    used_luts: list[AddressLookupTableAccount] = []
    included_accounts = 0

    while remaining_luts:
        best_size = size
        best_remaining = remaining_accounts
        best_included = included_accounts
        best_lut_index = None

        for lut_index, (addresses, lut) in enumerate(remaining_luts):
            count, remaining_unique = contained_in_lut_count(
                remaining_accounts, addresses
            )
            new_included = included_accounts + count
            txn_size = total_size(
                static_account_size,
                len(used_luts) + 1,
                new_included,
                len(remaining_unique),
            )
            if txn_size <= MAX_TRANSACTION_SIZE:
                used_luts.append(lut)
                logger.debug(
                    f"Lookup table {lut.key} brings transaction to {txn_size} bytes"
                )
                return TransactionSize(
                    txn_size,
                    used_luts,
                    static_account_size.static_accounts
                    + new_included
                    + len(remaining_unique),
                )
            if txn_size < best_size:
                best_size = txn_size
                best_remaining = remaining_unique
                best_included = new_included
                best_lut_index = lut_index

        if best_lut_index is None:
            break

        _, best_lut = remaining_luts.pop(best_lut_index)
        used_luts.append(best_lut)
        logger.debug(
            f"Lookup table {best_lut.key} shrinks transaction to {best_size} bytes"
        )
        size = best_size
        remaining_accounts = best_remaining
        included_accounts = best_included

    return TransactionSize(
        size,
        used_luts,
        static_account_size.static_accounts
        + included_accounts
        + len(remaining_accounts),
    )


def _fits(transaction_size: TransactionSize) -> bool:
    return (
        transaction_size.size <= MAX_TRANSACTION_SIZE
        and transaction_size.unique_key_count <= MAX_UNIQUE_KEYS_COUNT
    )


def _copy_instruction(entry: InstructionWithSigners) -> InstructionWithSigners:
    ix = entry.instruction
    return InstructionWithSigners(
        Instruction(
            ix.program_id,
            bytes(ix.data),
            [
                AccountMeta(meta.pubkey, meta.is_signer, meta.is_writable)
                for meta in ix.accounts
            ],
        ),
        list(entry.signers),
    )


class _WorkingBatch:
    """A batch being filled: fixed before/after blocks with the body between.

    New instructions are appended to the body, which is the same as inserting
    them right before the after block.
    """

    def __init__(
        self,
        before: list[InstructionWithSigners],
        after: list[InstructionWithSigners],
    ):
        self.before = before
        self.after = after
        self.body: list[InstructionWithSigners] = []
        self.lookup_tables: list[AddressLookupTableAccount] = []

    def instructions(self) -> list[InstructionWithSigners]:
        return [*self.before, *self.body, *self.after]

    def with_instruction(
        self, ix: InstructionWithSigners
    ) -> list[InstructionWithSigners]:
        return [*self.before, *self.body, ix, *self.after]

    def to_batch(self) -> InstructionBatch:
        return InstructionBatch(
            [_copy_instruction(entry) for entry in self.instructions()],
            list(self.lookup_tables),
        )


def pack_instructions(
    instructions: Sequence[InstructionWithSigners],
    fee_payer: Pubkey,
    before_ixs: Sequence[InstructionWithSigners] = (),
    after_ixs: Sequence[InstructionWithSigners] = (),
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    max_instruction_count: int = DEFAULT_MAX_INSTRUCTION_COUNT,
) -> Result:
    """Splits `instructions` into as few transactions as possible.

    Every batch starts with `before_ixs` and ends with `after_ixs`, keeps the
    input order and fits the size, unique key and instruction count limits.

    Returns:
        Result: `Ok(list[InstructionBatch])` or `Err(PackingError)`
    """
    lookup_table_set = build_lookup_table_set(lookup_tables)
    current = _WorkingBatch(list(before_ixs), list(after_ixs))
    scaffolding_count = len(current.before) + len(current.after)

    scaffolding_size = get_transaction_size(
        current.instructions(), fee_payer, lookup_table_set
    )
    if scaffolding_size.unique_key_count > MAX_UNIQUE_KEYS_COUNT:
        return err(
            PackingError(
                PackingErrorKind.ScaffoldingTooManyKeys(),
                "Before and after instructions alone have too many unique keys to fit in transaction",
            )
        )
    if scaffolding_size.size > MAX_TRANSACTION_SIZE:
        return err(
            PackingError(
                PackingErrorKind.ScaffoldingTooLarge(),
                "Before and after instructions alone are too big to fit in transaction",
            )
        )
    if instructions and scaffolding_count + 1 > max_instruction_count:
        return err(
            PackingError(
                PackingErrorKind.ScaffoldingTooLarge(),
                f"Before and after instructions leave no room under the limit of {max_instruction_count} instructions",
            )
        )
    current.lookup_tables = scaffolding_size.lookup_tables

    output: list[InstructionBatch] = []
    for ix in instructions:
        next_ixs = current.with_instruction(ix)
        next_size = get_transaction_size(next_ixs, fee_payer, lookup_table_set)
        if _fits(next_size) and len(next_ixs) <= max_instruction_count:
            current.body.append(ix)
            current.lookup_tables = next_size.lookup_tables
            continue

        if current.body:
            output.append(current.to_batch())
            logger.debug(
                f"Closed transaction {len(output) - 1} with {len(current.body)} instructions"
            )

        current = _WorkingBatch(current.before, current.after)
        alone_size = get_transaction_size(
            current.with_instruction(ix), fee_payer, lookup_table_set
        )
        program_id = ix.instruction.program_id
        if alone_size.unique_key_count > MAX_UNIQUE_KEYS_COUNT:
            return err(
                PackingError(
                    PackingErrorKind.InstructionTooManyKeys(),
                    f"Instruction has too many unique accounts to fit in transaction: {program_id}",
                    program_id,
                )
            )
        if alone_size.size > MAX_TRANSACTION_SIZE:
            return err(
                PackingError(
                    PackingErrorKind.InstructionTooLarge(),
                    f"Instruction too large to fit in transaction: {program_id}",
                    program_id,
                )
            )
        current.body.append(ix)
        current.lookup_tables = alone_size.lookup_tables

    if current.body:
        output.append(current.to_batch())

    return ok(output)


async def build_dynamic_transactions_no_signing(
    instructions: Union[InstructionReturn, Sequence[InstructionReturn]],
    fee_payer: AsyncSigner,
    before_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    after_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    max_instruction_count: int = DEFAULT_MAX_INSTRUCTION_COUNT,
) -> Result:
    instructions_with_signers = await resolve_instruction_returns(
        instructions, fee_payer
    )
    before_ixs_with_signers = await resolve_instruction_returns(before_ixs, fee_payer)
    after_ixs_with_signers = await resolve_instruction_returns(after_ixs, fee_payer)

    return pack_instructions(
        instructions_with_signers,
        fee_payer.pubkey(),
        before_ixs_with_signers,
        after_ixs_with_signers,
        lookup_tables,
        max_instruction_count,
    )


async def build_dynamic_transactions(
    instructions: Union[InstructionReturn, Sequence[InstructionReturn]],
    fee_payer: AsyncSigner,
    connection_or_rbh: ConnectionOrRbh,
    before_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    after_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    max_instruction_count: int = DEFAULT_MAX_INSTRUCTION_COUNT,
) -> Result:
    """Packs instructions into as many transactions as needed and signs them.

    Args:
        instructions: the main instructions to spread over the transactions
        fee_payer: pays for and signs every transaction
        connection_or_rbh: where to get the recent blockhash, or the blockhash itself
        before_ixs: instructions placed at the start of every transaction
        after_ixs: instructions placed at the end of every transaction
        lookup_tables: lookup tables the transactions may use
        max_instruction_count: upper bound on instructions per transaction

    Returns:
        Result: `Ok(list[TransactionReturn])` or `Err(PackingError)`
    """
    output = await build_dynamic_transactions_no_signing(
        instructions,
        fee_payer,
        before_ixs,
        after_ixs,
        lookup_tables,
        max_instruction_count,
    )
    if is_err(output):
        return output

    transactions = [
        BuildTransactionsType(
            batch.instructions, connection_or_rbh, batch.lookup_tables
        )
        for batch in output.value
    ]
    signed: list[TransactionReturn] = (
        await build_and_sign_transactions_from_ix_with_signers(
            transactions, fee_payer
        )
    )
    return ok(signed)
