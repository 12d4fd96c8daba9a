import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Union

from solana.rpc.commitment import Confirmed
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from solpack.async_signer import AsyncSigner
from solpack.constants.numeric_constants import DEFAULT_MAX_INSTRUCTION_COUNT
from solpack.priority_fees.recent_priority_fee import GetPriorityFee
from solpack.tx.sizing import build_dynamic_transactions_no_signing
from solpack.tx.transaction_handling import (
    build_and_sign_transaction,
    build_and_sign_transactions_from_ix_with_signers,
    resolve_instruction_returns,
)
from solpack.tx.types import (
    BuildTransactionsType,
    InstructionReturn,
    InstructionWithSigners,
    RbhAndCommitment,
    TransactionReturn,
    TransactionSender,
    ix_to_ix_return,
)
from solpack.types import Result, is_err, ok
from solpack.utils import normalize_array

logger = logging.getLogger(__name__)

# placeholders as large as the real budget instructions, so sizing leaves room for them
COMPUTE_TEST_INSTRUCTIONS = [
    set_compute_unit_price(426),
    set_compute_unit_limit(1_400_000),
]

GetComputeLimit = Callable[
    [VersionedTransaction, TransactionSender], Awaitable[Optional[int]]
]


@dataclass
class PriorityConfig:
    get_limit: Optional[GetComputeLimit] = None
    get_fee: Optional[GetPriorityFee] = None


def get_writable_accounts(instructions: Sequence[Instruction]) -> list[Pubkey]:
    writable: list[Pubkey] = []
    seen: set[Pubkey] = set()
    for ix in instructions:
        for meta in ix.accounts:
            if meta.is_writable and meta.pubkey not in seen:
                seen.add(meta.pubkey)
                writable.append(meta.pubkey)
    return writable


def build_simulation_transaction(
    instructions: Sequence[Instruction],
    lookup_tables: Sequence[AddressLookupTableAccount],
    payer_key: Pubkey,
    recent_blockhash: Hash = Hash.default(),
) -> VersionedTransaction:
    """An unsigned transaction for simulation with signature verification
    off and the blockhash replaced by the node."""
    message = MessageV0.try_compile(
        payer_key, list(instructions), list(lookup_tables), recent_blockhash
    )
    return VersionedTransaction.populate(
        message, [Signature.default()] * message.header.num_required_signatures
    )


async def get_simulation_units(
    transaction: VersionedTransaction, connection: TransactionSender
) -> Optional[int]:
    simulation = await connection.simulate_transaction(transaction)
    if simulation.err is not None:
        logger.warning(f"Simulation failed, no compute limit set: {simulation.err}")
        return None
    return simulation.units_consumed


def _compute_budget_ixs(
    units: Optional[int], micro_lamports: Optional[int]
) -> list[InstructionWithSigners]:
    ixs = []
    if units:
        ixs.append(InstructionWithSigners(set_compute_unit_limit(units), []))
    if micro_lamports:
        ixs.append(InstructionWithSigners(set_compute_unit_price(micro_lamports), []))
    return ixs


async def _call_optional(fn, *args):
    if fn is None:
        return None
    return await fn(*args)


async def build_and_sign_optimal_transaction(
    connection: TransactionSender,
    instructions: Union[InstructionReturn, Sequence[InstructionReturn]],
    fee_payer: AsyncSigner,
    priority_config: PriorityConfig,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> TransactionReturn:
    """Builds and signs a single transaction with a compute unit limit from
    simulation and a price from recent fees, whichever `priority_config`
    asks for."""
    ixs = await resolve_instruction_returns(instructions, fee_payer)
    plain_ixs = [entry.instruction for entry in ixs]

    simulation_tx = None
    if priority_config.get_limit is not None:
        simulation_tx = build_simulation_transaction(
            [*COMPUTE_TEST_INSTRUCTIONS, *plain_ixs], lookup_tables, fee_payer.pubkey()
        )
    writable_accounts = get_writable_accounts(plain_ixs)

    units, micro_lamports, rbh = await asyncio.gather(
        _call_optional(priority_config.get_limit, simulation_tx, connection),
        _call_optional(priority_config.get_fee, writable_accounts, connection),
        connection.get_latest_blockhash(),
    )
    logger.debug(f"Compute budget: {units} units at {micro_lamports} micro-lamports")

    return await build_and_sign_transaction(
        [*_compute_budget_ixs(units, micro_lamports), *ixs],
        fee_payer,
        RbhAndCommitment(rbh, connection.commitment or Confirmed),
        lookup_tables,
    )


async def build_optimal_dynamic_transactions(
    connection: TransactionSender,
    instructions: Union[InstructionReturn, Sequence[InstructionReturn]],
    fee_payer: AsyncSigner,
    priority_config: PriorityConfig,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    before_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    after_ixs: Union[InstructionReturn, Sequence[InstructionReturn]] = (),
    max_instruction_count: int = DEFAULT_MAX_INSTRUCTION_COUNT,
) -> Result:
    """Packs like `build_dynamic_transactions`, with a compute budget per
    transaction.

    Batches are packed with placeholder budget instructions in front, then
    every batch is simulated and priced and the placeholders are swapped for
    the real instructions. All transactions share one blockhash.

    Returns:
        Result: `Ok(list[TransactionReturn])` or `Err(PackingError)`
    """
    test_before_ixs = [
        *[ix_to_ix_return(ix) for ix in COMPUTE_TEST_INSTRUCTIONS],
        *normalize_array(before_ixs),
    ]
    packed = await build_dynamic_transactions_no_signing(
        instructions,
        fee_payer,
        test_before_ixs,
        after_ixs,
        lookup_tables,
        max_instruction_count,
    )
    if is_err(packed):
        return packed

    async def with_compute_budget(batch) -> list[InstructionWithSigners]:
        test_instructions = [entry.instruction for entry in batch.instructions]
        simulation_tx = None
        if priority_config.get_limit is not None:
            simulation_tx = build_simulation_transaction(
                test_instructions, batch.lookup_tables, fee_payer.pubkey()
            )
        units, micro_lamports = await asyncio.gather(
            _call_optional(priority_config.get_limit, simulation_tx, connection),
            _call_optional(
                priority_config.get_fee,
                get_writable_accounts(test_instructions),
                connection,
            ),
        )
        return [
            *_compute_budget_ixs(units, micro_lamports),
            *batch.instructions[len(COMPUTE_TEST_INSTRUCTIONS) :],
        ]

    budgeted, rbh = await asyncio.gather(
        asyncio.gather(*[with_compute_budget(batch) for batch in packed.value]),
        connection.get_latest_blockhash(),
    )

    connection_or_rbh = RbhAndCommitment(rbh, connection.commitment or Confirmed)
    transactions = [
        BuildTransactionsType(ixs, connection_or_rbh, batch.lookup_tables)
        for ixs, batch in zip(budgeted, packed.value)
    ]
    return ok(
        await build_and_sign_transactions_from_ix_with_signers(transactions, fee_payer)
    )
