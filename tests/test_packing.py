from pytest import mark
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit
from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from solpack.constants.numeric_constants import (
    MAX_TRANSACTION_SIZE,
    MAX_UNIQUE_KEYS_COUNT,
)
from solpack.system_program import transfer
from solpack.tx.sizing import (
    build_dynamic_transactions,
    build_dynamic_transactions_no_signing,
    build_lookup_table_set,
    get_transaction_size,
    pack_instructions,
)
from solpack.tx.types import InstructionWithSigners, ix_to_ix_return
from solpack.types import is_err, is_ok, is_variant
from tests.helpers import (
    RecordingSigner,
    fixed_rbh,
    instruction,
    readonly_accounts,
    readonly_instruction,
)


def tiny_instructions(fee_payer, count: int) -> list[InstructionWithSigners]:
    program_id = Pubkey.new_unique()
    meta = AccountMeta(fee_payer.pubkey(), is_signer=True, is_writable=True)
    return [instruction(program_id, [meta], bytes([i % 256])) for i in range(count)]


def data_of(batch) -> list[bytes]:
    return [bytes(entry.instruction.data) for entry in batch.instructions]


def test_empty_input_packs_to_nothing(fee_payer):
    result = pack_instructions([], fee_payer.pubkey())

    assert is_ok(result)
    assert result.value == []


def test_instruction_cap_splits_batches(fee_payer):
    ixs = tiny_instructions(fee_payer, 100)

    result = pack_instructions(ixs, fee_payer.pubkey())

    assert is_ok(result)
    assert [len(batch.instructions) for batch in result.value] == [64, 36]
    assert data_of(result.value[0]) == [bytes([i]) for i in range(64)]
    assert data_of(result.value[1]) == [bytes([i]) for i in range(64, 100)]


def test_order_preserved_and_every_batch_fits(fee_payer):
    ixs = [
        readonly_instruction(Pubkey.new_unique(), readonly_accounts(i % 7), bytes([i]) * (i * 3 % 200))
        for i in range(60)
    ]

    result = pack_instructions(ixs, fee_payer.pubkey())

    assert is_ok(result)
    batches = result.value
    assert len(batches) > 1
    flattened = [data for batch in batches for data in data_of(batch)]
    assert flattened == [bytes(ix.instruction.data) for ix in ixs]
    for batch in batches:
        size = get_transaction_size(batch.instructions, fee_payer.pubkey())
        assert size.size <= MAX_TRANSACTION_SIZE
        assert size.unique_key_count <= MAX_UNIQUE_KEYS_COUNT


def test_scaffolding_wraps_every_batch(fee_payer):
    before = [InstructionWithSigners(set_compute_unit_limit(200_000), [])]
    after = tiny_instructions(fee_payer, 1)
    ixs = tiny_instructions(fee_payer, 30)

    result = pack_instructions(
        ixs, fee_payer.pubkey(), before, after, max_instruction_count=12
    )

    assert is_ok(result)
    batches = result.value
    assert [len(batch.instructions) for batch in batches] == [12, 12, 12]
    for batch in batches:
        assert batch.instructions[0].instruction == before[0].instruction
        assert batch.instructions[-1].instruction == after[0].instruction
    body = [data for batch in batches for data in data_of(batch)[1:-1]]
    assert body == [bytes([i]) for i in range(30)]


def test_batches_are_copies(fee_payer):
    ixs = tiny_instructions(fee_payer, 3)

    result = pack_instructions(ixs, fee_payer.pubkey())

    packed = result.value[0].instructions
    assert packed[0] is not ixs[0]
    assert packed[0].instruction == ixs[0].instruction
    packed[0].signers.append(fee_payer)
    assert ixs[0].signers == []


def test_scaffolding_too_large(fee_payer):
    before = [readonly_instruction(Pubkey.new_unique(), [], bytes(1200))]

    result = pack_instructions(tiny_instructions(fee_payer, 1), fee_payer.pubkey(), before)

    assert is_err(result)
    assert is_variant(result.error.kind, "ScaffoldingTooLarge")
    assert str(result.error) == result.error.message


def test_scaffolding_too_many_keys(fee_payer):
    keys = readonly_accounts(127)
    table = AddressLookupTableAccount(Pubkey.new_unique(), keys)
    after = [readonly_instruction(Pubkey.new_unique(), keys)]

    result = pack_instructions(
        tiny_instructions(fee_payer, 1), fee_payer.pubkey(), after_ixs=after, lookup_tables=[table]
    )

    assert is_err(result)
    assert is_variant(result.error.kind, "ScaffoldingTooManyKeys")


def test_instruction_too_large(fee_payer):
    program_id = Pubkey.new_unique()
    ixs = [
        *tiny_instructions(fee_payer, 2),
        readonly_instruction(program_id, [], bytes(1300)),
    ]

    result = pack_instructions(ixs, fee_payer.pubkey())

    assert is_err(result)
    assert is_variant(result.error.kind, "InstructionTooLarge")
    assert result.error.program_id == program_id


def test_129_keys_is_a_key_overflow_without_tables(fee_payer):
    ixs = [readonly_instruction(Pubkey.new_unique(), readonly_accounts(127))]

    result = pack_instructions(ixs, fee_payer.pubkey())

    assert is_err(result)
    assert is_variant(result.error.kind, "InstructionTooManyKeys")


def test_129_keys_is_a_key_overflow_with_tables(fee_payer):
    keys = readonly_accounts(127)
    ixs = [readonly_instruction(Pubkey.new_unique(), keys)]
    table = AddressLookupTableAccount(Pubkey.new_unique(), keys)

    result = pack_instructions(ixs, fee_payer.pubkey(), lookup_tables=[table])

    assert is_err(result)
    assert is_variant(result.error.kind, "InstructionTooManyKeys")


def test_128_keys_pack_into_one_batch(fee_payer):
    keys = readonly_accounts(126)
    ixs = [readonly_instruction(Pubkey.new_unique(), keys)]
    table = AddressLookupTableAccount(Pubkey.new_unique(), keys)

    result = pack_instructions(ixs, fee_payer.pubkey(), lookup_tables=[table])

    assert is_ok(result)
    assert len(result.value) == 1
    assert result.value[0].lookup_tables == [table]


@mark.asyncio
async def test_transfers_through_one_table(fee_payer):
    destinations = readonly_accounts(250)
    table = AddressLookupTableAccount(Pubkey.new_unique(), destinations)

    result = await build_dynamic_transactions_no_signing(
        [transfer(None, destination, 1) for destination in destinations],
        fee_payer,
        lookup_tables=[table],
    )

    assert is_ok(result)
    batches = result.value
    assert [len(batch.instructions) for batch in batches] == [57, 57, 57, 57, 22]
    assert all(batch.lookup_tables == [table] for batch in batches)
    for batch in batches:
        size = get_transaction_size(
            batch.instructions, fee_payer.pubkey(), build_lookup_table_set([table])
        )
        assert size.size <= MAX_TRANSACTION_SIZE


@mark.asyncio
async def test_transfer_batches_sign_to_estimated_size(fee_payer):
    destinations = readonly_accounts(250)
    table = AddressLookupTableAccount(Pubkey.new_unique(), destinations)

    result = await build_dynamic_transactions(
        [transfer(None, destination, 1) for destination in destinations],
        fee_payer,
        fixed_rbh(),
        lookup_tables=[table],
    )

    assert is_ok(result)
    assert len(bytes(result.value[0].transaction)) == 1228


@mark.asyncio
async def test_each_signer_called_once_across_batches(fee_payer):
    remote = RecordingSigner()
    program_id = Pubkey.new_unique()
    meta = AccountMeta(remote.keypair.pubkey(), is_signer=True, is_writable=False)
    ixs = [
        ix_to_ix_return(ix.instruction) for ix in tiny_instructions(fee_payer, 98)
    ]

    async def remote_ix(_funder):
        return instruction(program_id, [meta], b"r", [remote.signer])

    calls = []
    sign_all_fn = fee_payer.sign_all_fn

    async def counting_sign_all(txs):
        calls.append(len(txs))
        return await sign_all_fn(txs)

    fee_payer.sign_all_fn = counting_sign_all

    result = await build_dynamic_transactions(
        [remote_ix, *ixs, remote_ix], fee_payer, fixed_rbh()
    )

    assert is_ok(result)
    assert len(result.value) == 2
    assert calls == [2]
    assert remote.calls == [2]


@mark.asyncio
async def test_dynamic_build_reports_packing_errors(fee_payer):
    huge = readonly_instruction(Pubkey.new_unique(), [], bytes(1300))

    result = await build_dynamic_transactions(
        ix_to_ix_return(huge.instruction), fee_payer, fixed_rbh()
    )

    assert is_err(result)
    assert is_variant(result.error.kind, "InstructionTooLarge")
