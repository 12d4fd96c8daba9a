import asyncio
import os
import sys

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from solpack.address_lookup_table import (
    ExtendTransactionOptions,
    create_and_extend_address_lookup_table,
    get_address_lookup_table,
)
from solpack.constants.config import load_config_from_env
from solpack.keypair import load_async_signer
from solpack.system_program import transfer
from solpack.tx.send import send_transaction
from solpack.tx.sizing import build_dynamic_transactions
from solpack.tx.transaction_handling import format_explorer_link
from solpack.tx.types import ConnectionAndCommitment
from solpack.types import is_err

LAMPORTS_PER_TRANSFER = 1_000


load_dotenv()


async def main(recipients: list[Pubkey]):
    config = load_config_from_env()
    connection = config.connection()
    fee_payer = load_async_signer(os.environ.get("PRIVATE_KEY"))
    print(f"Paying from {fee_payer.pubkey()} on {config.env}")

    table_result = await create_and_extend_address_lookup_table(
        connection,
        fee_payer,
        fee_payer,
        recipients,
        options=ExtendTransactionOptions(await_new_slot=True),
    )
    if is_err(table_result):
        print(table_result.error)
        return
    lookup_table = await get_address_lookup_table(connection, table_result.value)
    print(f"Lookup table {lookup_table.key} holds {len(lookup_table.addresses)} keys")

    txs = await build_dynamic_transactions(
        [transfer(None, recipient, LAMPORTS_PER_TRANSFER) for recipient in recipients],
        fee_payer,
        ConnectionAndCommitment(connection),
        lookup_tables=[lookup_table],
        max_instruction_count=config.tx.max_instruction_count,
    )
    if is_err(txs):
        print(f"Could not pack transfers: {txs.error}")
        return
    print(f"Packed {len(recipients)} transfers into {len(txs.value)} transactions")

    results = await asyncio.gather(
        *[
            send_transaction(
                tx,
                connection,
                config.tx.send_options(),
                config.tx.retry_interval,
                config.tx.max_retries,
            )
            for tx in txs.value
        ]
    )
    for result in results:
        if is_err(result.value):
            print(f"Failed at slot {result.slot}: {result.value.error}")
        else:
            print(format_explorer_link(result.value.value, config.rpc_url))


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 100
    asyncio.run(main([Pubkey.new_unique() for _ in range(count)]))
