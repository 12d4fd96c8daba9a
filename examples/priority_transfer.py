import asyncio
import logging
import os

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from solpack.constants.config import load_config_from_env
from solpack.keypair import load_async_signer
from solpack.priority_fees.recent_priority_fee import make_priority_fee_getter
from solpack.system_program import transfer
from solpack.tx.compute import (
    PriorityConfig,
    build_and_sign_optimal_transaction,
    get_simulation_units,
)
from solpack.tx.send import send_transaction
from solpack.tx.transaction_handling import pretty_transaction
from solpack.types import is_ok

load_dotenv()
logging.basicConfig(level=logging.INFO)


async def main():
    config = load_config_from_env()
    connection = config.connection()
    fee_payer = load_async_signer(os.environ.get("PRIVATE_KEY"))
    recipient = Pubkey.from_string(os.environ.get("RECIPIENT"))

    tx = await build_and_sign_optimal_transaction(
        connection,
        transfer(None, recipient, 5_000),
        fee_payer,
        PriorityConfig(get_simulation_units, make_priority_fee_getter("avg")),
    )
    print(pretty_transaction(tx.transaction))

    result = await send_transaction(tx, connection, config.tx.send_options())
    if is_ok(result.value):
        print(f"Landed {result.value.value} at slot {result.slot}")
    else:
        print(f"Failed: {result.value.error}")


if __name__ == "__main__":
    asyncio.run(main())
