import logging
from typing import Awaitable, Callable, Literal, Optional, Sequence

from solders.pubkey import Pubkey

from solpack.tx.types import TransactionSender

logger = logging.getLogger(__name__)

PriorityFeeStrategy = Literal["latest", "avg", "max"]

GetPriorityFee = Callable[[list[Pubkey], TransactionSender], Awaitable[Optional[int]]]

DEFAULT_SLOTS_TO_CHECK = 10


async def get_recent_priority_fee(
    writable_accounts: Sequence[Pubkey],
    connection: TransactionSender,
    strategy: PriorityFeeStrategy = "avg",
    slots_to_check: int = DEFAULT_SLOTS_TO_CHECK,
) -> Optional[int]:
    """Priority fee in micro-lamports per compute unit paid recently for
    transactions locking `writable_accounts`, or None when the node has no
    samples."""
    result = await connection.get_recent_prioritization_fees(writable_accounts)

    desc_results = sorted(result, key=lambda x: x["slot"], reverse=True)[
        :slots_to_check
    ]

    if not desc_results:
        return None

    fees = [item["prioritizationFee"] for item in desc_results]
    if strategy == "latest":
        fee = fees[0]
    elif strategy == "max":
        fee = max(fees)
    else:
        fee = sum(fees) // len(fees)

    logger.debug(
        f"Priority fee ({strategy}) over {len(fees)} slots up to {desc_results[0]['slot']}: {fee}"
    )
    return fee


def make_priority_fee_getter(
    strategy: PriorityFeeStrategy = "avg",
    slots_to_check: int = DEFAULT_SLOTS_TO_CHECK,
) -> GetPriorityFee:
    async def get_fee(
        writable_accounts: list[Pubkey], connection: TransactionSender
    ) -> Optional[int]:
        return await get_recent_priority_fee(
            writable_accounts, connection, strategy, slots_to_check
        )

    return get_fee
