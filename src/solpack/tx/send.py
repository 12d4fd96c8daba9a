import asyncio
import logging
from typing import Optional

from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts

from solpack.constants.numeric_constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_INTERVAL_SECS,
)
from solpack.tx.transaction_handling import (
    is_versioned_transaction,
    verify_signatures,
)
from solpack.tx.types import (
    SendTransactionOptions,
    SendTransactionResult,
    TransactionReturn,
    TransactionSender,
)
from solpack.types import err, ok

logger = logging.getLogger(__name__)


async def send_transaction(
    transaction: TransactionReturn,
    connection: TransactionSender,
    options: Optional[SendTransactionOptions] = None,
    retry_interval: float = DEFAULT_RETRY_INTERVAL_SECS,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> SendTransactionResult:
    """Sends a signed transaction and waits for it to confirm.

    The same bytes are re-sent in the background every `retry_interval`
    seconds, at most `max_retries` times, until confirmation finishes one way
    or the other. Network errors from `connection` propagate; a transaction
    that lands but fails comes back as `Result.Err`.
    """
    tx = transaction.transaction
    if is_versioned_transaction(tx):
        verify_signatures(tx)

    options = options or SendTransactionOptions()
    commitment = options.commitment or Confirmed
    send_options = options.send_options or connection.opts or TxOpts()
    resend_options = send_options._replace(
        skip_preflight=True, skip_confirmation=True
    )
    raw = bytes(tx)

    signature = await connection.send_raw_transaction(raw, send_options)
    logger.debug(f"Sent transaction {signature}")

    async def resend():
        for attempt in range(max_retries):
            await asyncio.sleep(retry_interval)
            try:
                await connection.send_raw_transaction(raw, resend_options)
            except Exception as e:
                logger.warning(
                    f"Resend {attempt + 1} of transaction {signature} failed: {e}"
                )

    resend_task = asyncio.create_task(resend())
    try:
        result = await connection.confirm_transaction(
            signature, transaction.rbh, commitment
        )
    finally:
        resend_task.cancel()

    if result.err is not None:
        logger.warning(
            f"Transaction {signature} failed at slot {result.slot}: {result.err}"
        )
        return SendTransactionResult(result.slot, err(result.err))

    logger.info(f"Transaction {signature} confirmed at slot {result.slot}")
    return SendTransactionResult(result.slot, ok(signature))
