import asyncio
from typing import Optional, Sequence

import jsonrpcclient
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.rpc.config import RpcSimulateTransactionConfig
from solders.rpc.requests import SimulateVersionedTransaction
from solders.rpc.responses import (
    RpcBlockhash,
    SendTransactionResp,
    SimulateTransactionResp,
)
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionStatus

from solpack.errors import SendTransactionError
from solpack.tx.types import SignatureResult, SimulationResult, TransactionSender

PRIORITY_FEE_TIMEOUT_SECS = 20


class RpcTransactionSender(TransactionSender):
    def __init__(
        self,
        connection: AsyncClient,
        commitment: Commitment = Confirmed,
        opts: Optional[TxOpts] = None,
    ):
        self.connection = connection
        self.commitment = commitment
        self.opts = opts or TxOpts(
            skip_confirmation=True, preflight_commitment=commitment
        )

    async def get_latest_blockhash(
        self, commitment: Optional[Commitment] = None
    ) -> RpcBlockhash:
        return (
            await self.connection.get_latest_blockhash(commitment or self.commitment)
        ).value

    async def get_block_height(self, commitment: Optional[Commitment] = None) -> int:
        return (
            await self.connection.get_block_height(commitment or self.commitment)
        ).value

    async def get_slot(self, commitment: Optional[Commitment] = None) -> int:
        return (await self.connection.get_slot(commitment or self.commitment)).value

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        account_info = (await self.connection.get_account_info(pubkey)).value
        if account_info is None:
            return None
        return account_info.data

    async def send_raw_transaction(
        self, raw: bytes, opts: Optional[TxOpts] = None
    ) -> Signature:
        body = self.connection._send_raw_transaction_body(raw, opts or self.opts)
        resp = await self.connection._provider.make_request(body, SendTransactionResp)

        if not isinstance(resp, SendTransactionResp):
            raise SendTransactionError(
                f"Unexpected response from send transaction: {resp}"
            )

        return resp.value

    async def get_signature_statuses(
        self, signatures: Sequence[Signature]
    ) -> list[Optional[TransactionStatus]]:
        return (await self.connection.get_signature_statuses(list(signatures))).value

    async def confirm_transaction(
        self,
        signature: Signature,
        rbh: RpcBlockhash,
        commitment: Optional[Commitment] = None,
    ) -> SignatureResult:
        resp = await self.connection.confirm_transaction(
            signature,
            commitment or self.commitment,
            last_valid_block_height=rbh.last_valid_block_height,
        )
        status = resp.value[0]
        return SignatureResult(
            resp.context.slot, status.err if status is not None else None
        )

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        config = RpcSimulateTransactionConfig(
            sig_verify=False, replace_recent_blockhash=True
        )
        body = SimulateVersionedTransaction(tx, config)
        resp = await self.connection._provider.make_request(
            body, SimulateTransactionResp
        )

        if not isinstance(resp, SimulateTransactionResp):
            raise SendTransactionError(
                f"Unexpected response from simulate transaction: {resp}"
            )

        return SimulationResult(resp.value.err, resp.value.units_consumed)

    async def get_recent_prioritization_fees(
        self, addresses: Sequence[Pubkey]
    ) -> list[dict]:
        rpc_request = jsonrpcclient.request(
            "getRecentPrioritizationFees", [[str(address) for address in addresses]]
        )

        post = self.connection._provider.session.post(
            self.connection._provider.endpoint_uri,
            json=rpc_request,
        )

        resp = await asyncio.wait_for(post, timeout=PRIORITY_FEE_TIMEOUT_SECS)

        parsed_resp = jsonrpcclient.parse(resp.json())

        if isinstance(parsed_resp, jsonrpcclient.Error):
            raise SendTransactionError(
                f"Error fetching priority fees: {parsed_resp.message}"
            )

        if not isinstance(parsed_resp, jsonrpcclient.Ok):
            raise SendTransactionError(
                f"Error fetching priority fees - not ok: {parsed_resp}"
            )

        return parsed_resp.result
