from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from anchorpy import Wallet
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from solpack.errors import MessageSigningUnsupportedError

AnyTransaction = Union[VersionedTransaction, Transaction]

SignAll = Callable[[list[AnyTransaction]], Awaitable[list[AnyTransaction]]]
SignMessage = Callable[[bytes], Awaitable[Signature]]


@dataclass(eq=False)
class AsyncSigner:
    """A signing identity.

    `requires_async` marks signers that need a round trip to something outside
    this process (a remote wallet, a signing service, a human confirming a
    prompt). Those are always run before local signers.
    """

    public_key: Pubkey
    requires_async: bool
    sign_all_fn: SignAll
    sign_message_fn: Optional[SignMessage] = None
    inner: Any = None

    def pubkey(self) -> Pubkey:
        return self.public_key

    async def sign(self, tx: AnyTransaction) -> AnyTransaction:
        return (await self.sign_all_fn([tx]))[0]

    async def sign_all(self, txs: Sequence[AnyTransaction]) -> list[AnyTransaction]:
        return await self.sign_all_fn(list(txs))

    async def sign_message(self, message: bytes) -> Signature:
        if self.sign_message_fn is None:
            raise MessageSigningUnsupportedError(
                f"Signer {self.public_key} cannot sign messages"
            )
        return await self.sign_message_fn(message)


def partial_sign(tx: AnyTransaction, keypair: Keypair) -> AnyTransaction:
    if isinstance(tx, Transaction):
        tx.partial_sign([keypair], tx.message.recent_blockhash)
        return tx

    message = tx.message
    num_signers = message.header.num_required_signatures
    signer_keys = list(message.account_keys[:num_signers])
    try:
        index = signer_keys.index(keypair.pubkey())
    except ValueError:
        raise ValueError(
            f"Cannot sign with non signer key {keypair.pubkey()}"
        ) from None

    signatures = list(tx.signatures)
    signatures[index] = keypair.sign_message(to_bytes_versioned(message))
    return VersionedTransaction.populate(message, signatures)


def keypair_to_async_signer(keypair: Keypair) -> AsyncSigner:
    async def sign_all(txs: list[AnyTransaction]) -> list[AnyTransaction]:
        return [partial_sign(tx, keypair) for tx in txs]

    async def sign_message(message: bytes) -> Signature:
        return keypair.sign_message(message)

    return AsyncSigner(
        public_key=keypair.pubkey(),
        requires_async=False,
        sign_all_fn=sign_all,
        sign_message_fn=sign_message,
        inner=keypair,
    )


def wallet_to_async_signer(wallet: Wallet) -> AsyncSigner:
    signer = keypair_to_async_signer(wallet.payer)
    signer.inner = wallet
    return signer


def callback_to_async_signer(
    public_key: Pubkey,
    sign_all: SignAll,
    sign_message: Optional[SignMessage] = None,
    inner: Any = None,
) -> AsyncSigner:
    """Wraps an externally driven signer, e.g. a remote wallet or signing service."""
    return AsyncSigner(
        public_key=public_key,
        requires_async=True,
        sign_all_fn=sign_all,
        sign_message_fn=sign_message,
        inner=inner,
    )
