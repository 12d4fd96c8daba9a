from typing import Optional

from solders import system_program as sp
from solders.pubkey import Pubkey

from solpack.async_signer import AsyncSigner
from solpack.tx.types import InstructionReturn, InstructionWithSigners


def transfer(
    from_signer: Optional[AsyncSigner], to: Pubkey, lamports: int
) -> InstructionReturn:
    """Moves `lamports` to `to`. Without `from_signer` the funder pays."""

    async def ix_return(funder: AsyncSigner) -> InstructionWithSigners:
        signer = from_signer if from_signer is not None else funder
        ix = sp.transfer(
            sp.TransferParams(
                from_pubkey=signer.pubkey(), to_pubkey=to, lamports=lamports
            )
        )
        return InstructionWithSigners(ix, [signer])

    return ix_return
