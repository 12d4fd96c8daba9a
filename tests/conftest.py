from pytest import fixture

from solpack.async_signer import AsyncSigner
from tests.helpers import FakeTransactionSender, local_signer


@fixture
def fee_payer() -> AsyncSigner:
    return local_signer()


@fixture
def connection() -> FakeTransactionSender:
    return FakeTransactionSender()
