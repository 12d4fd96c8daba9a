class SigningIncompleteError(ValueError):
    """A required signature is still missing after every signer ran."""


class MessageSigningUnsupportedError(ValueError):
    """The signer was built without a way to sign arbitrary messages."""


class MissingSignatureError(ValueError):
    pass


class InvalidSignatureError(ValueError):
    pass


class SendTransactionError(Exception):
    """The RPC node answered a raw send with something other than a signature."""
