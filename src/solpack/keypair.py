import json
import os

import base58
from solders.keypair import Keypair

from solpack.async_signer import AsyncSigner, keypair_to_async_signer


def load_keypair(private_key: str) -> Keypair:
    """Reads a keypair from a file path, a JSON byte array, a comma separated
    byte list or a base58 string."""
    if os.path.exists(private_key):
        with open(private_key, "r") as file:
            private_key = file.read().strip()

    if private_key.startswith("[") and private_key.endswith("]"):
        key_bytes = bytes(json.loads(private_key))
    elif "," in private_key:
        key_bytes = bytes(int(part) for part in private_key.split(","))
    else:
        key_bytes = base58.b58decode(private_key.replace(" ", ""))

    return Keypair.from_bytes(key_bytes)


def load_async_signer(private_key: str) -> AsyncSigner:
    return keypair_to_async_signer(load_keypair(private_key))
