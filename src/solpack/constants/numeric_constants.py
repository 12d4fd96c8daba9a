MAX_TRANSACTION_SIZE = 1232
MAX_UNIQUE_KEYS_COUNT = 128

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32
BLOCKHASH_LENGTH = 32
MESSAGE_HEADER_LENGTH = 3
VERSION_PREFIX_LENGTH = 1

# lookup table key + writable and readonly index lengths
LOOKUP_TABLE_OVERHEAD = 34

# compact-u16 lengths above this take a second byte
COMPACT_U16_ONE_BYTE_MAX = 0x7F

DEFAULT_MAX_INSTRUCTION_COUNT = 64
DEFAULT_RETRY_INTERVAL_SECS = 3.0
DEFAULT_MAX_RETRIES = 10

LOOKUP_TABLE_MAX_ADDRESSES = 256
LOOKUP_TABLE_EXTEND_CHUNK_SIZE = 20

MS_PER_SLOT = 400
