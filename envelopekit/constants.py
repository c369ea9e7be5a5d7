"""EnvelopeKit constants and enums."""

# Default envelope program ID (declare_id of the token build).
DEFAULT_PROGRAM_ID = "5DXoYSQxaJzQ1W4LqSq2nWZ12PvFsb4FHo4xWgSrchVH"

MINT_DEVNET = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
MINT_MAINNET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

# PDA seed tags.
SEED_USER_STATE = b"user_state"
SEED_ENVELOPE = b"envelope"
SEED_ENVELOPE_VAULT = b"envelope_vault"
SEED_CLAIM = b"claim"

# Anchor discriminator prefixes.
INSTRUCTION_NAMESPACE = "global"
ACCOUNT_NAMESPACE = "account"
DISCRIMINATOR_SIZE = 8

OPERATIONS = ("init_user_state", "create", "claim", "refund", "cancel", "close")
ACCOUNT_TYPES = ("UserState", "EnvelopeAccount", "ClaimRecord")

VARIANT_DIRECT_FIXED = 0
VARIANT_GROUP_FIXED = 1
VARIANT_GROUP_RANDOM = 2
VARIANT_NAMES = {
    VARIANT_DIRECT_FIXED: "DirectFixed",
    VARIANT_GROUP_FIXED: "GroupFixed",
    VARIANT_GROUP_RANDOM: "GroupRandom",
}

EXPIRY_UNITS = {"seconds": 1, "hours": 3600}

# Account layout sizes.
PUBKEY_SIZE = 32
USER_STATE_SIZE = DISCRIMINATOR_SIZE + PUBKEY_SIZE + 8
CLAIM_RECORD_SIZE = DISCRIMINATOR_SIZE + PUBKEY_SIZE + 8 + 8 + 8
# Largest variant arm: tag byte + allowed-claimer pubkey.
VARIANT_MAX_ARM = 1 + PUBKEY_SIZE

# Variant slot width per account layout profile; None means compact.
ACCOUNT_LAYOUTS = {
    "compact": None,
    "padded": VARIANT_MAX_ARM,
    "aligned": 40,
}
DEFAULT_ACCOUNT_LAYOUT = "padded"

# Limits (token base units, 6 decimals).
MAX_CREATE_AMOUNT = 100_000_000
MIN_AMOUNT_PER_USER = 10_000

U64_MAX = 2**64 - 1

CLUSTER_URLS = {
    "localnet": "http://127.0.0.1:8899",
    "devnet": "https://api.devnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
}

EXPLORER_URLS = {
    "devnet": "https://explorer.solana.com/tx/{signature}?cluster=devnet",
    "mainnet": "https://explorer.solana.com/tx/{signature}",
    "localnet": "https://explorer.solana.com/tx/{signature}?cluster=custom",
}

DEFAULT_CONFIRM_ATTEMPTS = 15
DEFAULT_CONFIRM_INTERVAL = 2.0
DEFAULT_COMMITMENT = "confirmed"
# Seconds an unsubmitted flow is kept; its blockhash expires well before this.
DEFAULT_FLOW_TTL = 300.0
ALLOWED_COMMITMENTS = {"confirmed", "finalized"}

MAX_ERROR_TEXT = 300
