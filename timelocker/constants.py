# Container magic and version
CONTAINER_MAGIC = b"TLOCK01"        # 7 bytes, no terminator
CONTAINER_VERSION = 1
HEADER_SIZE = 24                    # magic[7] version u8 meta_len u32 reserved[12]
MAX_METADATA_SIZE = 1024 * 1024     # 1 MiB
CONTAINER_SUFFIX = ".tlock"

# Sealed payload (archiver) magic and version
SEAL_MAGIC = b"TLKSEAL\x00"        # 8 bytes: "TLKSEAL\0"
SEAL_VERSION = 1

KDF_NONE = 0
KDF_ARGON2ID = 1

# Codec IDs (0=none, 1=deflate/zlib)
CODEC_NONE = 0
CODEC_DEFLATE = 1

DEFAULT_CODEC_ID = CODEC_DEFLATE
DEFAULT_FRAME_SIZE = 1_048_576  # 1 MiB

# Frame flags
FRAME_FINAL = 1 << 0


# drand quicknet (unchained, G1 signatures, G2 public key)
QUICKNET_CHAIN_HASH = "52db9ba70e0cc0f6eaf7803dd07447a1f5477735fd3f661792ba94600c84e971"
QUICKNET_PUBLIC_KEY = (
    "83cf0f2896adee7eb8b5f01fcad3912212c437e0073e911fb90022d3e760183c"
    "8c4b450b6a0a6c3ac6a5776a2d1064510d1fec758c921cc22b0e17e63aaf4bcb"
    "5ed66304de9cf809bd274ca73bab4af5a6e9c76a4bc09e76eae8991ef5ece45a"
)
QUICKNET_GENESIS_TIME = 1692803367
QUICKNET_PERIOD = 3

DRAND_ENDPOINTS = (
    "https://api.drand.sh",
    "https://drand.cloudflare.com",
)

ROUND_PREFIX_SIZE = 8  # big-endian u64 in front of every locked secret

DEFAULT_PASSWORD_LENGTH = 32
DEFAULT_EMIT_INTERVAL_MS = 100
