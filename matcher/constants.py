"""
Wire constants for netcode connect tokens.

Defines token sizes, version tags and limits.
All multi-byte integers use little-endian byte order.
"""

# Version tags (13 bytes each, NUL terminated).
# The tag also names the nonce scheme so a reader can pick the header layout.
VERSION_INFO_RANDOM_NONCE = b'NETCODE 1.02\x00'    # 24-byte random nonce
VERSION_INFO_SEQUENCE_NONCE = b'NETCODE 1.01\x00'  # 8-byte sequence number
VERSION_INFO_SIZE = 13

# Address type tags
ADDRESS_IPV4 = 1
ADDRESS_IPV6 = 2

# Field sizes (in bytes)
KEY_SIZE = 32            # XChaCha20 / ChaCha20 key
AUTH_TAG_SIZE = 16       # Poly1305 auth tag
RANDOM_NONCE_SIZE = 24   # XChaCha20-Poly1305 nonce
SEQUENCE_SIZE = 8        # 64-bit sequence number carried on the wire
IETF_NONCE_SIZE = 12     # ChaCha20-Poly1305-IETF nonce
USER_DATA_SIZE = 256
IPV4_HOST_SIZE = 4
IPV6_HOST_SIZE = 16
ADDRESS_COUNT_SIZE = 4
IPV4_ENTRY_SIZE = 1 + IPV4_HOST_SIZE + 2  # 7 bytes
IPV6_ENTRY_SIZE = 1 + IPV6_HOST_SIZE + 2  # 19 bytes

# Token sizes
CONNECT_TOKEN_SIZE = 2048
CONNECT_TOKEN_PRIVATE_SIZE = 1024  # sealed, including the auth tag
PRIVATE_PLAINTEXT_SIZE = CONNECT_TOKEN_PRIVATE_SIZE - AUTH_TAG_SIZE  # 1008 bytes

# Associated data: version tag + protocol id + expire timestamp
ASSOCIATED_DATA_SIZE = VERSION_INFO_SIZE + 8 + 8  # 29 bytes

# Limits
MAX_SERVERS_PER_CONNECT = 8
MAX_UINT64 = 2**64 - 1
MIN_INT32 = -2**31
MAX_INT32 = 2**31 - 1

# Expire timestamp written for tokens that never expire
UNBOUNDED_EXPIRY = MAX_UINT64
