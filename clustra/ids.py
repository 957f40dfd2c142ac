"""
Identifier helpers.

Workflow ids and correlation ids are ULIDs so they sort by creation time
in the ledger directory and in log files.
"""

import random
import time

# Crockford's Base32 alphabet (excludes I, L, O, U)
ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    rng = random.SystemRandom()
    random_part = "".join(rng.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def new_correlation_id() -> str:
    """Correlation id threaded through retry, timeout, ledger and logs."""
    return f"corr-{generate_ulid()}"
