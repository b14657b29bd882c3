"""
Sharding
Split a secret into N contiguous pieces. All N are needed to rebuild it.

This is plain partitioning (N-of-N), not threshold secret sharing. Each
piece is a readable slice of the secret until the cipher layer encrypts it.
Sharding adds no security of its own beyond making an attacker collect N
encrypted files instead of one; it gives no redundancy either. Lose one
shard and the secret is gone.
"""


def split(secret: bytes, n: int) -> list[bytes]:
    """
    Split a secret into n contiguous, non-overlapping pieces.

    The first len(secret) % n pieces are one byte longer than the rest.
    When the secret is shorter than n, trailing pieces are empty.

    Args:
        secret: The bytes to split.
        n: Number of pieces (at least 1).

    Returns:
        List of n byte strings whose concatenation is the secret.

    Raises:
        ValueError: If n is less than 1.
    """
    if n < 1:
        raise ValueError("Shard count must be at least 1")

    base, extra = divmod(len(secret), n)
    pieces = []
    start = 0
    for i in range(n):
        size = base + (1 if i < extra else 0)
        pieces.append(bytes(secret[start:start + size]))
        start += size
    return pieces


def join(pieces: list[bytes]) -> bytes:
    """Concatenate pieces in index order. No validation, integrity is the cipher's job."""
    return b"".join(pieces)
