"""
Human-typeable random access codes.

Codes are upper-case and draw from a 32-symbol alphabet without the easily
confused characters 0/O and 1/I (lower-case l never appears). Eight symbols
give 32**8 = 2**40 possible codes, so two generated codes can collide but
rarely do; callers that need uniqueness must check for it (see CodeRegistry).
"""
import os
import random
import secrets
import logging

from config import CODE_LENGTH

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _random_source() -> random.Random:
    """OS entropy when the platform has it, the seeded PRNG otherwise"""
    try:
        os.urandom(1)
    except NotImplementedError:
        logger.warning("No cryptographic random source available, falling back to pseudo-random codes")
        return random.Random()
    return secrets.SystemRandom()


def generate_code(length: int = CODE_LENGTH) -> str:
    if length < 1:
        raise ValueError(f"Code length must be positive, got {length}")
    rng = _random_source()
    return "".join(rng.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    """Canonical form used for every comparison: stripped and upper-cased"""
    return "".join(code.split()).upper()
