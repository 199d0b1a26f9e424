import re
import secrets
import string
from datetime import datetime, timezone
from random import Random

BASE36_ALPHABET = string.digits + string.ascii_uppercase
SUFFIX_LENGTH = 5
DEFAULT_PREFIX = "RASTA"

_CODE_RE = re.compile(r"^[A-Z]+-\d{4}-[0-9A-Z]{%d}$" % SUFFIX_LENGTH)

_system_random = secrets.SystemRandom()


def generate_booking_code(prefix: str = DEFAULT_PREFIX, year: int | None = None, *, rng: Random | None = None) -> str:
    """
    Build a human-readable code such as ``RASTA-2026-7QK2D``.
    The suffix alone is not guaranteed unique; callers check it against the store.
    """
    if year is None:
        year = datetime.now(timezone.utc).year
    chooser = rng or _system_random
    suffix = "".join(chooser.choice(BASE36_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{prefix.upper()}-{year:04d}-{suffix}"


def is_valid_booking_code(value: str) -> bool:
    return bool(_CODE_RE.match(value.strip().upper()))


def normalize_booking_code(value: str) -> str:
    return value.strip().upper()
