"""Short human-typed codes: voucher codes, friendly class IDs, support IDs.

Codes are handles, not secrets, so the module-level ``random`` generator is
sufficient. Uniqueness is enforced against the document store by
``ensure_unique``.
"""
import random
import re
import string
from typing import Awaitable, Callable, Optional

from educore.core.config import settings
from educore.core.errors import CodeGenerationExhausted
from educore.core.logging import get_logger

logger = get_logger(__name__)

# Shared by generation and input validation. Look-alike characters (0/O, 1/I)
# are kept so existing printed vouchers stay valid.
CODE_ALPHABET = string.ascii_uppercase + string.digits

VOUCHER_CODE_PATTERN = re.compile(rf"^[A-Z0-9]{{{settings.voucher_code_length}}}$")
FRIENDLY_CLASS_ID_PATTERN = re.compile(r"^[A-Z0-9]{3,10}$")
SUPPORT_ID_PATTERN = re.compile(r"^[0-9]{4}[A-Z]$")


def generate_code(charset: str, length: int, rng: Optional[random.Random] = None) -> str:
    """Return ``length`` characters drawn uniformly from ``charset``."""
    if not charset or length <= 0:
        raise ValueError("charset must be non-empty and length positive")
    rng = rng or random
    return "".join(rng.choice(charset) for _ in range(length))


async def ensure_unique(
    generator: Callable[[], str],
    exists_check: Callable[[str], Awaitable[bool]],
    max_attempts: Optional[int] = None,
    namespace: str = "code",
) -> str:
    """Draw codes until ``exists_check`` reports one as free.

    ``exists_check`` returns True when a code is taken. A check that claims
    the code with a set-if-absent write (returning True when the write lost)
    makes the returned code already reserved, which closes the gap between
    checking and writing.

    Raises:
        CodeGenerationExhausted: If every attempt collided
    """
    attempts = max_attempts or settings.max_code_attempts

    for attempt in range(1, attempts + 1):
        code = generator()
        if not await exists_check(code):
            return code
        logger.debug(f"{namespace} collision on attempt {attempt}/{attempts}")

    logger.error(f"Exhausted {attempts} attempts generating a unique {namespace}")
    raise CodeGenerationExhausted(attempts, namespace)


def generate_voucher_code() -> str:
    return generate_code(CODE_ALPHABET, settings.voucher_code_length)


def generate_friendly_class_id() -> str:
    return generate_code(CODE_ALPHABET, settings.friendly_class_id_length)


def generate_batch_id() -> str:
    return "BATCH-" + generate_code(CODE_ALPHABET, 12)


def generate_support_id() -> str:
    """Four digits followed by one capital letter, e.g. ``1234A``."""
    return generate_code(string.digits, 4) + generate_code(string.ascii_uppercase, 1)


def normalize_code(raw: str) -> str:
    return (raw or "").strip().upper()


def is_valid_voucher_code(code: str) -> bool:
    return bool(VOUCHER_CODE_PATTERN.match(code))
