"""
Order number generation.

Format: FBX-[YEAR][MONTH][DAY]-[RANDOM], e.g. FBX-20250308-A1B2C3.
The date part is UTC so numbers sort by creation day; the six character suffix
gives 36**6 combinations per day. Uniqueness is finally enforced by the unique
index on ``orders.order_number``.
"""
import re
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

PREFIX = "FBX"
SUFFIX_LENGTH = 6
SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

ORDER_NUMBER_PATTERN = re.compile(rf"^{PREFIX}-\d{{8}}-[A-Z0-9]{{{SUFFIX_LENGTH}}}$")


def generate_order_number(now: Optional[datetime] = None) -> str:
    """
    Generate a new order number.

    Args:
        now: Creation instant (defaults to the current UTC time)

    Returns:
        Order number string
    """
    now = now or datetime.now(timezone.utc)
    date_part = now.strftime("%Y%m%d")
    random_part = "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{PREFIX}-{date_part}-{random_part}"


def is_valid_order_number(value: str) -> bool:
    return bool(ORDER_NUMBER_PATTERN.match(value or ""))
