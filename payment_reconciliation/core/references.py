"""Payment reference generation."""
import secrets
import time
from typing import Optional

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_reference(
    institution_id: int,
    student_id: int,
    institution_code: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> str:
    """
    Build a unique, human traceable payment reference.

    Format: ``TP{code or institution id}-{student id}-{base36 ms}-{8 hex}``,
    upper-cased. The random suffix keeps references unique for two checkouts
    started in the same millisecond.
    """
    prefix = (institution_code or str(institution_id)).strip().replace(" ", "")
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"TP{prefix}-{student_id}-{to_base36(millis)}-{secrets.token_hex(4)}".upper()
