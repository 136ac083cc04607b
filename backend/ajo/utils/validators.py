"""
Validators: Rule-based checks for payment references and rotation slots.
"""
import re
import uuid

# Characters Paystack accepts in a transaction reference.
_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9.=_-]{6,100}$")


def validate_reference(reference: str | None) -> bool:
    """Validate a client-supplied payment reference."""
    if not reference:
        return False
    return bool(_REFERENCE_PATTERN.match(reference))


def generate_reference(prefix: str = "AJO") -> str:
    """Server-side reference for clients that did not bring their own."""
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


def validate_slot(slot: int | None, capacity: int) -> bool:
    """A rotation slot is a 1-based position no greater than the group size."""
    if slot is None:
        return True
    return 1 <= slot <= capacity
