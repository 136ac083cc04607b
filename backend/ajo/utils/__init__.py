from ajo.utils.hashing import payload_digest, compute_signature, verify_signature
from ajo.utils.validators import validate_reference, generate_reference, validate_slot

__all__ = [
    "payload_digest", "compute_signature", "verify_signature",
    "validate_reference", "generate_reference", "validate_slot",
]
