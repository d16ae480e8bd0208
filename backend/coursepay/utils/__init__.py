from coursepay.utils.hashing import generate_hash, generate_chain_hash
from coursepay.utils.validators import ValidationResult, validate_transaction_id

__all__ = [
    "generate_hash", "generate_chain_hash",
    "ValidationResult", "validate_transaction_id",
]
