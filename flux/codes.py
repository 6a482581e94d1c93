"""
One-time delivery codes: generation, normalisation and hashing.
The plaintext is kept for the company; validation only ever compares hashes.
"""
import hashlib
import hmac
import secrets

from flux.config import settings
from flux.errors import InvalidInputError


def generate_code(length: int | None = None, alphabet: str | None = None) -> str:
    length = length or settings.delivery_code_length
    alphabet = alphabet or settings.delivery_code_alphabet
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_code(code: str) -> str:
    """SHA-256 hex digest of the normalised code."""
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def normalize_code(candidate: str) -> str:
    return "".join(candidate.split()).upper()


def check_format(candidate: str | None, length: int | None = None, alphabet: str | None = None) -> str:
    """
    Return the normalised candidate or raise InvalidInputError.
    A malformed candidate never reaches the store, so it does not consume an attempt.
    """
    length = length or settings.delivery_code_length
    alphabet = (alphabet or settings.delivery_code_alphabet).upper()
    if not candidate:
        raise InvalidInputError("Enter the delivery code")
    code = normalize_code(candidate)
    if len(code) != length or any(ch not in alphabet for ch in code):
        raise InvalidInputError(f"The code must have {length} characters")
    return code


def hashes_match(candidate_hash: str, stored_hash: str) -> bool:
    return hmac.compare_digest(candidate_hash, stored_hash)
