"""
Credential Hashing Module

Salted scrypt hashing for login passwords and payment PINs.
"""

import hashlib
import hmac
import secrets


def generate_salt() -> str:
    """Generate random salt for secret hashing"""
    return secrets.token_hex(16)


def hash_secret(secret: str, salt: str, cost: int = 16384) -> str:
    """Hash a secret with salt using scrypt"""
    return hashlib.scrypt(
        secret.encode(),
        salt=salt.encode(),
        n=cost, r=8, p=1
    ).hex()


def verify_secret(secret: str, expected_hash: str, salt: str, cost: int = 16384) -> bool:
    """Constant-time comparison of a candidate secret against its stored hash"""
    if not expected_hash or not salt:
        return False
    return hmac.compare_digest(hash_secret(secret, salt, cost), expected_hash)
