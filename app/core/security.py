# app/core/security.py
import hashlib

from passlib.context import CryptContext

# Staff passwords are hashed when the signup request is filed; approval
# copies the stored hash onto the new account, so plaintext never outlives the request.
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

BCRYPT_MAX_BYTES = 72


def _fit_bcrypt(password: str) -> str:
    """bcrypt ignores everything past 72 bytes; long secrets are digested first."""
    raw = password.encode("utf-8")
    if len(raw) <= BCRYPT_MAX_BYTES:
        return password
    return hashlib.sha256(raw).hexdigest()


def hash_password(password: str) -> str:
    return pwd_context.hash(_fit_bcrypt(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(_fit_bcrypt(plain_password), hashed_password)
