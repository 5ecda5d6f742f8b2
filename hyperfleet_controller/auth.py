import hashlib
import hmac
import secrets


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def secure_compare_token(token: str, token_hash: str | None) -> bool:
    if not token_hash:
        return False
    return hmac.compare_digest(hash_token(token), token_hash)


def new_callback_token() -> tuple[str, str]:
    """Return a fresh per-claim callback token and the hash to store for it."""
    token = secrets.token_urlsafe(32)
    return token, hash_token(token)
