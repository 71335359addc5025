import hashlib


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't immediately grant access.
    # Prefix prevents "hash-as-token" replay.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()
