"""
security.py — Credential primitives shared by the OAuth components.

  - Opaque values (client ids, secrets, codes, tokens) come from `secrets`.
  - Codes and tokens are stored as SHA-256 hex digests, never raw.
  - Client secrets are stored as salted bcrypt hashes.
  - PKCE verification per RFC 7636 (plain and S256).

No Flask imports. No database access.
"""

from __future__ import annotations

import base64
import functools
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timezone

import bcrypt

PKCE_METHODS = ("plain", "S256")

# RFC 7636 §4.1 / §4.2: verifiers and plain challenges are 43–128 chars
# from the unreserved set; an S256 challenge is 43 of them.
PKCE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")

# bcrypt ignores (4.x) or rejects (5.x) input past this length.
BCRYPT_MAX_SECRET_BYTES = 72


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Returns `value` as an aware UTC datetime.

    SQLite hands back naive datetimes even for DateTime(timezone=True)
    columns; every stored timestamp is written in UTC, so naive means UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_token(nbytes: int = 32) -> str:
    """URL-safe opaque value with `nbytes` of entropy (default 256 bits)."""
    return secrets.token_urlsafe(nbytes)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw code or token. Used for every lookup."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def hash_secret(secret: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(
        secret.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds),
    ).decode("utf-8")


def verify_secret(secret: str, secret_hash: str) -> bool:
    """
    bcrypt only reads the first 72 bytes and newer releases refuse longer
    input. A longer secret still pays one full check, then never matches.
    """
    encoded = secret.encode("utf-8")
    matches = bcrypt.checkpw(encoded[:BCRYPT_MAX_SECRET_BYTES], secret_hash.encode("utf-8"))
    return matches and len(encoded) <= BCRYPT_MAX_SECRET_BYTES


@functools.lru_cache(maxsize=None)
def dummy_secret_hash(rounds: int = 12) -> str:
    """
    Hash checked against when the client id is unknown. Built with the same
    cost factor as real client secrets, so an unknown id takes as long to
    reject as a wrong secret.
    """
    return hash_secret(generate_token(16), rounds=rounds)


def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str, method: str) -> bool:
    """
    True if `verifier` matches the stored `challenge` under `method`.

    Comparison is constant-time. Unknown methods never match.
    """
    if method == "S256":
        computed = s256_challenge(verifier)
    elif method == "plain":
        computed = verifier
    else:
        return False
    return hmac.compare_digest(computed.encode("utf-8"), challenge.encode("utf-8"))
