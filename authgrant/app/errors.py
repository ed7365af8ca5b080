"""
errors.py — AppError base class and error code registry.

Every error returned by the authgrant API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Codes are the wire contract. The OAuth ones use the RFC 6749 spelling
    so standard client libraries recognise them.
  - Messages are human-readable prose. They may be improved at any time.
  - Messages never contain a raw secret, code, or token value.
  - 401 means "we do not know who you are", 403 means "we know, and no".
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
            reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field   # which request field caused the error
        self.reason      = reason  # finer classification, e.g. expired / revoked

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        if self.reason is not None:
            payload["reason"] = self.reason
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"reason={self.reason!r}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "missing_field"
    INVALID_FIELD              = "invalid_field"      # malformed registration input
    INVALID_REQUEST            = "invalid_request"
    UNSUPPORTED_GRANT_TYPE     = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE  = "unsupported_response_type"

    # ── Grant Errors ───────────────────────────────────────────────────────
    INVALID_CLIENT             = "invalid_client"        # 401
    INVALID_GRANT              = "invalid_grant"         # 400
    INVALID_SCOPE              = "invalid_scope"         # 400
    ACCESS_DENIED              = "access_denied"         # redirect only
    # Replay of a superseded refresh token. A security event, not a routine
    # client error: the whole rotation chain is already revoked when raised.
    REFRESH_TOKEN_REUSED       = "refresh_token_reused"  # 400
    INVALID_TOKEN              = "invalid_token"         # 401

    # ── Session (user JWT) Errors (401 / 403) ──────────────────────────────
    TOKEN_MISSING              = "token_missing"         # 401
    TOKEN_INVALID              = "token_invalid"         # 401
    TOKEN_EXPIRED              = "token_expired"         # 401
    FORBIDDEN                  = "forbidden"             # 403

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    CLIENT_NOT_FOUND           = "client_not_found"

    # ── System Errors ──────────────────────────────────────────────────────
    TEMPORARILY_UNAVAILABLE    = "temporarily_unavailable"  # 503, retryable
    INTERNAL_ERROR             = "server_error"             # 500


# Reasons attached to INVALID_TOKEN / INVALID_GRANT.
class Reason:
    UNKNOWN  = "unknown"
    EXPIRED  = "expired"
    REVOKED  = "revoked"
    USED     = "used"
    MISMATCH = "mismatch"


# ── Factories ──────────────────────────────────────────────────────────────
#
# The five error kinds every component raises. Kept as functions so call
# sites read like the taxonomy while the wire shape stays a single class.
# ──────────────────────────────────────────────────────────────────────────

def invalid_client(message: str = "Client authentication failed.") -> AppError:
    return AppError(ErrorCode.INVALID_CLIENT, message, 401)


def invalid_grant(message: str, reason: str | None = None) -> AppError:
    return AppError(ErrorCode.INVALID_GRANT, message, 400, reason=reason)


def invalid_scope(message: str) -> AppError:
    return AppError(ErrorCode.INVALID_SCOPE, message, 400, field="scope")


def reuse_detected() -> AppError:
    return AppError(
        ErrorCode.REFRESH_TOKEN_REUSED,
        "The refresh token was already used. All tokens of this grant have been revoked.",
        400,
    )


def validation_error(message: str, field: str) -> AppError:
    return AppError(ErrorCode.INVALID_FIELD, message, 400, field=field)


def invalid_token(reason: str) -> AppError:
    return AppError(
        ErrorCode.INVALID_TOKEN,
        f"The access token is {reason}.",
        401,
        reason=reason,
    )
