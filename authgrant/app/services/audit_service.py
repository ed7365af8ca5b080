"""
services/audit_service.py — Audit sink for OAuth security events.

Every event is written twice:
  1. an oauth_audit_logs row, added to the caller's session so it commits
     (or rolls back) together with the state change it describes;
  2. a record on the "authgrant.audit" logger for log shipping.

Security events (refresh-token reuse, code replay) log at WARNING, the rest
at INFO. Callers pass identifiers only: never a secret, code, or token.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from authgrant.app.models.audit_log import AuditLog

logger = logging.getLogger("authgrant.audit")


class AuditAction:
    CLIENT_REGISTERED            = "client_registered"
    CLIENT_STATUS_CHANGED        = "client_status_changed"
    CLIENT_SECRET_REGENERATED    = "client_secret_regenerated"
    CLIENT_REVOKED               = "client_revoked"
    CONSENT_GRANTED              = "consent_granted"
    CONSENT_DENIED               = "consent_denied"
    AUTHORIZATION_CODE_ISSUED    = "authorization_code_issued"
    AUTHORIZATION_CODE_EXCHANGED = "authorization_code_exchanged"
    AUTHORIZATION_CODE_REPLAY    = "authorization_code_replay"
    TOKEN_REFRESHED              = "token_refreshed"
    REFRESH_TOKEN_REUSE          = "refresh_token_reuse"
    TOKEN_REVOKED                = "token_revoked"
    USER_AUTHORIZATION_REVOKED   = "user_authorization_revoked"


SECURITY_EVENTS = frozenset({
    AuditAction.AUTHORIZATION_CODE_REPLAY,
    AuditAction.REFRESH_TOKEN_REUSE,
})


class AuditService:

    def __init__(self, session: Session, ip_address: str | None = None) -> None:
        self._session = session
        self._ip_address = ip_address

    def record(
            self,
            action: str,
            client_id: str | None = None,
            user_id: int | None = None,
            details: str | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            client_id=client_id,
            user_id=user_id,
            ip_address=self._ip_address,
            details=details,
        )
        self._session.add(entry)

        level = logging.WARNING if action in SECURITY_EVENTS else logging.INFO
        logger.log(
            level,
            "%s client_id=%s user_id=%s %s",
            action,
            client_id,
            user_id,
            details or "",
        )
        return entry
