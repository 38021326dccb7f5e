from __future__ import annotations

import logging
from typing import Any, Protocol

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions

from calflow.errors import Unauthenticated, Unauthorized
from calflow.models import Flow

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class TokenVerifier(Protocol):
    def verify(self, token: str) -> str:
        ...


def bearer_token(header: str | None) -> str:
    value = str(header or "").strip()
    if not value.startswith(BEARER_PREFIX):
        raise Unauthenticated("missing bearer token")
    token = value[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthenticated("missing bearer token")
    return token


class FirebaseTokenVerifier:
    def __init__(self, credentials_file: str, app_name: str = "calflow") -> None:
        cred = credentials.Certificate(credentials_file)
        self._app = firebase_admin.initialize_app(cred, name=app_name)

    def verify(self, token: str) -> str:
        try:
            decoded: dict[str, Any] = firebase_auth.verify_id_token(token, app=self._app)
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            logger.info("rejected identity token: %s", exc)
            raise Unauthenticated("invalid identity token") from exc
        user_id = str(decoded.get("uid", "")).strip()
        if not user_id:
            raise Unauthenticated("identity token carries no user id")
        return user_id


class AuthorizationGate:
    """Read and write permissions over stored flows.

    Only the owner may read or write a flow definition. Executing a flow is
    public and never goes through this gate.
    """

    def can_read(self, caller_id: str | None, flow: Flow) -> bool:
        return bool(caller_id) and caller_id == flow.user_id

    def require_read(self, caller_id: str | None, flow: Flow) -> Flow:
        if not self.can_read(caller_id, flow):
            raise Unauthorized("you are not allowed to read this flow")
        return flow

    def can_write(self, caller_id: str | None, flow: Flow) -> bool:
        # mirrors the (flow-id, user-id) filter the store upserts with
        return bool(caller_id) and caller_id == flow.user_id

    def require_write(self, caller_id: str | None, flow: Flow) -> Flow:
        if not self.can_write(caller_id, flow):
            raise Unauthorized("you are not allowed to change this flow")
        return flow
