"""
Bearer-token handling for the REST routes and the push endpoint.

Tokens are JWTs issued by the main chat backend. The user id lives in the
`id` claim (older tokens use `sub`); admins carry role="admin" or
isAdmin=true.
"""
import logging

import jwt
from flask import request

from chatbell import state

log = logging.getLogger("chatbell.auth")


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _user_id_from_claims(claims: dict) -> int | None:
    raw = claims.get("id", claims.get("sub"))
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def decode_token(token: str) -> dict:
    """Verify and decode a token. Raises AuthError if invalid or missing a user id."""
    if not token:
        raise AuthError("Missing token")
    try:
        claims = jwt.decode(token, state.JWT_SECRET, algorithms=[state.JWT_ALG])
    except jwt.PyJWTError as exc:
        log.debug("Rejected token: %s", exc)
        raise AuthError("Invalid token")
    if _user_id_from_claims(claims) is None:
        raise AuthError("Token without user id")
    return claims


def peek_user_id(token: str) -> int | None:
    """
    Read the user id without verifying the signature. Clients do not hold the
    signing secret; the server verifies on every call anyway.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return _user_id_from_claims(claims)


def bearer_token(req=None) -> str:
    """Token from the Authorization header, falling back to ?token= (websocket clients)."""
    req = req or request
    header = req.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return req.args.get("token", "")


def current_user() -> dict:
    """
    Claims of the caller, with `user_id` and `is_admin` filled in.
    Raises AuthError(401) without a valid token.
    """
    claims = decode_token(bearer_token())
    return {
        **claims,
        "user_id": _user_id_from_claims(claims),
        "is_admin": claims.get("role") == "admin" or bool(claims.get("isAdmin")),
    }


def require_admin() -> dict:
    user = current_user()
    if not user["is_admin"]:
        raise AuthError("Admin access required", status_code=403)
    return user


def issue_token(user_id: int, role: str = "user", **extra) -> str:
    """Sign a token with the server secret (used by tests and local tooling)."""
    payload = {"id": user_id, "role": role, **extra}
    return jwt.encode(payload, state.JWT_SECRET, algorithm=state.JWT_ALG)
