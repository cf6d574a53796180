"""
Bearer tokens for the three actor kinds (user, partner, admin).

Tokens are compact HS256 JWTs signed with JWT_SECRET. Routes declare the
role they need with `Depends(require_user)` and friends.
"""
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from errors import ForbiddenError, UnauthorizedError

ROLES = ("user", "partner", "admin")


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _sign(signing_input: str, secret: str) -> str:
    return _b64encode(hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest())


def encode_token(subject: str, role: str, secret: str, expires_in: Optional[int] = 3600) -> str:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    claims = {"sub": subject, "role": role, "iat": int(time.time())}
    if expires_in is not None:
        claims["exp"] = claims["iat"] + expires_in
    header = _b64encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header}.{payload}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_token(token: str, secret: str) -> Actor:
    try:
        header, payload, signature = token.split(".")
    except ValueError:
        raise UnauthorizedError("Malformed token")
    if not hmac.compare_digest(signature, _sign(f"{header}.{payload}", secret)):
        raise UnauthorizedError("Invalid token signature")
    try:
        algorithm = json.loads(_b64decode(header)).get("alg")
        claims = json.loads(_b64decode(payload))
    except ValueError:
        raise UnauthorizedError("Malformed token")
    if algorithm != "HS256":
        raise UnauthorizedError("Unsupported token algorithm")
    if "exp" in claims and claims["exp"] < time.time():
        raise UnauthorizedError("Token has expired")
    if not claims.get("sub") or claims.get("role") not in ROLES:
        raise UnauthorizedError("Invalid token claims")
    return Actor(id=str(claims["sub"]), role=claims["role"])


def get_actor(request: Request) -> Actor:
    authorization = request.headers.get("Authorization")
    if not authorization:
        raise UnauthorizedError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Authorization header must be a Bearer token")
    return decode_token(token.strip(), request.app.state.settings.jwt_secret)


def _require(role: str):
    def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role != role:
            raise ForbiddenError(f"This endpoint requires the {role} role")
        return actor

    return dependency


require_user = _require("user")
require_partner = _require("partner")
require_admin = _require("admin")
