from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import jwt

from ontology_engine.errors import EngineError


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _unauthorized(message: str) -> EngineError:
    return EngineError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    tenant_id: str
    subject: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = str(env.get("JWT_ISSUER", "")).strip()
        audience = str(env.get("JWT_AUDIENCE", "")).strip()
        shared_secret = str(env.get("JWT_SHARED_SECRET", "")).strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(str(env.get("JWT_REQUIRED_CLAIMS", "sub,exp"))),
            tenant_claim=str(env.get("JWT_TENANT_CLAIM", "tenant_id")).strip() or "tenant_id",
        )


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")

    required = sorted({*cfg.required_claims, cfg.tenant_claim})
    try:
        claims = jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=["HS256"],
            issuer=cfg.issuer or None,
            audience=cfg.audience or None,
            options={"require": required, "verify_aud": bool(cfg.audience)},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("token expired") from None
    except jwt.InvalidIssuerError:
        raise _unauthorized("jwt issuer mismatch") from None
    except jwt.InvalidAudienceError:
        raise _unauthorized("jwt audience mismatch") from None
    except jwt.MissingRequiredClaimError as exc:
        raise _unauthorized(f"missing required claim: {exc.claim}") from None
    except jwt.InvalidTokenError:
        raise _unauthorized("invalid token") from None

    tenant_id = str(claims.get(cfg.tenant_claim, "")).strip()
    if not tenant_id:
        raise _unauthorized("tenant claim is empty")
    return AuthContext(tenant_id=tenant_id, subject=str(claims.get("sub", "")), claims=claims)
