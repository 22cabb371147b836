"""
Dashboard JWTs and the scheduler secret

Dashboard users sign in through the platform's OIDC provider. Tokens are
RS256-signed with a rotating key set; the public JWKS is fetched once and
cached (TTL: 1 hour). An unknown kid forces one refresh, which covers key
rotation.

Roles (claim `role`, or `custom:role` for Cognito pools):
  admin    - operators; diagnostics and every chatbot
  teacher  - owns chatbots and their knowledge-base documents
  student  - chat only; no access to processing endpoints

The scheduler does not carry a JWT. It authenticates with the shared
CRON_SECRET instead (verify_cron_secret).
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from kb_ingest.core.config import settings
from kb_ingest.schemas.documents import PipelineErrors

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=True)

VALID_ROLES = {"student", "teacher", "admin"}


class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str          # provider user ID; chatbots.teacher_id
    email: str
    role:  str          # student | teacher | admin
    exp:   int
    iss:   str


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600


async def _fetch_jwks(issuer: str) -> dict:
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    jwks_uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(jwks_uri)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed for issuer: %s", issuer)
    return jwks


async def _get_signing_key(token: str):
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):   # 0 = cached, 1 = forced refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)
        try:
            jwks = await _fetch_jwks(issuer)
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Identity provider unavailable",
            ) from exc
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return jwk.construct(key_data).public_key()

    raise HTTPException(
        status.HTTP_401_UNAUTHORIZED,
        detail=f"Unable to find signing key for kid={kid}",
    )


def _extract_role(claims: dict) -> str:
    role = claims.get("custom:role") or claims.get("role")
    if not role and claims.get("cognito:groups"):
        role = claims["cognito:groups"][0]
    if role not in VALID_ROLES:
        logger.warning("Unknown role '%s' in token, defaulting to 'student'", role)
        role = "student"
    return role


async def verify_token(token: str) -> TokenPayload:
    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    return await verify_token(credentials.credentials)


CurrentUser = Annotated[TokenPayload, Depends(get_current_user)]


# ---------------------------------------------------------------------------
# Scheduler shared secret
# ---------------------------------------------------------------------------

def verify_cron_secret(request: Request) -> None:
    """
    Requires `Authorization: Bearer <CRON_SECRET>` when CRON_SECRET is set.
    With no secret configured the endpoint stays open (local development)
    and every call logs a warning.
    """
    secret = settings.cron_secret
    if not secret:
        logger.warning("CRON_SECRET is not set; batch endpoint is unauthenticated")
        return

    header = request.headers.get("Authorization", "")
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip(), secret):
        logger.warning("Rejected batch trigger | client=%s", request.client.host if request.client else "-")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=PipelineErrors.unauthorized("Invalid or missing cron secret.").model_dump(),
        )
