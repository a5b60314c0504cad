"""
subathon.api.deps — FastAPI dependency injection
=================================================

Bearer tokens are HS256 JWTs whose ``sub`` claim is the tenant id.  The
signing secret comes from ``JWT_SECRET`` and is validated once, when the
app starts (see :func:`get_jwt_secret`), so a misconfigured deployment
refuses to boot instead of accepting forged tokens.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError

from subathon.config import SubathonConfig, load_config
from subathon.services.accumulator import Accumulator
from subathon.services.registry import TenantRegistry
from subathon.services.store import InvalidTenantError

JWT_ALGORITHM = "HS256"

_MIN_SECRET_LENGTH = 32
_MIN_DISTINCT_CHARS = 8

# Substrings of the placeholder values people copy out of sample files
_PLACEHOLDER_MARKERS = ("change-me", "changeme", "example", "placeholder", "your-secret")


# ---------------------------------------------------------------------------
# Secret
# ---------------------------------------------------------------------------
def load_jwt_secret(environ: Mapping[str, str] | None = None) -> str:
    """Return ``JWT_SECRET`` from *environ* (default ``os.environ``).

    Raises RuntimeError if it is missing, shorter than 32 characters, looks
    like a copied placeholder, or has too little variety to be random.
    """
    env = os.environ if environ is None else environ
    secret = env.get("JWT_SECRET", "").strip()
    if not secret:
        raise RuntimeError(
            "JWT_SECRET is not set. Put a random value in .env, e.g. "
            "python -c \"import secrets; print(secrets.token_urlsafe(48))\""
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars, "
            f"need at least {_MIN_SECRET_LENGTH})."
        )
    lowered = secret.lower()
    if any(marker in lowered for marker in _PLACEHOLDER_MARKERS):
        raise RuntimeError("JWT_SECRET still contains a placeholder value.")
    if len(set(secret)) < _MIN_DISTINCT_CHARS:
        raise RuntimeError(
            f"JWT_SECRET uses fewer than {_MIN_DISTINCT_CHARS} distinct characters; "
            "generate a random one."
        )
    return secret


@lru_cache(maxsize=1)
def get_jwt_secret() -> str:
    """Validated secret, read once per process (``cache_clear`` in tests)."""
    return load_jwt_secret()


@lru_cache(maxsize=1)
def get_config() -> SubathonConfig:
    return load_config()


# ---------------------------------------------------------------------------
# Registry + tenant resolution
# ---------------------------------------------------------------------------
async def get_registry(request: Request) -> TenantRegistry:
    """The registry created by the app lifespan."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Timer service not ready")
    return registry


def get_current_tenant(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate the bearer JWT and return its ``sub`` claim (the tenant id)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    tenant_id = payload.get("sub")
    if not tenant_id:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Token has no tenant")
    return str(tenant_id)


def resolve_accumulator(registry: TenantRegistry, tenant_id: str) -> Accumulator:
    """Get or create the tenant's accumulator (authenticated callers only)."""
    try:
        return registry.get(tenant_id)
    except InvalidTenantError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))


def resolve_existing_accumulator(registry: TenantRegistry, tenant_id: str) -> Accumulator:
    """Accumulator of a tenant that already has data; 404 otherwise."""
    try:
        acc = registry.lookup(tenant_id)
    except InvalidTenantError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    if acc is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Unknown timer")
    return acc


async def get_tenant_accumulator(
    tenant_id: Annotated[str, Depends(get_current_tenant)],
    registry: Annotated[TenantRegistry, Depends(get_registry)],
) -> Accumulator:
    """Accumulator of the authenticated tenant.

    Async so it runs on the event loop, where the registry lives.
    """
    return resolve_accumulator(registry, tenant_id)
