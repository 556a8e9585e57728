from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.backends.rsa_backend import RSAKey

from utils.logger import get_logger

ALGORITHMS = ["RS256"]

logger = get_logger("auth")
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Auth0Config:
    domain: Optional[str]
    audience: Optional[str]
    issuer: Optional[str]
    jwks_cache_ttl: int

    @property
    def jwks_url(self) -> str:
        return f"https://{self.domain}/.well-known/jwks.json"


def _load_jwks_cache_ttl() -> int:
    raw_ttl = os.getenv("AUTH0_JWKS_CACHE_TTL")
    if not raw_ttl:
        return 3600
    try:
        parsed = int(raw_ttl)
    except ValueError:
        return 3600
    return max(parsed, 60)


def load_auth_config() -> Auth0Config:
    # Read on each call so values from .env (loaded at startup) are honoured.
    domain = os.getenv("AUTH0_DOMAIN")
    return Auth0Config(
        domain=domain,
        audience=os.getenv("AUTH0_AUDIENCE"),
        issuer=os.getenv("AUTH0_ISSUER") or (f"https://{domain}/" if domain else None),
        jwks_cache_ttl=_load_jwks_cache_ttl(),
    )


_jwks_cache: Optional[Dict[str, Any]] = None
_jwks_cache_expires_at: float = 0.0
_jwks_cache_lock = threading.Lock()


@dataclass
class AuthContext:
    token: str
    payload: Dict[str, Any]
    sub: str
    email: Optional[str]


def _require_auth0_configuration(config: Auth0Config) -> None:
    missing = [
        name
        for name, value in (
            ("AUTH0_DOMAIN", config.domain),
            ("AUTH0_AUDIENCE", config.audience),
            ("AUTH0_ISSUER", config.issuer),
        )
        if not value
    ]
    if missing:
        message = f"Missing Auth0 configuration values: {', '.join(missing)}"
        logger.error(message)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


def _fetch_jwks(config: Auth0Config) -> Dict[str, Any]:
    try:
        response = httpx.get(config.jwks_url, timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:  # pragma: no cover - network failure path
        logger.error("Unable to fetch Auth0 JWKS from %s: %s", config.jwks_url, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to fetch Auth0 public keys.",
        ) from exc
    return response.json()


def _get_jwks(config: Auth0Config, force_refresh: bool = False) -> Dict[str, Any]:
    global _jwks_cache, _jwks_cache_expires_at
    now = time.monotonic()
    if force_refresh or _jwks_cache is None or now >= _jwks_cache_expires_at:
        with _jwks_cache_lock:
            now = time.monotonic()
            if force_refresh or _jwks_cache is None or now >= _jwks_cache_expires_at:
                _jwks_cache = _fetch_jwks(config)
                _jwks_cache_expires_at = now + config.jwks_cache_ttl
    return _jwks_cache


def _find_jwk(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    return next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)


def _decode_token(token: str) -> Dict[str, Any]:
    config = load_auth_config()
    _require_auth0_configuration(config)
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.") from exc

    jwk_key = _find_jwk(_get_jwks(config), unverified_header.get("kid"))
    if jwk_key is None:
        # Keys may have rotated since the cache was filled.
        jwk_key = _find_jwk(_get_jwks(config, force_refresh=True), unverified_header.get("kid"))
    if jwk_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.")
    public_key = RSAKey(jwk_key, ALGORITHMS[0])

    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=ALGORITHMS,
            audience=config.audience,
            issuer=config.issuer,
        )
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.") from exc


def get_auth_context(credentials: HTTPAuthorizationCredentials = Depends(security)) -> AuthContext:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization header is required.")
    token = credentials.credentials
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token is missing.")

    payload = _decode_token(token)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token payload is missing subject.")

    return AuthContext(token=token, payload=payload, sub=sub, email=payload.get("email"))
