import time, jwt
from typing import Dict, Optional
from common.settings import Settings, settings as default_settings

ALGO = "HS256"

class TokenError(Exception):
    """Raised when a bearer token is missing, malformed or rejected"""

def mint_user_jwt(account_id: str, claims: Optional[Dict] = None, cfg: Settings = None) -> str:
    cfg = cfg or default_settings
    now = int(time.time())
    payload = {
        "iss": cfg.jwt_issuer,
        "sub": account_id,
        "iat": now,
        "exp": now + cfg.jwt_ttl_seconds,
        "scope": "user",
        **(claims or {}),
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=ALGO)

def mint_internal_jwt(service: str, cfg: Settings = None) -> str:
    """Token for the profile/registration collaborator calling internal routes"""
    cfg = cfg or default_settings
    now = int(time.time())
    payload = {
        "iss": cfg.jwt_issuer,
        "sub": service,
        "aud": cfg.internal_audience,
        "iat": now,
        "exp": now + cfg.internal_jwt_ttl_seconds,
        "scope": "internal",
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=ALGO)

def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise TokenError("missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise TokenError("empty bearer token")
    return token

def verify_token(token: str, audience: Optional[str] = None, cfg: Settings = None) -> Dict:
    cfg = cfg or default_settings
    required = ["exp", "iat", "iss", "sub"]
    if audience:
        required.append("aud")
    try:
        return jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=[ALGO],
            audience=audience,
            issuer=cfg.jwt_issuer,
            options={"require": required, "verify_aud": audience is not None},
        )
    except jwt.PyJWTError as e:
        raise TokenError(str(e)) from e
