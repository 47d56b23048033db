# app/auth.py
# Kling AI bearer token (HS256 JWT, access key as issuer)

import time

from jose import jwt

from .errors import SigningError
from .logger import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"


class TokenSigner:
    """
    Signs a short-lived JWT for every outbound Kling call.

    Claims: iss = access key, iat = now, exp = now + ttl, nbf = now - skew.
    Nothing is cached; each call to sign() builds a new token.
    """

    def __init__(self, access_key: str | None, secret_key: str | None, ttl: int = 1800, skew: int = 5, clock=time.time):
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.ttl = ttl
        self.skew = skew
        self._clock = clock

    def claims(self) -> dict:
        if not self.access_key or not self.secret_key:
            raise SigningError()
        now = int(self._clock())
        return {
            "iss": self.access_key,
            "iat": now,
            "exp": now + self.ttl,
            "nbf": now - self.skew,
        }

    def sign(self) -> str:
        payload = self.claims()
        logger.debug(
            "JWT payload iss=%s... exp=%s nbf=%s",
            self.access_key[:10], payload["exp"], payload["nbf"],
        )
        return jwt.encode(
            payload,
            self.secret_key,
            algorithm=ALGORITHM,
            headers={"typ": "JWT"},
        )

    def auth_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.sign()}",
        }
