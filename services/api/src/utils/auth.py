"""Bearer token verification against an OIDC provider's JWK set."""

from typing import Optional

import jwt
from pydantic import BaseModel

from . import log

logger = log.get_logger(__name__)


class AuthClientConfig(BaseModel):
    jwk_url: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None


class AuthClient:
    def __init__(self, config: AuthClientConfig):
        if not config.jwk_url:
            raise ValueError("AUTH_OIDC_JWK_URL must be set to verify tokens")
        self.config = config
        self.jwk_client = jwt.PyJWKClient(config.jwk_url, cache_keys=True)

    def decode_jwt(self, token: str) -> Optional[dict]:
        """Return the verified claims, or None if the token is not acceptable."""
        try:
            signing_key = self.jwk_client.get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={"verify_aud": bool(self.config.audience), "verify_iss": bool(self.config.issuer)},
            )
        except jwt.PyJWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            return None
