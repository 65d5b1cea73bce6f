"""Bearer credential verification for WebSocket handshakes.

Tokens are JWTs issued by the account service. The relay only verifies
them:
1. Decode and validate signature and expiry
2. Read the identity claim (``id`` by default, ``sub`` as fallback)
3. Return the identity id; the caller checks the identity exists
"""
import logging
from typing import Optional

import jwt
from jwt import PyJWTError

from app.chat.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves bearer JWTs to identity ids."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", identity_claim: str = "id"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.identity_claim = identity_claim

    def verify(self, token: Optional[str]) -> str:
        """Decode a bearer token and return the identity id it names.

        Raises:
            AuthenticationError: Missing, malformed, expired or unsigned
                token, or a token without an identity claim.
        """
        if not token:
            raise AuthenticationError("Authentication token is required")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except PyJWTError as e:
            logger.warning(f"[Auth] Token rejected: {e}")
            raise AuthenticationError("Invalid authentication token") from e

        identity_id = payload.get(self.identity_claim) or payload.get("sub")
        if not identity_id:
            raise AuthenticationError("Token does not name an identity")
        return str(identity_id)

    @staticmethod
    def extract_bearer(header_value: Optional[str]) -> Optional[str]:
        """Extract the token from an ``Authorization: Bearer <token>`` header value."""
        if not header_value:
            return None
        scheme, _, credentials = header_value.partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()
