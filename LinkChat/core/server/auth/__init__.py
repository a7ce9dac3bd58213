"""
Authentication module for the server.

Provides JWT-based authentication: the token names the user (``id`` claim,
or ``sub``) and the user directory resolves that id to a profile.
Tokens can be extracted from the handshake's query parameters and cookies.
"""

import logging
import time
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs

import jwt

from LinkChat.config import config
from LinkChat.core.server.interfaces import AuthResult, UserDirectory

logger = logging.getLogger(__name__)


def create_access_token(
    user_id: str,
    secret: str = None,
    algorithm: str = None,
    expire_minutes: int = None
) -> str:
    """Issue a token the authenticator accepts."""
    minutes = config.JWT_EXPIRE_MINUTES if expire_minutes is None else expire_minutes
    return jwt.encode(
        {"id": user_id, "exp": int(time.time() + minutes * 60)},
        secret or config.JWT_SECRET,
        algorithm=algorithm or config.JWT_ALGORITHM
    )


def decode_user_id(token: str, secret: str = None, algorithm: str = None) -> Optional[str]:
    """
    Decode a token and return the user id it names.

    Raises:
        jwt.InvalidTokenError: bad signature, expired or malformed token
    """
    payload = jwt.decode(
        token,
        secret or config.JWT_SECRET,
        algorithms=[algorithm or config.JWT_ALGORITHM]
    )
    user_id = payload.get("id") or payload.get("sub")
    return str(user_id) if user_id else None


class JWTAuthenticator:
    """
    JWT-based authenticator implementation.

    Handles token validation using JWT, resolves the user through the
    directory and extracts tokens from WebSocket handshakes.
    """

    def __init__(
        self,
        users: UserDirectory,
        secret: str = None,
        algorithm: str = None,
        token_extractor=None
    ):
        """
        Initialize JWT authenticator.

        Args:
            users: Directory the token's user id is resolved against
            secret: JWT secret key (defaults to config.JWT_SECRET)
            algorithm: JWT algorithm (defaults to config.JWT_ALGORITHM)
            token_extractor: Optional custom token extractor
        """
        self._users = users
        self._secret = secret or config.JWT_SECRET
        self._algorithm = algorithm or config.JWT_ALGORITHM
        self._token_extractor = token_extractor or DefaultTokenExtractor()

    async def authenticate(self, token: str) -> AuthResult:
        """
        Validate a JWT token.

        Args:
            token: JWT token string

        Returns:
            AuthResult with authentication status and the user's profile
        """
        try:
            user_id = decode_user_id(token, self._secret, self._algorithm)
        except jwt.ExpiredSignatureError:
            logger.warning("Authentication failed: Token expired")
            return AuthResult(
                success=False,
                error_message="Token has expired",
                error_code="TOKEN_EXPIRED"
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Authentication failed: Invalid token - %s", e)
            return AuthResult(
                success=False,
                error_message=f"Invalid token: {e}",
                error_code="INVALID_TOKEN"
            )

        if not user_id:
            return AuthResult(
                success=False,
                error_message="No user id in token payload",
                error_code="INVALID_PAYLOAD"
            )

        try:
            user = await self._users.get_user(user_id)
        except Exception as e:
            logger.exception("Unexpected error resolving user %s", user_id)
            return AuthResult(
                success=False,
                error_message=f"Authentication error: {e}",
                error_code="AUTH_ERROR"
            )

        if user is None:
            return AuthResult(
                success=False,
                error_message="User not found",
                error_code="USER_NOT_FOUND"
            )
        return AuthResult(success=True, user=user)

    def extract_token(self, transport_context: Any) -> Optional[str]:
        """
        Extract token from transport context.

        Args:
            transport_context: WebSocket or similar connection object

        Returns:
            Extracted token or None
        """
        return self._token_extractor.extract(transport_context)


class DefaultTokenExtractor:
    """
    Default token extractor that handles common transport formats.

    Supports extraction from:
    - URL query parameters (?token=xxx)
    - Cookie headers (authToken=xxx)
    """

    def extract(self, websocket: Any) -> Optional[str]:
        """
        Extract token from WebSocket connection.

        Args:
            websocket: WebSocket connection object

        Returns:
            Extracted token or None
        """
        return self._extract_from_query(websocket) or self._extract_from_cookie(websocket)

    def _extract_from_query(self, websocket: Any) -> Optional[str]:
        """Extract token from URL query parameters."""
        path = self._get_path(websocket)
        if path and "?" in path:
            _, query = path.split("?", 1)
            tokens = parse_qs(query).get("token", [])
            if tokens:
                return tokens[0]
        return None

    def _extract_from_cookie(self, websocket: Any) -> Optional[str]:
        """Extract token from Cookie header."""
        cookie_header = self._get_headers(websocket).get("Cookie", "")
        for cookie in cookie_header.split(";"):
            name, _, value = cookie.strip().partition("=")
            if name == "authToken" and value:
                return value.strip()
        return None

    def _get_path(self, websocket: Any) -> Optional[str]:
        """Extract path from WebSocket object."""
        request = getattr(websocket, "request", None)
        if request is not None:
            return getattr(request, "path", None)
        return None

    def _get_headers(self, websocket: Any) -> Mapping[str, str]:
        """Extract headers (case-insensitive ``Headers``) from WebSocket object."""
        request = getattr(websocket, "request", None)
        headers = getattr(request, "headers", None)
        return headers if headers is not None else {}


__all__ = [
    'JWTAuthenticator',
    'DefaultTokenExtractor',
    'create_access_token',
    'decode_user_id',
]
