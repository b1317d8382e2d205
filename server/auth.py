from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import jwt
from jose.exceptions import JWTError

from shared.join_window import utcnow

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "HS256"


class TokenVerifier:
    """Verifies bearer tokens issued by the account service.

    Only verification lives here; sign-up and login belong to another service.
    ``issue`` exists for local tooling and tests.
    """

    def __init__(self, secret: str, *, algorithm: str = DEFAULT_ALGORITHM) -> None:
        if not secret:
            raise ValueError("a token secret is required")
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: Optional[str]) -> str:
        """Return the subject user id of a valid token."""
        if not token:
            raise AuthenticationError("Auth token required")
        try:
            payload: Dict[str, Any] = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.warning("Rejected bearer token: %s", exc)
            raise AuthenticationError("Authentication error") from exc
        subject = payload.get("id") or payload.get("sub")
        if not subject:
            raise AuthenticationError("Token has no subject")
        return str(subject)

    def issue(self, user_id: str, *, expires_in: timedelta = timedelta(hours=12)) -> str:
        claims = {"id": user_id, "exp": utcnow() + expires_in}
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)
