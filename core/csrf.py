# core/csrf.py
"""
Per-session anti-forgery token

The token lives in a session-scoped mapping (the Flask session in the web
app), so it disappears when the browser session ends.
"""

import logging
import secrets
from typing import Dict, MutableMapping, Optional

from core.errors import CSRFTokenMissingError

logger = logging.getLogger(__name__)

TOKEN_KEY = 'csrf_token'
TOKEN_HEADER = 'X-CSRF-Token'
TOKEN_BYTES = 32


class CSRFProtection:
    """
    Issue and validate the CSRF token stored in ``store``

    Args:
        store: Session-scoped mapping; anything with get/__setitem__/pop
    """

    def __init__(self, store: MutableMapping):
        self.store = store

    def generate_token(self) -> str:
        """Create a fresh 64-hex-character token and store it"""
        token = secrets.token_hex(TOKEN_BYTES)
        self.store[TOKEN_KEY] = token
        return token

    def get_token(self) -> Optional[str]:
        return self.store.get(TOKEN_KEY)

    def validate_token(self, token: Optional[str]) -> bool:
        # Plain equality; no constant-time comparison here
        stored_token = self.get_token()
        return stored_token is not None and stored_token == token

    def get_headers(self) -> Dict[str, str]:
        """
        Headers to attach to an outbound state-changing request

        Raises:
            CSRFTokenMissingError: if no token has been generated yet
        """
        token = self.get_token()
        if not token:
            raise CSRFTokenMissingError()
        return {TOKEN_HEADER: token}

    def clear_token(self) -> None:
        self.store.pop(TOKEN_KEY, None)

    def initialize(self) -> str:
        """Generate the token once per session"""
        token = self.get_token()
        if not token:
            token = self.generate_token()
            logger.debug("CSRF token issued for new session")
        return token
