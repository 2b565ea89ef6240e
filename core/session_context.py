# core/session_context.py
"""
Per-session security context

Holds the CSRF token store, the CSP nonce, the cached role and the
inactivity timers for one signed-in session. Create at sign-in, dispose at
sign-out.
"""

import logging
from typing import Any, Callable, MutableMapping, Optional

from core.csp import CSPNonceManager
from core.csrf import CSRFProtection
from core.session_timeout import SessionTimeoutConfig, SessionTimeoutGuard

logger = logging.getLogger(__name__)


class SessionContext:
    """
    Args:
        store: Session-scoped mapping holding the CSRF token
        sign_out: Called by the timeout guard on forced sign-out
        notify: Receives user-visible notices
        role: Role resolved at sign-in ('admin', 'user', ...)
        user_id: Signed-in user the session belongs to
    """

    def __init__(self, store: MutableMapping, sign_out: Callable[[], Any], notify: Callable[[dict], Any],
                 timeout_config: Optional[SessionTimeoutConfig] = None, scheduler=None,
                 csp_sources=None, role: Optional[str] = None, user_id: Optional[str] = None):
        self.csrf = CSRFProtection(store)
        self.csp = CSPNonceManager(csp_sources)
        self.timeout_guard = SessionTimeoutGuard(sign_out, notify, timeout_config, scheduler)
        self.role = role
        self.user_id = user_id
        self._disposed = False

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @property
    def disposed(self) -> bool:
        return self._disposed

    def start(self, session) -> str:
        """Arm the guard and make sure a CSRF token exists; returns the token"""
        if self._disposed:
            raise RuntimeError("SessionContext already disposed")
        token = self.csrf.initialize()
        self.timeout_guard.start(session)
        return token

    def record_activity(self, event: str) -> bool:
        return self.timeout_guard.record_activity(event)

    def dispose(self) -> None:
        """Release timers and forget session secrets"""
        if self._disposed:
            return
        self.timeout_guard.stop()
        self.csrf.clear_token()
        self.role = None
        self._disposed = True
        logger.debug("Session context disposed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
        return False
