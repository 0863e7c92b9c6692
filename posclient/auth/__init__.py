"""
Credential lifecycle: storage, refresh, session countdown, login/logout.
"""

from posclient.auth.credentials import Credential, CredentialStore, SessionCookieMirror
from posclient.auth.manager import AuthManager
from posclient.auth.refresher import TokenRefresher
from posclient.auth.session import SessionState, SessionTimer

__all__ = [
    "AuthManager",
    "Credential",
    "CredentialStore",
    "SessionCookieMirror",
    "SessionState",
    "SessionTimer",
    "TokenRefresher",
]
