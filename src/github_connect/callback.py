"""
Callback page logic: runs in the popup GitHub redirects back to and turns the
redirect's query string into a session write or a message for the opener.
"""
import logging
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs

from .models import InstallationComplete, OAuthError, OAuthSuccess, dump_message
from .storage import SessionStore
from .windows import Window

logger = logging.getLogger(__name__)


class CallbackAction(str, Enum):
    CLOSE = 'close'
    REDIRECT_HOME = 'redirect_home'


def _first(params: dict, key: str) -> Optional[str]:
    values = params.get(key)
    if values and values[0]:
        return values[0]
    return None


class CallbackController:

    def __init__(self, window: Window, session: SessionStore, home_route: str = '/'):
        self.window = window
        self.session = session
        self.home_route = home_route

    def handle(self, search: str) -> CallbackAction:
        """Process `search` (the query string, leading `?` included)."""
        params = parse_qs(search.lstrip('?'))
        opener = self.window.opener

        installation_id = _first(params, 'installation_id')
        if _first(params, 'setup_action') and installation_id:
            self.session.record_installation(installation_id)
            logger.info("App installation %s recorded", installation_id)
            if opener is None:
                return self._go_home()
            self._post(InstallationComplete(installation_id=installation_id))
            return self._close()

        error = _first(params, 'error')
        if error:
            if opener is None:
                return self._go_home()
            self._post(OAuthError(error=_first(params, 'error_description') or error))
            return self._close()

        code = _first(params, 'code')
        state = _first(params, 'state')
        if code and state:
            if opener is None:
                return self._go_home()
            self._post(OAuthSuccess(code=code, state=state, search=search))
            return self._close()

        return self._go_home()

    def _post(self, message) -> None:
        # always our own origin, never '*': the code must not leak
        self.window.opener.post_message(dump_message(message), self.window.origin, source=self.window)

    def _close(self) -> CallbackAction:
        self.window.close()
        return CallbackAction.CLOSE

    def _go_home(self) -> CallbackAction:
        self.window.navigate(self.home_route)
        return CallbackAction.REDIRECT_HOME
