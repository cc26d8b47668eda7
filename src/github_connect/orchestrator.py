"""
Popup orchestrator: drives the GitHub connection from the initiating window.

Stage one installs the GitHub App in a popup; stage two runs the OAuth grant in
a second popup and waits for the callback page to message back. The broker
turns the code into a token and repository list, which is persisted so a
restart does not need a new authorization.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode

from .config import ClientSettings
from .errors import GitHubConnectError
from .github_client import GITHUB_URL
from .models import Connection, InstallationComplete, OAuthError, OAuthSuccess, parse_message
from .storage import ConnectionStore, SessionStore
from .windows import MessageEvent, Window, popup_features

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
INSTALL_POPUP = 'GitHub App Installation'
AUTHORIZE_POPUP = 'GitHub Authorization'

CLONE_PROTOCOLS = ('HTTPS', 'SSH', 'GitHub CLI')


class AttemptOutcome(str, Enum):
    CONNECTED = 'connected'
    FAILED = 'failed'
    AUTH_ERROR = 'auth_error'
    CANCELLED = 'cancelled'
    INCOMPLETE = 'incomplete'
    BLOCKED = 'blocked'
    CONFIG_ERROR = 'config_error'
    TIMED_OUT = 'timed_out'
    SUPERSEDED = 'superseded'


@dataclass
class _Attempt:
    state: str
    client_id: Optional[str] = None
    popup: Optional[Window] = None
    stage: str = 'installation'
    received: bool = False
    outcome: Optional[AttemptOutcome] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    listeners: List[Callable] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.outcome is not None


def installation_url(app_slug: str, state: str) -> str:
    return f"{GITHUB_URL}/apps/{app_slug}/installations/new?" + urlencode({'state': state})


def authorize_url(client_id: str, redirect_uri: str, state: str) -> str:
    query = urlencode({
        'client_id': client_id,
        'redirect_uri': redirect_uri,
        'state': state,
        'scope': 'repo',
    })
    return f"{GITHUB_URL}/login/oauth/authorize?{query}"


class PopupOrchestrator:

    def __init__(self, settings: ClientSettings, window: Window, launcher, session: SessionStore,
                 connections: ConnectionStore, broker, notify,
                 on_connect: Optional[Callable[[str, str], None]] = None,
                 poll_interval: float = POLL_INTERVAL):
        self.settings = settings
        self.window = window
        self.launcher = launcher
        self.session = session
        self.connections = connections
        self.broker = broker
        self.notify = notify
        self.on_connect = on_connect
        self.poll_interval = poll_interval
        self.connection: Optional[Connection] = None
        self._attempt: Optional[_Attempt] = None

    # -- state -------------------------------------------------------------

    def hydrate(self) -> Optional[Connection]:
        self.connection = self.connections.load()
        if self.connection:
            logger.info("Restored GitHub connection for %s", self.connection.username)
        return self.connection

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def is_connecting(self) -> bool:
        return self._attempt is not None and not self._attempt.finished

    @property
    def outcome(self) -> Optional[AttemptOutcome]:
        return self._attempt.outcome if self._attempt else None

    async def wait_for_completion(self) -> Optional[AttemptOutcome]:
        attempt = self._attempt
        if attempt is None:
            return None
        await attempt.done.wait()
        return attempt.outcome

    # -- connect -----------------------------------------------------------

    async def initiate_connection(self) -> Optional[AttemptOutcome]:
        """
        Start a new attempt. Returns the outcome when the attempt ended right
        away (configuration error, popup blocked), otherwise None.
        """
        self._abandon_attempt()

        client_id, app_slug = await self._client_config()
        attempt = _Attempt(state=secrets.token_urlsafe(16), client_id=client_id)
        self._attempt = attempt

        if not client_id:
            self.notify("Configuration Error", "GitHub Client ID is not configured.", 'destructive')
            self._finish(attempt, AttemptOutcome.CONFIG_ERROR)
            return attempt.outcome

        self.session.begin(attempt.state)

        if app_slug:
            url = installation_url(app_slug, attempt.state)
            name = INSTALL_POPUP
        else:
            # no GitHub App configured, go straight to the OAuth grant
            attempt.stage = 'authorize'
            url = authorize_url(client_id, self.settings.redirect_uri, attempt.state)
            name = AUTHORIZE_POPUP

        popup = self._open_popup(url, name)
        if popup is None:
            self._popup_blocked(attempt)
            return attempt.outcome
        attempt.popup = popup

        if attempt.stage == 'installation':
            self._listen(attempt, self._installation_listener(attempt))
            self._spawn(attempt, self._watch_installation(attempt))
        else:
            self._listen(attempt, self._oauth_listener(attempt))
            self._spawn(attempt, self._watch_authorization(attempt))
        return None

    def cancel_connection(self) -> None:
        """Close the open popup; the watcher reports the attempt as cancelled."""
        if self.is_connecting and self._attempt.popup is not None:
            self._attempt.popup.close()

    async def _client_config(self) -> Tuple[Optional[str], Optional[str]]:
        client_id = self.settings.client_id
        app_slug = self.settings.app_slug
        if client_id and app_slug:
            return client_id, app_slug
        try:
            remote = await self.broker.get_client_config()
        except GitHubConnectError as e:
            logger.warning("Could not fetch GitHub client config from broker: %s", e)
            remote = {}
        return client_id or remote.get('client_id'), app_slug or remote.get('app_slug')

    def _open_popup(self, url: str, name: str) -> Optional[Window]:
        popup = self.launcher.open(url, name, popup_features(self.window.screen))
        if popup is None or popup.closed:
            return None
        return popup

    def _popup_blocked(self, attempt: _Attempt) -> None:
        self.notify("Popup Blocked", "Please allow popups to connect to GitHub.", 'destructive')
        self.session.clear()
        self._finish(attempt, AttemptOutcome.BLOCKED)

    # -- stage one: app installation ---------------------------------------

    def _installation_listener(self, attempt: _Attempt):
        def on_message(event: MessageEvent):
            if event.origin != self.window.origin:
                return None
            message = parse_message(event.data)
            if not isinstance(message, InstallationComplete):
                return None
            self._unlisten(attempt, on_message)
            if attempt is self._attempt and not attempt.finished:
                self.session.record_installation(message.installation_id)
            return None
        return on_message

    async def _watch_installation(self, attempt: _Attempt) -> None:
        if not await self._wait_closed(attempt, attempt.popup):
            return
        for listener in list(attempt.listeners):
            self._unlisten(attempt, listener)

        if self.session.installation_id:
            self._open_authorization(attempt)
        elif not attempt.received:
            self.notify("Installation Incomplete",
                        "The GitHub App installation was not completed.", 'destructive')
            self.session.clear()
            self._finish(attempt, AttemptOutcome.INCOMPLETE)

    def _open_authorization(self, attempt: _Attempt) -> None:
        attempt.stage = 'authorize'
        url = authorize_url(attempt.client_id, self.settings.redirect_uri, attempt.state)
        popup = self._open_popup(url, AUTHORIZE_POPUP)
        if popup is None:
            self._popup_blocked(attempt)
            return
        attempt.popup = popup
        self._listen(attempt, self._oauth_listener(attempt))
        self._spawn(attempt, self._watch_authorization(attempt))

    # -- stage two: OAuth grant --------------------------------------------

    def _oauth_listener(self, attempt: _Attempt):
        def on_message(event: MessageEvent):
            if attempt is not self._attempt or attempt.finished:
                return None
            if event.origin != self.window.origin:
                logger.warning("Ignoring message from foreign origin %s", event.origin)
                return None

            message = parse_message(event.data)
            if isinstance(message, OAuthSuccess):
                stored = self.session.state
                if not stored or message.state != stored:
                    logger.warning("OAuth state mismatch, dropping callback")
                    return None
                attempt.received = True
                self._unlisten(attempt, on_message)
                return self._complete_exchange(attempt, message)

            if isinstance(message, OAuthError):
                attempt.received = True
                self._unlisten(attempt, on_message)
                self.notify("Authorization Failed",
                            message.error or "Failed to authorize with GitHub.", 'destructive')
                self._close_popup(attempt)
                self.session.clear()
                self._finish(attempt, AttemptOutcome.AUTH_ERROR)
            return None
        return on_message

    async def _complete_exchange(self, attempt: _Attempt, message: OAuthSuccess) -> None:
        installation_id = self.session.installation_id
        if not installation_id:
            echoed = parse_qs(message.search.lstrip('?')).get('installation_id')
            installation_id = echoed[0] if echoed else None

        try:
            result = await self.broker.exchange(message.code, installation_id)
        except GitHubConnectError as e:
            logger.warning("GitHub token exchange failed: %s", e)
            self._connection_failed(attempt, f"Failed to connect to GitHub: {e}. Please try again.")
            return
        except Exception:
            logger.exception("GitHub token exchange failed")
            self._connection_failed(attempt, "Failed to connect to GitHub. Please try again.")
            return

        if attempt is not self._attempt or attempt.finished:
            logger.info("Discarding token exchange result of a superseded attempt")
            return

        previous = self.connection
        try:
            repos = result.repositories
            connection = Connection(
                access_token=result.access_token,
                username=result.user.login,
                repositories=repos,
                selected_repository=repos[0] if repos else None,
            )
            self.connections.save(connection)
        except Exception:
            logger.exception("Could not store the GitHub connection")
            self._restore(previous)
            self._connection_failed(attempt, "Failed to save the GitHub connection. Please try again.")
            return

        self.connection = connection
        self._close_popup(attempt)
        self.session.clear()

        self.notify("Connected to GitHub",
                    f"Connected as {connection.username}. Found {len(repos)} repositories.")
        try:
            self._announce(connection)
        except Exception:
            logger.exception("on_connect callback failed")
        self._finish(attempt, AttemptOutcome.CONNECTED)

    def _connection_failed(self, attempt: _Attempt, description: str) -> None:
        if attempt.finished:
            return
        self.notify("Connection Failed", description, 'destructive')
        self._close_popup(attempt)
        self.session.clear()
        self._finish(attempt, AttemptOutcome.FAILED)

    def _restore(self, previous: Optional[Connection]) -> None:
        """Put the durable record back to the last good connection, or empty."""
        try:
            if previous is None:
                self.connections.clear()
            else:
                self.connections.save(previous)
        except Exception:
            logger.exception("Could not restore the stored GitHub connection")

    async def _watch_authorization(self, attempt: _Attempt) -> None:
        if not await self._wait_closed(attempt, attempt.popup):
            return
        # a just-received success closes the popup itself, that is not a cancel
        if attempt.received or attempt.finished:
            return
        for listener in list(attempt.listeners):
            self._unlisten(attempt, listener)
        self.notify("Authorization Window Closed",
                    "The GitHub authorization window was closed before completing.", 'destructive')
        self.session.clear()
        self._finish(attempt, AttemptOutcome.CANCELLED)

    # -- connection --------------------------------------------------------

    def disconnect(self) -> None:
        self.connection = None
        self.connections.clear()
        self.notify("Disconnected", "GitHub integration has been disconnected.")

    def switch_repository(self, full_name: str) -> bool:
        if self.connection is None:
            return False
        repo = self.connection.find(full_name)
        if repo is None:
            return False
        self.connection.selected_repository = repo
        self.connections.save_selection(repo.full_name)
        self._announce(self.connection)
        return True

    def clone_url(self, protocol: str = 'HTTPS') -> str:
        repo = self.connection.selected_repository if self.connection else None
        if repo is None:
            return ''
        if protocol == 'SSH':
            return repo.ssh_url
        if protocol == 'GitHub CLI':
            return f"gh repo clone {repo.full_name}"
        return repo.clone_url

    def _announce(self, connection: Connection) -> None:
        if self.on_connect and connection.selected_repository:
            self.on_connect(connection.username, connection.selected_repository.clone_url)

    # -- plumbing ----------------------------------------------------------

    async def _wait_closed(self, attempt: _Attempt, popup: Window) -> bool:
        """Poll until `popup` closes. False when the attempt ended meanwhile."""
        loop = asyncio.get_running_loop()
        timeout = self.settings.popup_timeout
        deadline = loop.time() + timeout if timeout and timeout > 0 else None
        while not popup.closed:
            if attempt.finished:
                return False
            if deadline is not None and loop.time() >= deadline and not attempt.received:
                self._expire(attempt)
                return False
            await asyncio.sleep(self.poll_interval)
        return not attempt.finished

    def _expire(self, attempt: _Attempt) -> None:
        for listener in list(attempt.listeners):
            self._unlisten(attempt, listener)
        self._close_popup(attempt)
        self.session.clear()
        self.notify("Authorization Timed Out",
                    "The GitHub connection was not completed in time.", 'destructive')
        self._finish(attempt, AttemptOutcome.TIMED_OUT)

    def _abandon_attempt(self) -> None:
        attempt = self._attempt
        if attempt is None or attempt.finished:
            return
        logger.info("Superseding unfinished GitHub connection attempt")
        for task in attempt.tasks:
            task.cancel()
        for listener in list(attempt.listeners):
            self._unlisten(attempt, listener)
        self._close_popup(attempt)
        self._finish(attempt, AttemptOutcome.SUPERSEDED)

    def _listen(self, attempt: _Attempt, listener) -> None:
        attempt.listeners.append(listener)
        self.window.add_message_listener(listener)

    def _unlisten(self, attempt: _Attempt, listener) -> None:
        if listener in attempt.listeners:
            attempt.listeners.remove(listener)
        self.window.remove_message_listener(listener)

    def _spawn(self, attempt: _Attempt, coro) -> None:
        attempt.tasks.append(asyncio.ensure_future(coro))

    @staticmethod
    def _close_popup(attempt: _Attempt) -> None:
        if attempt.popup is not None:
            attempt.popup.close()

    @staticmethod
    def _finish(attempt: _Attempt, outcome: AttemptOutcome) -> None:
        if attempt.outcome is None:
            attempt.outcome = outcome
            attempt.done.set()
