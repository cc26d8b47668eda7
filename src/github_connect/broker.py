"""
Authorization broker: stateless bridge between the browser side and GitHub.

Exchanges an OAuth code for a token, figures out which repositories the
connection can see and returns one normalized payload. Nothing is stored.
"""
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import BrokerSettings
from .errors import ConfigurationError, GitHubConnectError, ProviderError
from .github_client import GitHubClient
from .models import BrokerRequest, BrokerResponse, GitHubUser, Repository

logger = logging.getLogger(__name__)

GET_CLIENT_ID = 'get_client_id'


class AuthorizationBroker:

    def __init__(self, settings: BrokerSettings, client_factory: Optional[Callable[[], GitHubClient]] = None):
        self.settings = settings
        self._client_factory = client_factory or (lambda: GitHubClient(timeout=settings.http_timeout))

    async def handle(self, request: BrokerRequest) -> Dict:
        # anything but get_client_id is a code exchange
        if request.action == GET_CLIENT_ID:
            return self.client_config()
        if not request.code:
            raise GitHubConnectError('Authorization code is required')
        response = await self.exchange(request.code, request.installation_id)
        return response.model_dump()

    def client_config(self) -> Dict:
        # public values only, the secret never leaves the server
        return {'client_id': self.settings.client_id, 'app_slug': self.settings.app_slug}

    async def exchange(self, code: str, installation_id: Optional[str] = None) -> BrokerResponse:
        if not self.settings.client_id or not self.settings.client_secret:
            raise ConfigurationError('GitHub OAuth credentials not configured')

        async with self._client_factory() as github:
            logger.info("Exchanging code for access token")
            token = await github.exchange_code(self.settings.client_id, self.settings.client_secret, code)

            user_data = await github.get_user(token)
            try:
                user = GitHubUser(
                    login=user_data['login'],
                    name=user_data.get('name'),
                    avatar_url=user_data.get('avatar_url'),
                )
            except (KeyError, TypeError, AttributeError, ValidationError) as e:
                logger.error("Unexpected GitHub user payload: %r", e)
                raise ProviderError('GitHub returned an unexpected user payload') from e
            logger.info("Fetched user %s", user.login)

            repos = await self._resolve_repositories(github, token, installation_id)
            logger.info("Resolved %d repositories for %s", len(repos), user.login)

        try:
            repositories = [Repository.from_github(r) for r in repos]
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.error("Unexpected GitHub repository payload: %r", e)
            raise ProviderError('GitHub returned an unexpected repository payload') from e

        return BrokerResponse(access_token=token, user=user, repositories=repositories)

    async def _resolve_repositories(self, github: GitHubClient, token: str, installation_id: Optional[str]) -> List[Dict]:
        """
        Installation given -> its repositories. Otherwise pick one of the
        user's installations (matching app slug first). Nothing found, or the
        installation lookup failed -> the user's own repositories.
        """
        if not installation_id:
            installation_id = await self._pick_installation(github, token)

        repos: List[Dict] = []
        if installation_id:
            try:
                repos = await github.list_installation_repositories(token, installation_id)
            except ProviderError as e:
                logger.warning("Installation %s repositories unavailable: %s", installation_id, e)
                repos = []

        if not repos:
            repos = await github.list_user_repositories(token)
        return repos

    async def _pick_installation(self, github: GitHubClient, token: str) -> Optional[str]:
        try:
            installations = await github.list_user_installations(token)
        except ProviderError as e:
            logger.warning("Could not list installations: %s", e)
            return None
        if not installations:
            return None

        slug = self.settings.app_slug
        match = next((i for i in installations if slug and i.get('app_slug') == slug), None)
        chosen = match or installations[0]
        chosen_id = chosen.get('id')
        return str(chosen_id) if chosen_id is not None else None
