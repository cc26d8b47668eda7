"""
Thin async client for the handful of GitHub endpoints the broker needs.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

GITHUB_URL = 'https://github.com'
GITHUB_API_URL = 'https://api.github.com'
TOKEN_URL = f'{GITHUB_URL}/login/oauth/access_token'
API_ACCEPT = 'application/vnd.github.v3+json'


class GitHubClient:
    """One instance per broker request; close it (or use `async with`) when done."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> 'GitHubClient':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def exchange_code(self, client_id: str, client_secret: str, code: str) -> str:
        try:
            resp = await self._client.post(
                TOKEN_URL,
                headers={'Accept': 'application/json', 'Content-Type': 'application/json'},
                json={'client_id': client_id, 'client_secret': client_secret, 'code': code},
            )
        except httpx.RequestError as e:
            raise ProviderError(f'GitHub token endpoint unreachable: {e}') from e

        if resp.status_code >= 400:
            logger.error("Token exchange failed (%s): %s", resp.status_code, resp.text[:500])
            raise ProviderError('Failed to exchange code for token', resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError('GitHub token endpoint returned invalid JSON', resp.status_code) from e

        # GitHub reports bad/expired codes with a 200 and an error body
        if data.get('error'):
            logger.error("GitHub OAuth error: %s", data.get('error'))
            raise ProviderError(data.get('error_description') or data['error'], resp.status_code)

        token = data.get('access_token')
        if not token:
            raise ProviderError('GitHub did not return an access token', resp.status_code)
        return token

    async def _get(self, token: str, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self._client.get(
                f'{GITHUB_API_URL}{path}',
                headers={'Authorization': f'Bearer {token}', 'Accept': API_ACCEPT},
                params=params,
            )
        except httpx.RequestError as e:
            raise ProviderError(f'Failed to fetch {what}: {e}') from e
        if resp.status_code >= 400:
            raise ProviderError(f'Failed to fetch {what}', resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f'Failed to fetch {what}: invalid JSON', resp.status_code) from e

    async def get_user(self, token: str) -> Dict[str, Any]:
        return await self._get(token, '/user', 'user information')

    async def list_user_installations(self, token: str) -> List[Dict[str, Any]]:
        data = await self._get(token, '/user/installations', 'installations')
        return data.get('installations') or []

    async def list_installation_repositories(self, token: str, installation_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            token, f'/user/installations/{installation_id}/repositories',
            'installation repositories', params={'per_page': 100},
        )
        return data.get('repositories') or []

    async def list_user_repositories(self, token: str) -> List[Dict[str, Any]]:
        data = await self._get(token, '/user/repos', 'repositories', params={'per_page': 100, 'sort': 'updated'})
        return data if isinstance(data, list) else []
