import os
import tempfile
from typing import Dict, List, Optional

import httpx
import pytest

# keep the server module's durable store out of the repository
os.environ.setdefault('CONNECTION_STORE', os.path.join(tempfile.mkdtemp(), 'github_connection.json'))

from github_connect.config import ClientSettings
from github_connect.models import BrokerResponse, GitHubUser, Repository
from github_connect.notifications import ToastLog
from github_connect.orchestrator import PopupOrchestrator
from github_connect.storage import ConnectionStore, JsonFileStorage, MemoryStorage, SessionStore
from github_connect.windows import Window

ORIGIN = 'http://127.0.0.1:8000'


def make_repo(full_name: str, repo_id: int = 1, **extra) -> Dict:
    owner, name = full_name.split('/')
    repo = {
        'id': repo_id,
        'name': name,
        'full_name': full_name,
        'clone_url': f'https://github.com/{full_name}.git',
        'ssh_url': f'git@github.com:{full_name}.git',
        'html_url': f'https://github.com/{full_name}',
        'private': False,
        'description': None,
        'updated_at': '2024-05-01T10:00:00Z',
        'default_branch': 'main',
    }
    repo.update(extra)
    return repo


class FakeLauncher:
    def __init__(self, opener: Window):
        self.opener = opener
        self.opened: List[Dict] = []
        self.popups: List[Window] = []
        self.blocked = False

    def open(self, url, name, features=''):
        self.opened.append({'url': url, 'name': name, 'features': features})
        if self.blocked:
            return None
        popup = Window(origin=self.opener.origin, url=url, opener=self.opener, name=name)
        self.popups.append(popup)
        return popup

    @property
    def last_popup(self) -> Optional[Window]:
        return self.popups[-1] if self.popups else None


class FakeBroker:
    def __init__(self, repositories=None, error: Optional[Exception] = None, config=None):
        self.repositories = repositories if repositories is not None else [make_repo('octo/alpha', 1), make_repo('octo/beta', 2)]
        self.error = error
        self.config = config or {}
        self.calls: List[Dict] = []

    async def get_client_config(self):
        if isinstance(self.config, Exception):
            raise self.config
        return self.config

    async def exchange(self, code, installation_id=None):
        self.calls.append({'code': code, 'installation_id': installation_id})
        if self.error:
            raise self.error
        return BrokerResponse(
            access_token='gho_test_token',
            user=GitHubUser(login='octocat', name='The Octocat'),
            repositories=[Repository.model_validate(r) for r in self.repositories],
        )


class GitHubStub:
    """httpx transport answering like GitHub; records every request path."""

    def __init__(self, token_body=None, token_status=200, installations=None,
                 installation_repos=None, user_repos=None, installation_status=200, user=None):
        self.token_body = token_body if token_body is not None else {'access_token': 'gho_abc', 'token_type': 'bearer'}
        self.token_status = token_status
        self.installations = installations if installations is not None else []
        self.installation_repos = installation_repos if installation_repos is not None else {}
        self.installation_status = installation_status
        self.user = user if user is not None else {'login': 'octocat', 'name': 'The Octocat', 'avatar_url': 'https://avatars/1'}
        self.user_repos = user_repos if user_repos is not None else []
        self.requests: List[httpx.Request] = []

    @property
    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == '/login/oauth/access_token':
            return httpx.Response(self.token_status, json=self.token_body)
        if path == '/user':
            return httpx.Response(200, json=self.user)
        if path == '/user/installations':
            return httpx.Response(200, json={'total_count': len(self.installations), 'installations': self.installations})
        if path.startswith('/user/installations/') and path.endswith('/repositories'):
            if self.installation_status != 200:
                return httpx.Response(self.installation_status, json={'message': 'Not Found'})
            inst_id = path.split('/')[3]
            repos = self.installation_repos.get(inst_id, [])
            return httpx.Response(200, json={'total_count': len(repos), 'repositories': repos})
        if path == '/user/repos':
            return httpx.Response(200, json=self.user_repos)
        return httpx.Response(404, json={'message': 'Not Found'})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def main_window():
    return Window(origin=ORIGIN, url='/')


@pytest.fixture
def launcher(main_window):
    return FakeLauncher(main_window)


@pytest.fixture
def session():
    return SessionStore(MemoryStorage())


@pytest.fixture
def connections(tmp_path):
    return ConnectionStore(JsonFileStorage(tmp_path / 'connection.json'))


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def toasts():
    return ToastLog()


@pytest.fixture
def client_settings(tmp_path):
    return ClientSettings(
        client_id='Iv1.public',
        app_slug='qa-ide',
        origin=ORIGIN,
        popup_timeout=0,
        connection_store=tmp_path / 'connection.json',
    )


@pytest.fixture
def orchestrator(client_settings, main_window, launcher, session, connections, broker, toasts):
    return PopupOrchestrator(
        client_settings, main_window, launcher, session, connections, broker, toasts,
        poll_interval=0.01,
    )
