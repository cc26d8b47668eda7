import pytest

from conftest import GitHubStub, make_repo
from github_connect.broker import AuthorizationBroker
from github_connect.config import BrokerSettings
from github_connect.errors import ConfigurationError, GitHubConnectError, ProviderError
from github_connect.github_client import GitHubClient
from github_connect.models import BrokerRequest

pytestmark = pytest.mark.asyncio


def _broker(stub: GitHubStub, **settings) -> AuthorizationBroker:
    values = {'client_id': 'Iv1.abc', 'client_secret': 'shh', 'app_slug': 'qa-ide'}
    values.update(settings)
    return AuthorizationBroker(
        BrokerSettings(**values),
        client_factory=lambda: GitHubClient(transport=stub.transport()),
    )


async def test_get_client_id_returns_public_values_only():
    broker = _broker(GitHubStub())
    data = await broker.handle(BrokerRequest(action='get_client_id'))
    assert data == {'client_id': 'Iv1.abc', 'app_slug': 'qa-ide'}
    assert 'shh' not in str(data)


async def test_installation_without_repositories_falls_back_to_user_repos():
    stub = GitHubStub(
        installation_repos={'42': []},
        user_repos=[make_repo('octo/own', 7)],
    )
    data = await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='42'))

    assert stub.paths == [
        '/login/oauth/access_token',
        '/user',
        '/user/installations/42/repositories',
        '/user/repos',
    ]
    assert [r['full_name'] for r in data['repositories']] == ['octo/own']
    assert data['access_token'] == 'gho_abc'
    assert data['user'] == {'login': 'octocat', 'name': 'The Octocat', 'avatar_url': 'https://avatars/1'}


async def test_installation_with_repositories_never_lists_user_repos():
    stub = GitHubStub(installation_repos={'42': [make_repo('org/a', 1), make_repo('org/b', 2)]})
    data = await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='42'))

    assert '/user/repos' not in stub.paths
    assert '/user/installations' not in stub.paths
    assert [r['full_name'] for r in data['repositories']] == ['org/a', 'org/b']


async def test_user_repos_request_is_paginated_and_sorted():
    stub = GitHubStub(user_repos=[make_repo('octo/own')])
    await _broker(stub, app_slug=None).handle(BrokerRequest(code='abc123'))
    repos_request = stub.requests[-1]
    assert repos_request.url.path == '/user/repos'
    assert repos_request.url.params['per_page'] == '100'
    assert repos_request.url.params['sort'] == 'updated'


async def test_picks_installation_matching_app_slug():
    stub = GitHubStub(
        installations=[{'id': 1, 'app_slug': 'other-app'}, {'id': 2, 'app_slug': 'qa-ide'}],
        installation_repos={'2': [make_repo('org/picked')]},
    )
    data = await _broker(stub).handle(BrokerRequest(code='abc123'))
    assert '/user/installations/2/repositories' in stub.paths
    assert [r['full_name'] for r in data['repositories']] == ['org/picked']


async def test_picks_first_installation_without_slug_match():
    stub = GitHubStub(
        installations=[{'id': 5, 'app_slug': 'x'}, {'id': 6, 'app_slug': 'y'}],
        installation_repos={'5': [make_repo('org/first')]},
    )
    data = await _broker(stub).handle(BrokerRequest(code='abc123'))
    assert [r['full_name'] for r in data['repositories']] == ['org/first']


async def test_failed_installation_lookup_falls_back_to_user_repos():
    stub = GitHubStub(installation_status=404, user_repos=[make_repo('octo/own')])
    data = await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='99'))
    assert stub.paths[-1] == '/user/repos'
    assert len(data['repositories']) == 1


async def test_numeric_installation_id_is_accepted():
    stub = GitHubStub(installation_repos={'42': [make_repo('org/a')]})
    request = BrokerRequest.model_validate({'code': 'abc123', 'installation_id': 42})
    data = await _broker(stub).handle(request)
    assert data['repositories'][0]['full_name'] == 'org/a'


async def test_repository_payload_shape():
    stub = GitHubStub(installation_repos={'42': [make_repo('org/a', 3, private=True, default_branch='develop')]})
    data = await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='42'))
    assert set(data['repositories'][0]) == {
        'id', 'name', 'full_name', 'clone_url', 'ssh_url', 'html_url',
        'private', 'description', 'updated_at', 'default_branch',
    }
    assert data['repositories'][0]['private'] is True
    assert data['repositories'][0]['default_branch'] == 'develop'


async def test_provider_error_body_is_a_hard_failure():
    stub = GitHubStub(token_body={'error': 'bad_verification_code',
                                  'error_description': 'The code passed is incorrect or expired.'})
    with pytest.raises(ProviderError, match='incorrect or expired'):
        await _broker(stub).handle(BrokerRequest(code='stale'))
    assert stub.paths == ['/login/oauth/access_token']


async def test_non_success_token_status_fails():
    stub = GitHubStub(token_status=500, token_body={})
    with pytest.raises(ProviderError, match='Failed to exchange code for token'):
        await _broker(stub).handle(BrokerRequest(code='abc123'))


async def test_missing_secret_is_a_configuration_error():
    stub = GitHubStub()
    with pytest.raises(ConfigurationError):
        await _broker(stub, client_secret=None).handle(BrokerRequest(code='abc123'))
    assert stub.requests == []


async def test_code_is_required():
    with pytest.raises(GitHubConnectError, match='Authorization code is required'):
        await _broker(GitHubStub()).handle(BrokerRequest())


async def test_exchange_action_runs_the_exchange():
    stub = GitHubStub(installation_repos={'42': [make_repo('org/a', 1)]})
    data = await _broker(stub).handle(BrokerRequest(action='exchange', code='abc123', installation_id='42'))
    assert data['access_token'] == 'gho_abc'
    assert [r['full_name'] for r in data['repositories']] == ['org/a']


async def test_user_without_login_is_a_provider_error():
    stub = GitHubStub(user={'name': 'No Login'}, installation_repos={'42': [make_repo('org/a', 1)]})
    with pytest.raises(ProviderError, match='unexpected user payload'):
        await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='42'))


async def test_repository_without_id_is_a_provider_error():
    broken = make_repo('org/a', 1)
    del broken['id']
    stub = GitHubStub(installation_repos={'42': [broken]})
    with pytest.raises(ProviderError, match='unexpected repository payload'):
        await _broker(stub).handle(BrokerRequest(code='abc123', installation_id='42'))


async def test_installation_without_id_falls_back_to_user_repos():
    stub = GitHubStub(installations=[{'app_slug': 'qa-ide'}], user_repos=[make_repo('octo/own', 7)])
    data = await _broker(stub).handle(BrokerRequest(code='abc123'))
    assert stub.paths[-1] == '/user/repos'
    assert [r['full_name'] for r in data['repositories']] == ['octo/own']
