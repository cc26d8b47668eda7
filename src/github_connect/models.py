"""
Data shapes shared by the broker, the orchestrator and the callback page.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Repository(BaseModel):
    id: int
    name: str
    full_name: str
    clone_url: str
    ssh_url: str
    html_url: str
    private: bool = False
    description: Optional[str] = None
    updated_at: Optional[str] = None
    default_branch: str = 'main'

    @classmethod
    def from_github(cls, repo: dict) -> 'Repository':
        # GitHub sends null for description and sometimes default_branch
        return cls(
            id=repo['id'],
            name=repo['name'],
            full_name=repo['full_name'],
            clone_url=repo.get('clone_url') or '',
            ssh_url=repo.get('ssh_url') or '',
            html_url=repo.get('html_url') or '',
            private=bool(repo.get('private')),
            description=repo.get('description'),
            updated_at=repo.get('updated_at'),
            default_branch=repo.get('default_branch') or 'main',
        )


class GitHubUser(BaseModel):
    login: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class BrokerRequest(BaseModel):
    action: Optional[str] = None
    code: Optional[str] = None
    installation_id: Optional[str] = None

    model_config = ConfigDict(coerce_numbers_to_str=True)


class BrokerResponse(BaseModel):
    access_token: str
    user: GitHubUser
    repositories: List[Repository] = Field(default_factory=list)


class AuthorizationSession(BaseModel):
    state: str
    installation_id: Optional[str] = None


class Connection(BaseModel):
    access_token: str
    username: str
    repositories: List[Repository] = Field(default_factory=list)
    selected_repository: Optional[Repository] = None

    def find(self, full_name: str) -> Optional[Repository]:
        return next((r for r in self.repositories if r.full_name == full_name), None)


# Cross-window messages

class InstallationComplete(BaseModel):
    type: Literal['installation-complete'] = 'installation-complete'
    installation_id: str = Field(alias='installationId')

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class OAuthSuccess(BaseModel):
    type: Literal['oauth-success'] = 'oauth-success'
    code: str
    state: str
    search: str = ''


class OAuthError(BaseModel):
    type: Literal['oauth-error'] = 'oauth-error'
    error: Optional[str] = None


CrossWindowMessage = Annotated[
    Union[InstallationComplete, OAuthSuccess, OAuthError],
    Field(discriminator='type'),
]

_message_adapter = TypeAdapter(CrossWindowMessage)


def parse_message(data) -> Optional[Union[InstallationComplete, OAuthSuccess, OAuthError]]:
    """Return the typed message, or None for anything that is not one of ours."""
    if not isinstance(data, dict):
        return None
    try:
        return _message_adapter.validate_python(data)
    except ValidationError:
        return None


def dump_message(message: BaseModel) -> dict:
    return message.model_dump(by_alias=True)
