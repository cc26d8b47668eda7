import os
import pathlib
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
load_dotenv(REPO_ROOT / '.env')

DEFAULT_ORIGIN = 'http://127.0.0.1:8000'


def _env(key: str) -> Optional[str]:
    val = os.environ.get(key)
    if val and val.strip():
        return val.strip()
    return None


class BrokerSettings(BaseModel):
    """Server-side settings. The client secret lives only here."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    app_slug: Optional[str] = None
    http_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'BrokerSettings':
        return cls(
            client_id=_env('GITHUB_CLIENT_ID'),
            client_secret=_env('GITHUB_CLIENT_SECRET'),
            app_slug=_env('GITHUB_APP_SLUG'),
            http_timeout=float(_env('GITHUB_HTTP_TIMEOUT') or 30),
        )


class ClientSettings(BaseModel):
    """Settings visible to the initiating side. Public values only."""
    client_id: Optional[str] = None
    app_slug: Optional[str] = None
    origin: str = DEFAULT_ORIGIN
    broker_url: Optional[str] = None
    popup_timeout: float = Field(600.0, description="seconds; 0 waits forever")
    connection_store: pathlib.Path = REPO_ROOT / 'data' / 'github_connection.json'

    @property
    def redirect_uri(self) -> str:
        return f"{self.origin.rstrip('/')}/github/callback"

    @property
    def resolved_broker_url(self) -> str:
        return self.broker_url or f"{self.origin.rstrip('/')}/functions/github-oauth"

    @classmethod
    def from_env(cls) -> 'ClientSettings':
        store = _env('CONNECTION_STORE')
        return cls(
            client_id=_env('PUBLIC_GITHUB_CLIENT_ID'),
            app_slug=_env('PUBLIC_GITHUB_APP_SLUG'),
            origin=_env('APP_ORIGIN') or DEFAULT_ORIGIN,
            broker_url=_env('BROKER_URL'),
            popup_timeout=float(_env('GITHUB_POPUP_TIMEOUT') or 600),
            connection_store=pathlib.Path(store) if store else REPO_ROOT / 'data' / 'github_connection.json',
        )
