"""
Client-side storage: a session-scoped store for the in-flight authorization and
a durable JSON-file store for the established connection.

Both behave like the browser's Storage API: string keys, string values.
"""
import json
import logging
import os
import pathlib
from typing import Dict, Optional

from pydantic import TypeAdapter, ValidationError

from .models import AuthorizationSession, Connection, Repository

logger = logging.getLogger(__name__)

# session-scoped keys
STATE_KEY = 'github_oauth_state'
INSTALLATION_KEY = 'github_installation_id'

# durable keys
TOKEN_KEY = 'github_access_token'
USERNAME_KEY = 'github_username'
REPOSITORIES_KEY = 'github_repositories'
SELECTED_REPO_KEY = 'github_selected_repo'
CONNECTION_KEYS = (TOKEN_KEY, USERNAME_KEY, REPOSITORIES_KEY, SELECTED_REPO_KEY)

_repositories = TypeAdapter(list[Repository])


class MemoryStorage:
    """Session storage; lives as long as the process."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


class JsonFileStorage:
    """Durable storage backed by a single JSON object on disk."""

    def __init__(self, path):
        self.path = pathlib.Path(path)

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("Unreadable storage file %s, treating as empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def get(self, key: str) -> Optional[str]:
        val = self._read().get(key)
        return val if isinstance(val, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = str(value)
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def clear(self) -> None:
        self._write({})


class SessionStore:
    """The in-flight AuthorizationSession kept in session storage."""

    def __init__(self, storage):
        self.storage = storage

    def begin(self, state: str) -> None:
        # a new attempt overwrites whatever the previous one left behind
        self.storage.set(STATE_KEY, state)
        self.storage.remove(INSTALLATION_KEY)

    def load(self) -> Optional[AuthorizationSession]:
        state = self.storage.get(STATE_KEY)
        if not state:
            return None
        return AuthorizationSession(state=state, installation_id=self.storage.get(INSTALLATION_KEY) or None)

    @property
    def state(self) -> Optional[str]:
        return self.storage.get(STATE_KEY)

    @property
    def installation_id(self) -> Optional[str]:
        return self.storage.get(INSTALLATION_KEY) or None

    def record_installation(self, installation_id: str) -> None:
        self.storage.set(INSTALLATION_KEY, installation_id)

    def clear(self) -> None:
        self.storage.remove(STATE_KEY)
        self.storage.remove(INSTALLATION_KEY)


class ConnectionStore:
    """Persists a Connection as four durable keys, all or nothing."""

    def __init__(self, storage):
        self.storage = storage

    def save(self, connection: Connection) -> None:
        selected = connection.selected_repository.full_name if connection.selected_repository else ''
        self.storage.set(TOKEN_KEY, connection.access_token)
        self.storage.set(USERNAME_KEY, connection.username)
        self.storage.set(REPOSITORIES_KEY, _repositories.dump_json(connection.repositories).decode('utf-8'))
        self.storage.set(SELECTED_REPO_KEY, selected)

    def save_selection(self, full_name: str) -> None:
        self.storage.set(SELECTED_REPO_KEY, full_name)

    def load(self) -> Optional[Connection]:
        """
        Rebuild the Connection, or None. Anything partial or corrupt counts as
        absent and is purged so the next load starts clean.
        """
        values = {k: self.storage.get(k) for k in CONNECTION_KEYS}
        if all(v is None for v in values.values()):
            return None
        connection = self._parse(values)
        if connection is None:
            logger.warning("Discarding incomplete or corrupt stored GitHub connection")
            self.clear()
        return connection

    def _parse(self, values: Dict[str, Optional[str]]) -> Optional[Connection]:
        if any(v is None for v in values.values()):
            return None
        if not values[TOKEN_KEY] or not values[USERNAME_KEY]:
            return None
        try:
            repos = _repositories.validate_json(values[REPOSITORIES_KEY])
        except ValidationError:
            return None

        selected_name = values[SELECTED_REPO_KEY]
        selected = next((r for r in repos if r.full_name == selected_name), None)
        if repos and selected is None:
            return None
        if not repos and selected_name:
            return None
        return Connection(
            access_token=values[TOKEN_KEY],
            username=values[USERNAME_KEY],
            repositories=repos,
            selected_repository=selected,
        )

    def clear(self) -> None:
        for key in CONNECTION_KEYS:
            self.storage.remove(key)
