class GitHubConnectError(Exception):
    """Base error for the GitHub connection flow."""


class ConfigurationError(GitHubConnectError):
    """Client id, client secret or app slug missing."""


class ProviderError(GitHubConnectError):
    """GitHub returned a non-success status or an error body."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BrokerError(GitHubConnectError):
    """The authorization broker answered with an `{error}` payload."""
