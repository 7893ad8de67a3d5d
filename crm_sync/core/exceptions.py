"""Service-level errors surfaced to API callers."""


class ServiceError(Exception):
    """Base class for errors returned to the caller as 4xx."""
    pass


class ValidationError(ServiceError):
    """Configuration input is invalid; the message is shown to the user."""
    pass


class UnsupportedProviderError(ServiceError):
    """Unknown provider key."""

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class NotConfiguredError(ServiceError):
    """No credentials stored for the company and provider."""

    def __init__(self, provider: str):
        super().__init__(f"{provider} integration is not configured")
        self.provider = provider


class ConflictError(ServiceError):
    """A sync run is already active for the company and provider."""

    def __init__(self, provider: str, run_id: str):
        super().__init__(f"A {provider} sync is already running (run {run_id})")
        self.provider = provider
        self.run_id = run_id


class RunNotFoundError(ServiceError):
    """Unknown sync run id."""

    def __init__(self, run_id: str):
        super().__init__(f"Sync run {run_id} not found")
        self.run_id = run_id


class CredentialsUnreadableError(ServiceError):
    """Stored credentials no longer decrypt with the configured key."""

    def __init__(self, provider: str):
        super().__init__(
            f"Stored {provider} credentials could not be read; reconfigure the integration"
        )
        self.provider = provider
