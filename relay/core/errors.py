class RelayError(Exception):
    """Base class for all errors raised by the relay."""


class ConfigError(RelayError):
    """Required configuration is missing or malformed."""


class StartupVerificationError(RelayError):
    """A backend failed its live check at startup."""


class BackendError(RelayError):
    """A call to an external backend failed after all retries."""


class GenerationError(BackendError):
    pass


class SynthesisError(BackendError):
    pass


class ArtifactError(BackendError):
    """A temporary audio file is missing, empty or unreadable."""
