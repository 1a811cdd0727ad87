"""Exception types shared across aido."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid or missing configuration (credential, prompt, bad TOML)."""


class TransportError(AgentError):
    """Raised when the model endpoint cannot be reached or returns garbage."""


class RateLimitExhaustedError(TransportError):
    """Raised once the rate-limit retry budget is spent."""
