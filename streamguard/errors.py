class StreamGuardError(Exception):
    """Base class of every error raised by streamguard."""


class RuleConfigError(StreamGuardError):
    """A rule's condition tree or action list cannot be interpreted."""


class ViolationPipelineError(StreamGuardError):
    """The violation transaction failed and was rolled back."""


class ProviderError(StreamGuardError):
    """A media server could not be reached or answered garbage."""


class ProviderTimeout(ProviderError):
    """A media server did not answer within the configured bound."""
