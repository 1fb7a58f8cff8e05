"""Exception hierarchy for the event pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransportError(PipelineError):
    """Broker unreachable, connection closed, or a commit/publish failed."""


class SerializationError(PipelineError):
    """A value could not be encoded to or decoded from its wire form."""


class SinkError(PipelineError):
    """Write or read failure against the analytical store."""


class PoisonMessageError(PipelineError):
    """Payload is structurally invalid and can never be processed."""


class MessageSettledError(PipelineError):
    """A message was acknowledged or rejected more than once."""
