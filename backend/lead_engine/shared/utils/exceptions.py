"""
Custom Exceptions for the Lead Engine.

Scheduling and dispatch failures are recorded on the Sequence Run and the
Message Log rather than thrown at a caller; these exceptions carry the
classification between layers.
"""
from typing import Optional


class ClaimLostError(Exception):
    """
    Raised when an optimistic claim or update on a Sequence Run matches no row.

    Another worker changed the run first (version bumped), or the run left
    ACTIVE (paused, cancelled) after it was read.

    Example:
        Worker A reads Run #42 (version=3)
        Worker B reads Run #42 (version=3)
        Worker A claims Run #42 -> version becomes 4
        Worker B claims Run #42 with version=3 -> ClaimLostError

    Recovery:
        Benign. The losing worker abandons the run for this tick.
    """
    def __init__(self, run_id: int, message: str = None):
        self.run_id = run_id
        self.message = message or f"SequenceRun with ID {run_id} was claimed or modified by another worker."
        super().__init__(self.message)


class ConflictError(Exception):
    """Raised when an ACTIVE run already exists for a (lead, sequence) pair."""
    def __init__(self, entity_type: str, key: str, message: str = None):
        self.entity_type = entity_type
        self.key = key
        self.message = message or f"An active {entity_type} already exists for {key}."
        super().__init__(self.message)


class EntityNotFoundError(Exception):
    """
    Raised when a requested entity does not exist in the database.
    """
    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.message = f"{entity_type} with ID {entity_id} not found."
        super().__init__(self.message)


class RenderError(Exception):
    """Template could not be rendered. Terminal for the step, never retried."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class MissingVariableError(RenderError):
    """A {{placeholder}} in the template has no binding."""
    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Missing value for template variable '{variable}'")


class ProviderError(Exception):
    """Base class for classified WhatsApp provider failures."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class TransientProviderError(ProviderError):
    """
    Retryable failure: network timeout, connection error, 5xx, provider throttling (429).
    The dispatcher retries with backoff up to the configured max attempts.
    """
    pass


class PermanentProviderError(ProviderError):
    """
    Failure that cannot succeed on retry: invalid recipient, revoked credentials,
    malformed request. Halts the Sequence Run.
    """
    pass


class WebhookPayloadError(Exception):
    """Provider callback payload is malformed or not recognised."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class InvalidTransitionError(Exception):
    """Message Log status move that would regress or skip the state machine."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        self.message = f"Illegal message status transition {current} -> {target}"
        super().__init__(self.message)
