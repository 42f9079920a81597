"""
Error taxonomy shared by the resolver, the cache and the mutation engine.

Every error carries a ``kind`` and a ``retryable`` flag so that whatever drives
these subsystems (a reconcile loop, a queue worker, the HTTP service) can decide
between backing off and reporting a terminal failure without string matching.

    NotFoundError    dependency not available yet             retryable
    AccessError      auth, unreachable registry, bad access   retryable
    ValidationError  malformed input, schema, templates       terminal
    CacheError       push/fetch/delete against the cache      retryable
    CancelledError   caller cancelled or deadline exceeded    retryable
"""


class OCMError(Exception):
    """Base class for all expected failures."""

    kind = "error"
    retryable = False


class NotFoundError(OCMError):
    """A component, resource, blob or manifest does not exist (yet)."""

    kind = "not-found"
    retryable = True


class AccessError(OCMError):
    """Credentials, network or access specification prevented the fetch."""

    kind = "access"
    retryable = True


class ValidationError(OCMError):
    """The input is wrong and will stay wrong until someone changes it."""

    kind = "validation"
    retryable = False


class CacheError(OCMError):
    """The backing cache registry rejected or failed an operation."""

    kind = "cache"
    retryable = True


class CancelledError(OCMError):
    """The supplied context was cancelled or its deadline passed."""

    kind = "cancelled"
    retryable = True


class UnresolvedReferenceError(ValidationError):
    """A template expression refers to a name that does not exist."""

    def __init__(self, reference: str, node_path: str, message: str | None = None):
        self.reference = reference
        self.node_path = node_path
        super().__init__(message or f"unresolved reference '{reference}' at '{node_path}'")


class StageError(OCMError):
    """
    Wraps a failure with the mutation stage that produced it.

    The kind and retryability are taken from the wrapped error so callers can
    treat a StageError exactly like its cause.
    """

    def __init__(self, stage: str, cause: OCMError):
        self.stage = stage
        self.cause = cause
        self.kind = cause.kind
        self.retryable = cause.retryable
        super().__init__(f"{stage}: {cause}")
