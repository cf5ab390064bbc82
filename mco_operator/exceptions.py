"""Exceptions related to mco-operator."""

__all__ = [
    "OperatorException",
    "InputException",
    "RenderException",
    "ObjectNotFoundError",
    "ObjectAlreadyExistsError",
    "ConflictError",
    "TerminatingError",
    "BootstrapError",
    "InvalidObjectStorageConfig",
    "DistributionError",
]


class OperatorException(Exception):
    """Generic base exception used for this library."""


class InputException(OperatorException):
    """Raised when the input objects or values are not formatted as expected."""


class RenderException(InputException):
    """Raised when a template can't be loaded or rendered."""


class ObjectNotFoundError(OperatorException):
    """Raised when an object is not found in the store."""


class ObjectAlreadyExistsError(OperatorException):
    """Raised when creating an object that already exists in the store."""


class ConflictError(OperatorException):
    """Raised when a write is made against a stale resource version."""


class TerminatingError(OperatorException):
    """Raised when an object is being deleted and should be retried later."""


class BootstrapError(OperatorException):
    """Raised when a step of the access token bootstrap can't complete."""

    def __init__(self, cluster_namespace: str, step: str, reason: str) -> None:
        super().__init__(
            f"Access token bootstrap for {cluster_namespace} failed at {step}: {reason}"
        )
        self.cluster_namespace = cluster_namespace
        self.step = step
        self.reason = reason


class InvalidObjectStorageConfig(InputException):
    """Raised when the object storage configuration is not usable."""


class DistributionError(OperatorException):
    """Raised when distributing work to one or more clusters has failed."""

    def __init__(self, errors: dict[str, Exception]) -> None:
        details = ", ".join(f"{ns}: {err}" for ns, err in sorted(errors.items()))
        super().__init__(
            f"Failed to distribute work to {len(errors)} cluster(s): {details}"
        )
        self.errors = errors
