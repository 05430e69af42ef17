from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError,
    EndpointConnectionError,
    ReadTimeoutError,
)

if TYPE_CHECKING:
    from cumulus.teardown import TeardownReport

# Error codes AWS returns for throttling or temporary service trouble
TRANSIENT_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestThrottled",
        "RequestThrottledException",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "SlowDown",
        "InternalError",
        "InternalFailure",
        "InternalServerError",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServerException",
        "RequestTimeout",
        "RequestTimeoutException",
        "PriorRequestNotComplete",
    ]
)

NOT_FOUND_ERROR_CODES = frozenset(
    [
        "NoSuchKey",
        "NoSuchBucket",
        "NotFound",
        "404",
        "NoSuchEntity",
        "ResourceNotFoundException",
    ]
)

# Errors any boto3 call may raise
AWS_ERRORS = (ClientError, BotoCoreError)

DESTROY_HINT = (
    "Run the create again to resume, or run `cumulus cluster destroy {name}` "
    "to remove any resources that were partially created."
)


class CumulusError(Exception):
    """Base class of every error raised by cumulus."""


class ConfigurationError(CumulusError):
    """The desired state is invalid. Raised before any resource is touched."""


class ConflictError(CumulusError):
    pass


class LockHeldError(ConflictError):
    def __init__(self, cluster_name: str, holder: Optional[str] = None) -> None:
        message = f"Cluster '{cluster_name}' is locked by another operation"
        if holder:
            message = f"{message} ({holder})"
        super().__init__(message)
        self.cluster_name = cluster_name
        self.holder = holder


class ClusterExistsError(ConflictError):
    def __init__(self, cluster_name: str) -> None:
        super().__init__(f"Cluster '{cluster_name}' already exists in the state backend")
        self.cluster_name = cluster_name


class NotFoundError(CumulusError):
    pass


class StateNotFoundError(NotFoundError):
    def __init__(self, cluster_name: str, location: str = "") -> None:
        message = f"No state found for cluster '{cluster_name}'"
        if location:
            message = f"{message} at {location}"
        super().__init__(message)
        self.cluster_name = cluster_name


class ProviderError(CumulusError):
    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ProviderTransientError(ProviderError):
    """Network or throttling failure. Safe to retry."""


class ProviderFatalError(ProviderError):
    """Permission, quota or validation failure. Never retried."""


class ProvisioningError(ProviderFatalError):
    """
    A create workflow stopped part-way through.

    The resources created before the failure are kept in `resources` so the
    operator can inspect them. Nothing is rolled back automatically.
    """

    def __init__(
        self,
        cluster_name: str,
        phase: str,
        cause: BaseException,
        resources: Any = None,
    ) -> None:
        message = (
            f"Failed to create {phase} for cluster '{cluster_name}': {cause}. "
            + DESTROY_HINT.format(name=cluster_name)
        )
        super().__init__(message, getattr(cause, "code", None))
        self.cluster_name = cluster_name
        self.phase = phase
        self.cause = cause
        self.resources = resources


class WaitTimeoutError(CumulusError):
    def __init__(self, description: str, timeout: float) -> None:
        super().__init__(f"Timed out after {int(timeout)}s waiting for {description}")
        self.description = description
        self.timeout = timeout


class StateCorruptedError(CumulusError):
    def __init__(self, cluster_name: str, reason: str) -> None:
        super().__init__(f"State of cluster '{cluster_name}' is corrupted: {reason}")
        self.cluster_name = cluster_name


class PartialFailureError(CumulusError):
    def __init__(self, message: str, report: "TeardownReport") -> None:
        super().__init__(message)
        self.report = report


def error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def is_error_code(err: BaseException, *codes: str) -> bool:
    return isinstance(err, ClientError) and error_code(err) in codes


def from_client_error(err: BaseException, action: str) -> CumulusError:
    """
    Converts a botocore error into the matching cumulus error.

    The decision is made on the structured error code of the response, never on
    the error message.

    Args:
        err (BaseException): The error raised by a boto3 client.
        action (str): What was being done, used as the message prefix.

    Returns:
        CumulusError: The classified error. The caller is expected to raise it
        `from err`.
    """
    if isinstance(err, CumulusError):
        return err

    if isinstance(err, (EndpointConnectionError, ConnectionError, ReadTimeoutError)):
        return ProviderTransientError(f"{action}: {err}")

    if isinstance(err, ClientError):
        code = error_code(err)
        status = err.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = f"{action}: {err}"
        if code in TRANSIENT_ERROR_CODES or (status and int(status) >= 500):
            return ProviderTransientError(message, code)
        if code in NOT_FOUND_ERROR_CODES or code.endswith(".NotFound"):
            return NotFoundError(message)
        if code == "ConditionalCheckFailedException":
            return ConflictError(message)
        return ProviderFatalError(message, code)

    if isinstance(err, BotoCoreError):
        return ProviderFatalError(f"{action}: {err}")

    return ProviderFatalError(f"{action}: {err}")
