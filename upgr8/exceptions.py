"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class Upgr8Error(Exception):
    """Base class for all upgr8 exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should block forward
        progress until the resource is edited
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class Upgr8FatalError(Upgr8Error):
    """An Upgr8FatalError is one that indicates an unexpected, and likely
    unrecoverable, failure during a reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(Upgr8FatalError):
    """Exception caused by an invalid upgradeStrategy or other user-provided
    configuration. The same input will never succeed, so it is not retried.
    """


class ClusterError(Upgr8FatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


## Expected Errors #############################################################


class Upgr8ExpectedError(Upgr8Error):
    """An Upgr8ExpectedError is one that indicates an expected failure condition
    that should cause a reconciliation to terminate, but is expected to resolve
    in a subsequent reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class PreconditionError(Upgr8ExpectedError):
    """Exception caused when an expected precondition is not met"""


class StatusConflictError(Upgr8ExpectedError):
    """Exception raised when a status write is based on a stale read of the
    resource. The writer must re-read and retry.
    """

    def __init__(self, message: str = "", version_token: str = None):
        self.version_token = version_token
        super().__init__(message)


## Assertions ##################################################################


def assert_precondition(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a PreconditionError"""
    if not condition:
        raise PreconditionError(message)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when parsing the ManagedApplication spec.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as creating a Job) must
    succeed.
    """
    if not condition:
        raise ClusterError(message)
