# coding: utf8
"""
Describes exception classes used in pgfailover.
"""


class PgFailoverException(Exception):
    """
    Generic pgfailover exception.
    """

    pass


class ConnectivityError(PgFailoverException):
    """
    Network or authentication failure while reaching a node or the proxy.
    """

    def __init__(self, message, report=None):
        super().__init__(message)
        self.report = report


class PreconditionError(PgFailoverException):
    """
    Operation refused before anything was mutated.
    """

    def __init__(self, message, remediation=None):
        super().__init__(message)
        self.remediation = remediation


class StateConflictError(PgFailoverException):
    """
    Observed state diverges from the expected one.
    """

    pass


class IrreversibleStepError(PgFailoverException):
    """
    Failure during or after standby promotion. Rollback is impossible.
    """

    def __init__(self, message, remediation=None):
        super().__init__(message)
        self.remediation = remediation


class RunLockError(PgFailoverException):
    """
    Another failover run holds the lock for the same node pair.
    """

    pass


class RunRecordError(PgFailoverException):
    """
    Attempt to change a failover run record after its outcome was recorded.
    """

    pass
