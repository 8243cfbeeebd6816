"""Error taxonomy for exec authorization."""


class ExecError(Exception):
    """Base class for every failure that ends a run request."""

    code = "UNAVAILABLE"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(ExecError):
    """Malformed input, rejected before any policy evaluation."""

    code = "INVALID_REQUEST"


class AnalysisFailed(ExecError):
    """Wrapper or shell parsing could not establish a safe interpretation."""


class PolicyDenied(ExecError):
    """The decision function (or a remote exec host) refused the run."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class ExecutionPathDenied(ExecError):
    """Hardening rejected the cwd or executable path."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


class CompanionUnavailable(ExecError):
    """The exec host could not be reached."""


class ApprovalTimeout(ExecError):
    """No approval decision arrived within the bound."""
