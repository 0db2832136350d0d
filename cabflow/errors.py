"""Error taxonomy shared by every stage of the CAB workflow."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class CABError(RuntimeError):
    """Base class for workflow failures."""


class ConfigurationError(CABError):
    """Raised when credentials, endpoints or validator parameters are invalid."""

    def __init__(self, message: str, *, problems: Optional[Iterable[str]] = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class TransportError(CABError):
    """Raised when an RPC, bundler or aggregation endpoint cannot be reached."""

    def __init__(self, message: str, *, url: Optional[str] = None, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.code = code


class RpcError(CABError):
    """Raised when an endpoint answers with a JSON-RPC error object."""

    def __init__(self, message: str, *, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class EnrollmentQueryError(CABError):
    """Raised when enabling tokens or polling enabled chains fails."""


class BalanceQueryError(CABError):
    """Raised when the aggregated balance cannot be read."""


class QuoteError(CABError):
    """Raised when the aggregation service cannot price or sponsor a bundle."""


class SubmissionError(CABError):
    """Raised when a prepared operation is rejected at submission."""

    def __init__(self, message: str, *, simulation: bool = False) -> None:
        super().__init__(message)
        self.is_simulation_error = simulation


class DoubleSubmissionError(CABError):
    """Raised when the same prepared operation is handed to ``submit`` twice."""


class GateExhaustedError(CABError):
    """Raised when a wait loop runs out of attempts or its trigger closes."""


class ReceiptTimeoutError(CABError, TimeoutError):
    """Raised when no receipt was observed within the bound.

    The operation's on-chain fate is unknown at that point.
    """

    def __init__(self, user_op_hash: str, timeout: float) -> None:
        super().__init__(f"UserOperation {user_op_hash} not included within {timeout:.1f}s")
        self.user_op_hash = user_op_hash
        self.timeout = timeout
