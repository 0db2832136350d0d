"""Cross-chain balance (CAB) gas-abstraction workflow for Kernel smart accounts."""

from .account import AccountProvisioner, SmartAccount, ValidatorConfig
from .config import CABConfig, ChainConfig, TokenInfo, TokenRegistry, load_token_registry
from .enrollment import EnrollmentController, EnrollmentState
from .errors import (
    BalanceQueryError,
    CABError,
    ConfigurationError,
    DoubleSubmissionError,
    EnrollmentQueryError,
    GateExhaustedError,
    QuoteError,
    ReceiptTimeoutError,
    RpcError,
    SubmissionError,
    TransportError,
)
from .models import Call, OperationReceipt, PreparedOperation
from .operations import AggregatedBalance, OperationBuilder
from .session import ChainSession, SessionFactory
from .signers import SignerIdentity
from .tracker import SubmissionState, SubmissionTracker
from .workflow import CABWorkflow, WorkflowResult

__all__ = [
    "AccountProvisioner",
    "AggregatedBalance",
    "BalanceQueryError",
    "CABConfig",
    "CABError",
    "CABWorkflow",
    "Call",
    "ChainConfig",
    "ChainSession",
    "ConfigurationError",
    "DoubleSubmissionError",
    "EnrollmentController",
    "EnrollmentQueryError",
    "EnrollmentState",
    "GateExhaustedError",
    "OperationBuilder",
    "OperationReceipt",
    "PreparedOperation",
    "QuoteError",
    "ReceiptTimeoutError",
    "RpcError",
    "SessionFactory",
    "SignerIdentity",
    "SmartAccount",
    "SubmissionError",
    "SubmissionState",
    "SubmissionTracker",
    "TokenInfo",
    "TokenRegistry",
    "TransportError",
    "ValidatorConfig",
    "WorkflowResult",
    "load_token_registry",
]
