"""Guardian custodian workflow: time-locked operations, meta-transactions and Safe bridging."""

__version__ = "0.1.0"

from .config import MetaTxSettings, WorkflowSettings, get_settings
from .exceptions import (
    AlreadyTerminalError,
    CoordinationServiceError,
    ExpiredError,
    GasPriceExceededError,
    InvalidDataError,
    InvalidSignatureError,
    LedgerRevertError,
    LedgerUnavailableError,
    NotBroadcasterError,
    NotFoundError,
    PreconditionFailedError,
    RoleDeniedError,
    SerializationError,
    StorageFullError,
    StoreError,
    TooEarlyError,
    WorkflowException,
)
from .ledger import LedgerClient, Receipt
from .logging_utils import WorkflowLogger, get_workflow_logger, setup_logging
from .meta_tx import (
    LocalAccountSigner,
    MetaTransaction,
    MetaTxAction,
    MetaTxParams,
    SignerIdentity,
)
from .multisig import (
    AuthorizationTracking,
    ConfirmationStatus,
    MultisigAggregator,
    MultisigPendingTx,
    assemble_signatures,
    confirmation_status,
    to_canonical_operation,
)
from .providers import Authorization, MetaTxProvider, TimelockProvider
from .registry import (
    EXEC_SAFE_TX,
    EXPECTED_OPERATION_TYPES,
    OperationType,
    OperationTypeRegistry,
    Phase,
    Role,
    WorkflowType,
)
from .relay import ExecutionResult, MetaTxRelay
from .safe_service import SafeTransactionServiceClient
from .simulated import SimulatedLedger
from .store import (
    FileStorageBackend,
    MemoryStorageBackend,
    SignedTransactionStore,
    StoredSignedTransaction,
)
from .workflow import OperationRecord, TemporalWorkflow, TxStatus

__all__ = [
    "__version__",
    # Config
    "WorkflowSettings",
    "MetaTxSettings",
    "get_settings",
    # Errors
    "WorkflowException",
    "RoleDeniedError",
    "NotBroadcasterError",
    "TooEarlyError",
    "PreconditionFailedError",
    "InvalidSignatureError",
    "ExpiredError",
    "GasPriceExceededError",
    "NotFoundError",
    "AlreadyTerminalError",
    "StoreError",
    "StorageFullError",
    "SerializationError",
    "InvalidDataError",
    "CoordinationServiceError",
    "LedgerUnavailableError",
    "LedgerRevertError",
    # Ledger
    "LedgerClient",
    "Receipt",
    "SimulatedLedger",
    # Logging
    "WorkflowLogger",
    "get_workflow_logger",
    "setup_logging",
    # Registry
    "Role",
    "Phase",
    "WorkflowType",
    "OperationType",
    "OperationTypeRegistry",
    "EXEC_SAFE_TX",
    "EXPECTED_OPERATION_TYPES",
    # Workflow
    "TxStatus",
    "OperationRecord",
    "TemporalWorkflow",
    # Meta-transactions
    "MetaTxAction",
    "MetaTxParams",
    "MetaTransaction",
    "SignerIdentity",
    "LocalAccountSigner",
    "MetaTxRelay",
    "ExecutionResult",
    # Store
    "SignedTransactionStore",
    "StoredSignedTransaction",
    "MemoryStorageBackend",
    "FileStorageBackend",
    # Providers
    "Authorization",
    "TimelockProvider",
    "MetaTxProvider",
    # Multisig
    "SafeTransactionServiceClient",
    "MultisigAggregator",
    "MultisigPendingTx",
    "ConfirmationStatus",
    "AuthorizationTracking",
    "confirmation_status",
    "assemble_signatures",
    "to_canonical_operation",
]
