"""nodeflow - durable workflow automation over entity events"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import NodeFlow
from .core.models.config import (
    AppConfig,
    BreakerConfig,
    DispatcherConfig,
    EngineConfig,
    PostgresConfig,
    RetryBackoffConfig,
)
from .core.models.graph import (
    CircuitSpec,
    ConditionOperator,
    ConditionSpec,
    Edge,
    NodeSpec,
    TriggerSpec,
    WorkflowDefinition,
)
from .core.models.execution import (
    EntityEvent,
    Execution,
    ExecutionStep,
    ExecutionView,
    NotificationRecord,
    TriggerContext,
)
from .core.types.status import (
    CircuitState,
    ExecutionStatus,
    NotificationChannel,
    NotificationStatus,
    ResumeResult,
    StepStatus,
    TriggerOperation,
    EXECUTION_TERMINAL_STATES,
)
from .core.nodes.outcomes import (
    BreakerDenied,
    Completed,
    Fatal,
    NodeError,
    NodeOutcome,
    Retryable,
    Suspend,
)
from .core.nodes.context import NodeContext, NodeServices
from .core.nodes.registry import NodeRegistry
from .core.nodes.handlers import builtin_registry
from .core.collaborators import (
    AIClient,
    NotificationProvider,
    RecordStore,
    ScriptRunner,
    UpdateResult,
)
from .core.exceptions import (
    CancelledByUser,
    CircuitOpenError,
    ExecutionErrorCode,
    LoopLimitExceeded,
    NodeExecutionError,
    NodeValidationError,
    RecordConflictError,
    RetryBudgetExhausted,
    TransientIOError,
)
from .core.errors import (
    ConfigurationError,
    ErrorCode,
    MultipleValidationErrors,
    NodeflowError,
    ValidationReport,
    WorkflowValidationError,
)
from .core.exception_mapper import ExceptionMapper

__all__ = [
    # Core
    'NodeFlow',
    'AppConfig',
    'PostgresConfig',
    'EngineConfig',
    'RetryBackoffConfig',
    'BreakerConfig',
    'DispatcherConfig',
    # Definitions
    'WorkflowDefinition',
    'NodeSpec',
    'Edge',
    'TriggerSpec',
    'ConditionSpec',
    'ConditionOperator',
    'CircuitSpec',
    # Runtime records
    'EntityEvent',
    'TriggerContext',
    'Execution',
    'ExecutionStep',
    'ExecutionView',
    'NotificationRecord',
    'ExecutionStatus',
    'StepStatus',
    'CircuitState',
    'NotificationChannel',
    'NotificationStatus',
    'TriggerOperation',
    'ResumeResult',
    'EXECUTION_TERMINAL_STATES',
    # Node handlers
    'NodeRegistry',
    'builtin_registry',
    'NodeContext',
    'NodeServices',
    'NodeOutcome',
    'Completed',
    'Suspend',
    'Retryable',
    'Fatal',
    'BreakerDenied',
    'NodeError',
    # Collaborators
    'RecordStore',
    'NotificationProvider',
    'AIClient',
    'ScriptRunner',
    'UpdateResult',
    # Runtime errors
    'ExecutionErrorCode',
    'NodeExecutionError',
    'NodeValidationError',
    'TransientIOError',
    'RecordConflictError',
    'CircuitOpenError',
    'LoopLimitExceeded',
    'RetryBudgetExhausted',
    'CancelledByUser',
    # Definition/config errors
    'NodeflowError',
    'ErrorCode',
    'ConfigurationError',
    'WorkflowValidationError',
    'ValidationReport',
    'MultipleValidationErrors',
    'ExceptionMapper',
]
