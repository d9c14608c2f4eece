# nodeflow/core/nodes/executor.py
from __future__ import annotations

import asyncio

import httpx
from pydantic import ValidationError

from nodeflow.core.exception_mapper import resolve_exception_error_code
from nodeflow.core.exceptions import (
    CircuitOpenError,
    ExecutionErrorCode,
    NodeExecutionError,
)
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import EngineConfig
from nodeflow.core.models.graph import CircuitSpec, NodeSpec
from nodeflow.core.nodes.context import NodeContext
from nodeflow.core.nodes.outcomes import (
    NODE_OUTCOME_TYPES,
    BreakerDenied,
    Fatal,
    NodeError,
    NodeOutcome,
    Retryable,
)
from nodeflow.core.nodes.registry import NodeRegistry
from nodeflow.core.utils.db import is_retryable_connection_error


class StepExecutor:
    """
    Runs one node and classifies whatever happens into a NodeOutcome.

    This is the only place raw handler exceptions are inspected. Order:
    1. unknown node type / invalid config -> Fatal
    2. wall-clock timeout -> Retryable(NODE_TIMEOUT)
    3. CircuitOpenError -> BreakerDenied
    4. nodeflow exceptions -> Retryable or Fatal by class
    5. httpx transport errors, 429/5xx, dropped DB connections -> Retryable
    6. anything else -> error code via exception mappers, retried only if
       the code is listed in EngineConfig.retryable_error_codes
    """

    def __init__(self, registry: NodeRegistry, config: EngineConfig | None = None) -> None:
        self.registry = registry
        self.config = config or EngineConfig()
        self.logger = get_logger('executor')

    def circuit_for(self, node: NodeSpec) -> tuple[str, CircuitSpec | None] | None:
        """The circuit key guarding this node, if any, with its overrides."""
        if node.circuit is not None and node.circuit.key:
            return node.circuit.key, node.circuit
        entry = self.registry.get(node.node_type)
        if entry is None or entry.circuit_key is None:
            return None
        try:
            config = entry.parse_config(node.config)
        except ValidationError:
            # Reported as a fatal config error when the node runs.
            return None
        key = entry.circuit_key(node, config)
        return (key, node.circuit) if key else None

    def timeout_seconds(self, node: NodeSpec) -> float:
        return (node.timeout_ms or self.config.default_node_timeout_ms) / 1000

    async def run(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        entry = self.registry.get(node.node_type)
        if entry is None:
            return Fatal(
                NodeError.of(
                    ExecutionErrorCode.UNKNOWN_NODE,
                    f"node type '{node.node_type}' is not registered",
                    node_id=node.id,
                )
            )

        try:
            config = entry.parse_config(node.config)
        except ValidationError as exc:
            return Fatal(
                NodeError.of(
                    ExecutionErrorCode.VALIDATION_ERROR,
                    f"invalid config for node '{node.id}'",
                    errors=exc.errors(include_url=False, include_context=False, include_input=False),
                )
            )

        timeout = self.timeout_seconds(node)
        try:
            outcome = await asyncio.wait_for(entry.handler(node, config, ctx), timeout=timeout)
        except TimeoutError:
            return Retryable(
                NodeError.of(
                    ExecutionErrorCode.NODE_TIMEOUT,
                    f"node '{node.id}' exceeded {int(timeout * 1000)}ms",
                    timeout_ms=int(timeout * 1000),
                )
            )
        except CircuitOpenError as exc:
            return BreakerDenied(circuit_key=exc.circuit_key, retry_after=exc.retry_after)
        except NodeExecutionError as exc:
            error = NodeError.from_exception(exc)
            return Retryable(error) if exc.retryable else Fatal(error)
        except ValidationError as exc:
            return Fatal(
                NodeError.of(
                    ExecutionErrorCode.VALIDATION_ERROR,
                    str(exc),
                    errors=exc.errors(include_url=False, include_context=False, include_input=False),
                )
            )
        except Exception as exc:
            return self._classify(node, exc, entry.exception_mapper)

        if not isinstance(outcome, NODE_OUTCOME_TYPES):
            return Fatal(
                NodeError.of(
                    ExecutionErrorCode.VALIDATION_ERROR,
                    f"handler for '{node.node_type}' returned {type(outcome).__name__}",
                )
            )
        return outcome

    def _classify(
        self,
        node: NodeSpec,
        exc: Exception,
        node_mapper: dict[type[BaseException], str] | None,
    ) -> NodeOutcome:
        data = {'exception': type(exc).__name__, 'node_id': node.id}
        match exc:
            case httpx.HTTPStatusError() if (
                exc.response.status_code == 429 or exc.response.status_code >= 500
            ):
                return Retryable(
                    NodeError.of(
                        ExecutionErrorCode.TRANSIENT_IO,
                        str(exc),
                        status_code=exc.response.status_code,
                        **data,
                    )
                )
            case httpx.TransportError():
                return Retryable(NodeError.of(ExecutionErrorCode.TRANSIENT_IO, str(exc), **data))
            case _ if is_retryable_connection_error(exc):
                return Retryable(NodeError.of(ExecutionErrorCode.TRANSIENT_IO, str(exc), **data))

        code = resolve_exception_error_code(
            exc,
            node_mapper,
            self.config.exception_mapper,
            self.config.default_unhandled_error_code,
        )
        error = NodeError.of(code, str(exc) or type(exc).__name__, **data)
        if code in self.config.retryable_error_codes:
            return Retryable(error)
        self.logger.warning(
            f"Node '{node.id}' ({node.node_type}) raised {type(exc).__name__}: {exc}"
        )
        return Fatal(error)
