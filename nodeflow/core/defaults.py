"""Shared default constants for the nodeflow engine."""

# Hard ceiling on node executions within one execution.
DEFAULT_MAX_LOOPS: int = 100

# Retry budget for recoverable node failures.
DEFAULT_MAX_RETRIES: int = 3

# Retry backoff: first delay, cap, and jitter fraction.
DEFAULT_RETRY_BASE_MS: int = 30_000  # 30 seconds
DEFAULT_RETRY_MAX_MS: int = 3_600_000  # 1 hour
DEFAULT_RETRY_JITTER: float = 0.25

# Wall-clock bound for a single node run when the node sets no timeout_ms.
DEFAULT_NODE_TIMEOUT_MS: int = 30_000

# Nodes advanced per tick before the engine yields back to the dispatcher.
DEFAULT_MAX_NODES_PER_TICK: int = 25

# Tick claim lease. A crashed tick's execution becomes reclaimable after this.
DEFAULT_TICK_LEASE_MS: int = 300_000  # 5 minutes

# Lease kept beyond a node's timeout so its step can still be written.
TICK_LEASE_MARGIN_MS: int = 5_000

# Circuit breaker defaults.
DEFAULT_FAILURE_THRESHOLD: int = 5
DEFAULT_SUCCESS_THRESHOLD: int = 2
DEFAULT_BREAKER_TIMEOUT_SECONDS: int = 60
DEFAULT_REQUESTS_PER_MINUTE: int = 60
RATE_WINDOW_SECONDS: int = 60

# Compare-and-swap attempts on a contended breaker row before giving up.
BREAKER_CAS_ATTEMPTS: int = 8

# Dispatcher polling.
DEFAULT_POLL_INTERVAL_MS: int = 1_000
DEFAULT_DISPATCH_BATCH_SIZE: int = 100
DEFAULT_DISPATCH_CONCURRENCY: int = 16

# Webhook node request timeout.
DEFAULT_WEBHOOK_TIMEOUT_SECONDS: float = 30.0
