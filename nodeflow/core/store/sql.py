# nodeflow/core/store/sql.py
"""SQL statements used by PostgresStore."""

from sqlalchemy import text

SCHEMA_ADVISORY_LOCK_SQL = text(
    """SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))"""
)

# ---------------- definitions ----------------

INSERT_DEFINITION_SQL = text("""
    INSERT INTO nodeflow_workflow_definitions
        (id, version, tenant_id, name, entity_type, is_active, deleted_at, definition, created_at)
    VALUES
        (:id, :version, :tenant_id, :name, :entity_type, :is_active, :deleted_at,
         CAST(:definition AS JSONB), NOW())
    ON CONFLICT (id, version) DO NOTHING
    RETURNING id
""")

GET_DEFINITION_SQL = text("""
    SELECT definition, is_active, deleted_at
    FROM nodeflow_workflow_definitions
    WHERE id = :id AND version = :version
""")

GET_LATEST_DEFINITION_SQL = text("""
    SELECT definition, is_active, deleted_at
    FROM nodeflow_workflow_definitions
    WHERE id = :id
    ORDER BY version DESC
    LIMIT 1
""")

# Latest version per workflow; live / entity filters applied on top.
LIST_DEFINITIONS_SQL = text("""
    SELECT definition, is_active, deleted_at FROM (
        SELECT DISTINCT ON (id) id, definition, is_active, deleted_at, entity_type
        FROM nodeflow_workflow_definitions
        WHERE tenant_id = :tenant_id
        ORDER BY id, version DESC
    ) latest
    WHERE (CAST(:entity_type AS VARCHAR) IS NULL OR entity_type = :entity_type)
      AND (NOT :live_only OR (is_active AND deleted_at IS NULL))
    ORDER BY id
""")

SOFT_DELETE_DEFINITION_SQL = text("""
    UPDATE nodeflow_workflow_definitions
    SET is_active = FALSE, deleted_at = :at
    WHERE id = :id
""")

# ---------------- executions ----------------

EXECUTION_COLUMNS = """
    id, tenant_id, workflow_id, workflow_version, trigger, status, max_loops,
    max_retries, current_node_id, context_data, loop_count, retry_count,
    suspend_reason, resume_token, resume_at, next_retry_at, last_error,
    lease_expires_at, step_count, version, created_at, updated_at, started_at,
    completed_at
"""

INSERT_EXECUTION_SQL = text("""
    INSERT INTO nodeflow_executions (""" + EXECUTION_COLUMNS + """)
    VALUES
        (:id, :tenant_id, :workflow_id, :workflow_version, CAST(:trigger AS JSONB),
         :status, :max_loops, :max_retries, :current_node_id,
         CAST(:context_data AS JSONB), :loop_count, :retry_count, :suspend_reason,
         :resume_token, :resume_at, :next_retry_at, CAST(:last_error AS JSONB),
         :lease_expires_at, :step_count, :version, :created_at, :updated_at,
         :started_at, :completed_at)
""")

GET_EXECUTION_SQL = text(
    'SELECT' + EXECUTION_COLUMNS + 'FROM nodeflow_executions WHERE id = :id'
)

# Compare-and-swap: only applies when nobody wrote since :expected_version.
UPDATE_EXECUTION_SQL = text("""
    UPDATE nodeflow_executions
    SET status = :status,
        current_node_id = :current_node_id,
        context_data = CAST(:context_data AS JSONB),
        loop_count = :loop_count,
        retry_count = :retry_count,
        suspend_reason = :suspend_reason,
        resume_token = :resume_token,
        resume_at = :resume_at,
        next_retry_at = :next_retry_at,
        last_error = CAST(:last_error AS JSONB),
        lease_expires_at = :lease_expires_at,
        step_count = :step_count,
        version = :version,
        updated_at = :updated_at,
        started_at = :started_at,
        completed_at = :completed_at
    WHERE id = :id AND version = :expected_version
    RETURNING id
""")

FIND_DUE_EXECUTIONS_SQL = text(
    'SELECT' + EXECUTION_COLUMNS + """
    FROM nodeflow_executions
    WHERE status = 'pending'
       OR (status = 'running' AND (lease_expires_at IS NULL OR lease_expires_at <= :now))
       OR (status = 'retrying' AND next_retry_at <= :now)
       OR (status = 'suspended' AND resume_at <= :now)
    ORDER BY updated_at NULLS FIRST, id
    LIMIT :limit
""")

FIND_EXECUTION_BY_TOKEN_SQL = text(
    'SELECT ' + ', '.join('e.' + c.strip() for c in EXECUTION_COLUMNS.split(',')) + """
    FROM nodeflow_resume_tokens t
    JOIN nodeflow_executions e ON e.id = t.execution_id
    WHERE t.token = :token
""")

INSERT_RESUME_TOKEN_SQL = text("""
    INSERT INTO nodeflow_resume_tokens (token, execution_id, created_at)
    VALUES (:token, :execution_id, NOW())
    ON CONFLICT (token) DO NOTHING
""")

# ---------------- steps ----------------

INSERT_STEP_SQL = text("""
    INSERT INTO nodeflow_execution_steps
        (id, execution_id, sequence, node_id, node_type, status, attempt, input,
         output, error, started_at, completed_at, duration_ms)
    VALUES
        (:id, :execution_id, :sequence, :node_id, :node_type, :status, :attempt,
         CAST(:input AS JSONB), CAST(:output AS JSONB), CAST(:error AS JSONB),
         :started_at, :completed_at, :duration_ms)
""")

LIST_STEPS_SQL = text("""
    SELECT id, execution_id, sequence, node_id, node_type, status, attempt, input,
           output, error, started_at, completed_at, duration_ms
    FROM nodeflow_execution_steps
    WHERE execution_id = :execution_id
    ORDER BY sequence
""")

# ---------------- circuit breakers ----------------

BREAKER_COLUMNS = """
    tenant_id, circuit_key, state, failure_count, success_count,
    failure_threshold, success_threshold, timeout_seconds, requests_per_minute,
    window_start, window_count, last_failure_at, last_success_at, version
"""

LOAD_BREAKER_SQL = text(
    'SELECT' + BREAKER_COLUMNS + """
    FROM nodeflow_circuit_breakers
    WHERE tenant_id = :tenant_id AND circuit_key = :circuit_key
""")

INSERT_BREAKER_SQL = text("""
    INSERT INTO nodeflow_circuit_breakers (""" + BREAKER_COLUMNS + """)
    VALUES
        (:tenant_id, :circuit_key, :state, :failure_count, :success_count,
         :failure_threshold, :success_threshold, :timeout_seconds,
         :requests_per_minute, :window_start, :window_count, :last_failure_at,
         :last_success_at, :version)
    ON CONFLICT (tenant_id, circuit_key) DO NOTHING
    RETURNING version
""")

SWAP_BREAKER_SQL = text("""
    UPDATE nodeflow_circuit_breakers
    SET state = :state,
        failure_count = :failure_count,
        success_count = :success_count,
        failure_threshold = :failure_threshold,
        success_threshold = :success_threshold,
        timeout_seconds = :timeout_seconds,
        requests_per_minute = :requests_per_minute,
        window_start = :window_start,
        window_count = :window_count,
        last_failure_at = :last_failure_at,
        last_success_at = :last_success_at,
        version = :version
    WHERE tenant_id = :tenant_id
      AND circuit_key = :circuit_key
      AND version = :expected_version
    RETURNING version
""")

# ---------------- notifications ----------------

INSERT_NOTIFICATION_SQL = text("""
    INSERT INTO nodeflow_notifications
        (id, tenant_id, execution_id, channel, recipient, subject, body, template,
         provider, provider_message_id, status, error, created_at)
    VALUES
        (:id, :tenant_id, :execution_id, :channel, :recipient, :subject, :body,
         :template, :provider, :provider_message_id, :status, :error, :created_at)
""")

LIST_NOTIFICATIONS_SQL = text("""
    SELECT id, tenant_id, execution_id, channel, recipient, subject, body, template,
           provider, provider_message_id, status, error, created_at
    FROM nodeflow_notifications
    WHERE (CAST(:tenant_id AS VARCHAR) IS NULL OR tenant_id = :tenant_id)
      AND (CAST(:execution_id AS VARCHAR) IS NULL OR execution_id = :execution_id)
    ORDER BY created_at, id
""")
