"""SQL constants for PostgresBroker."""

from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

from pendq.core.defaults import TASK_NEW_CHANNEL


# ---------- Schema ----------

ADVISORY_XACT_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

CREATE_NOTIFY_FUNCTION_SQL = text(f"""
    CREATE OR REPLACE FUNCTION pendq_notify_task_new()
    RETURNS trigger AS $$
    BEGIN
        PERFORM pg_notify('{TASK_NEW_CHANNEL}', NEW.type);
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
""")

DROP_NOTIFY_TRIGGER_SQL = text("""
    DROP TRIGGER IF EXISTS pendq_task_new_trigger ON pendq_tasks;
""")

CREATE_NOTIFY_TRIGGER_SQL = text("""
    CREATE TRIGGER pendq_task_new_trigger
        AFTER INSERT ON pendq_tasks
        FOR EACH ROW
        EXECUTE FUNCTION pendq_notify_task_new();
""")


# ---------- Insert ----------
# clock_timestamp() rather than NOW(): rows inserted in one transaction must
# keep their insertion order in created_at. One reading feeds all three
# columns, so maturity_at - created_at is exactly the requested delay.

INSERT_TASK_SQL = text("""
    INSERT INTO pendq_tasks (id, type, priority, payload, maturity_at, created_at, updated_at)
    SELECT
        :id,
        :type,
        :priority,
        :payload,
        clock.ts + CAST(:delay_ms AS BIGINT) * INTERVAL '1 millisecond',
        clock.ts,
        clock.ts
    FROM (SELECT clock_timestamp() AS ts) AS clock
    RETURNING id, type, priority, payload, maturity_at, created_at, updated_at
""").bindparams(bindparam('payload', type_=JSONB))

PENDING_OF_TYPE_EXISTS_SQL = text("""
    SELECT EXISTS (SELECT 1 FROM pendq_tasks WHERE type = :type)
""")


# ---------- Claim ----------
# Lock up to :lim mature rows (skipping rows another claimer already holds),
# delete them and hand them back in the same transaction. DELETE ... RETURNING
# has no defined order, hence the outer ORDER BY.

CLAIM_BATCH_SQL = text("""
    WITH next AS (
      SELECT id
      FROM pendq_tasks
      WHERE maturity_at < NOW()
      ORDER BY priority DESC, created_at ASC, id ASC
      LIMIT :lim
      FOR UPDATE SKIP LOCKED
    ),
    claimed AS (
      DELETE FROM pendq_tasks t
      USING next
      WHERE t.id = next.id
      RETURNING t.id, t.type, t.priority, t.payload, t.maturity_at, t.created_at, t.updated_at
    )
    SELECT id, type, priority, payload, maturity_at, created_at, updated_at
    FROM claimed
    ORDER BY priority DESC, created_at ASC, id ASC
""")


# ---------- Monitoring ----------

COUNT_PENDING_SQL = text("""
    SELECT COUNT(*) FROM pendq_tasks
""")

COUNT_PENDING_OF_TYPE_SQL = text("""
    SELECT COUNT(*) FROM pendq_tasks WHERE type = :type
""")
