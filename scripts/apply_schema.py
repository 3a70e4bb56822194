#!/usr/bin/env python3
"""Create the extracts tables and seed the status-sweep schedule."""
import asyncio
import os

import asyncpg

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'succeeded', 'failed')),
    payload JSONB NOT NULL DEFAULT '{}',
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    backoff_s DOUBLE PRECISION NOT NULL DEFAULT 10,
    priority INTEGER NOT NULL DEFAULT 100,
    run_after TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    locked_at TIMESTAMPTZ,
    locked_by TEXT,
    result JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim
    ON jobs(type, priority, created_at) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_jobs_running ON jobs(locked_at) WHERE status = 'running';

CREATE TABLE IF NOT EXISTS operators (
    id SERIAL PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    portal_login TEXT NOT NULL,
    password TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS orders (
    id SERIAL PRIMARY KEY,
    owner_id INTEGER NOT NULL,
    cadastral_number TEXT NOT NULL,
    status TEXT NOT NULL,
    external_order_number TEXT,
    operator_id INTEGER REFERENCES operators(id) ON DELETE SET NULL,
    is_complete BOOLEAN NOT NULL DEFAULT false,
    last_error TEXT,
    registration_started_at TIMESTAMPTZ,
    registered_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    last_checked_at TIMESTAMPTZ,
    artifact_path TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_orders_owner ON orders(owner_id) WHERE deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_orders_registered
    ON orders(last_checked_at NULLS FIRST)
    WHERE external_order_number IS NOT NULL AND is_complete = false AND deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS worker_schedules (
    id SERIAL PRIMARY KEY,
    task_name TEXT NOT NULL UNIQUE,
    cron_expression TEXT,
    active_interval_start TEXT NOT NULL,
    active_interval_end TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT true,
    last_run_at TIMESTAMPTZ,
    last_run_completed_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS anomaly_questions (
    id SERIAL PRIMARY KEY,
    question TEXT NOT NULL,
    normalized_question TEXT NOT NULL,
    answer TEXT,
    subject TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    answered_at TIMESTAMPTZ,
    UNIQUE NULLS NOT DISTINCT (normalized_question, subject)
);

INSERT INTO worker_schedules
    (task_name, cron_expression, active_interval_start, active_interval_end)
VALUES ('order-status-checker', '*/30 * * * *', '20:00', '07:00')
ON CONFLICT (task_name) DO NOTHING;
"""


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"])
    try:
        await conn.execute(SCHEMA)
        print("Schema applied")

        tables = await conn.fetch(
            """
            SELECT table_name FROM information_schema.tables
            WHERE table_name = ANY($1::text[])
            ORDER BY table_name
            """,
            ["jobs", "operators", "orders", "worker_schedules", "anomaly_questions"],
        )
        print("Tables:", ", ".join(row["table_name"] for row in tables))
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
