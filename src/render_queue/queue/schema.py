"""SQLAlchemy Core tables for the durable queue and the credit ledger.

The same definitions compile for PostgreSQL and SQLite. Tables are created
with CREATE ... IF NOT EXISTS on connect, so a fresh database needs no
migration step.
"""

from typing import List

import sqlalchemy as sa
from sqlalchemy.schema import CreateIndex, CreateTable, DDLElement

metadata = sa.MetaData()

render_jobs = sa.Table(
    "render_jobs",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("status", sa.String(16), nullable=False, default="queued"),
    # Opaque payload, JSON text (json.dumps / json.loads)
    sa.Column("input_parameters", sa.Text, nullable=False),
    sa.Column("user_id", sa.String(128), nullable=False),
    sa.Column("progress", sa.Float, nullable=False, default=0.0),
    sa.Column("output_reference", sa.Text, nullable=True),
    sa.Column("error", sa.String(500), nullable=True),
    sa.Column("worker_id", sa.String(128), nullable=True),
    sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("attempt_count", sa.Integer, nullable=False, default=0),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("progress >= 0 AND progress <= 1", name="ck_render_jobs_progress"),
)

sa.Index("idx_render_jobs_status_created", render_jobs.c.status, render_jobs.c.created_at)
sa.Index("idx_render_jobs_lease", render_jobs.c.status, render_jobs.c.lease_expires_at)

user_credits = sa.Table(
    "user_credits",
    metadata,
    sa.Column("user_id", sa.String(128), primary_key=True),
    sa.Column("credits", sa.Integer, nullable=False, default=0),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),
)

# One row per billed job; the primary key makes a second debit impossible
credit_debits = sa.Table(
    "credit_debits",
    metadata,
    sa.Column("job_id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(128), nullable=False),
    sa.Column("amount", sa.Integer, nullable=False),
    sa.Column("balance_before", sa.Integer, nullable=False),
    sa.Column("balance_after", sa.Integer, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

# State transition log (audit trail)
job_transitions = sa.Table(
    "job_transitions",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("job_id", sa.String(36), nullable=False),
    sa.Column("from_state", sa.String(16), nullable=True),
    sa.Column("to_state", sa.String(16), nullable=False),
    sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    sa.Column("worker_id", sa.String(128), nullable=True),
    sa.Column("error_snippet", sa.String(200), nullable=True),
)

sa.Index("idx_job_transitions_job", job_transitions.c.job_id, job_transitions.c.timestamp)


def schema_ddl() -> List[DDLElement]:
    """CREATE statements for every table and index, in dependency order."""
    statements: List[DDLElement] = []
    for table in metadata.sorted_tables:
        statements.append(CreateTable(table, if_not_exists=True))
        for index in sorted(table.indexes, key=lambda i: i.name):
            statements.append(CreateIndex(index, if_not_exists=True))
    return statements
