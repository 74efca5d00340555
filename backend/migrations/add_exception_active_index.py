"""
Migration: enforce at most one ACTIVE exception per assignment.

Older deployments allowed several active exceptions for the same
project_subcontractor. Before the partial unique index can be created the
duplicates are closed, keeping the most recently approved one active.

Also adds the (status, expires_at) index used by the expiry sweep.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/riskshield"
)


def index_exists(conn, index_name: str) -> bool:
    """Check if an index exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM pg_indexes
            WHERE indexname = :index_name
        )
    """), {"index_name": index_name})
    return result.fetchone()[0]


def run_migration():
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # STEP 1: close duplicate active exceptions
        # =================================================================
        result = conn.execute(text("""
            WITH ranked AS (
                SELECT id,
                       ROW_NUMBER() OVER (
                           PARTITION BY project_subcontractor_id
                           ORDER BY approved_at DESC NULLS LAST, created_at DESC
                       ) AS rn
                FROM compliance_exceptions
                WHERE status = 'active'
            )
            UPDATE compliance_exceptions
            SET status = 'closed',
                resolution_type = 'duplicate_active',
                resolution_notes = 'Closed by migration: another exception was already active',
                resolved_at = NOW() AT TIME ZONE 'utc',
                updated_at = NOW() AT TIME ZONE 'utc'
            WHERE id IN (SELECT id FROM ranked WHERE rn > 1)
        """))
        print(f"Closed {result.rowcount} duplicate active exception(s)")

        # =================================================================
        # STEP 2: partial unique index
        # =================================================================
        if index_exists(conn, "uq_exception_active_per_assignment"):
            print("uq_exception_active_per_assignment already exists")
        else:
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_exception_active_per_assignment
                ON compliance_exceptions (project_subcontractor_id)
                WHERE status = 'active'
            """))
            print("Created uq_exception_active_per_assignment")

        # =================================================================
        # STEP 3: expiry sweep index
        # =================================================================
        if index_exists(conn, "ix_exceptions_status_expires"):
            print("ix_exceptions_status_expires already exists")
        else:
            conn.execute(text("""
                CREATE INDEX ix_exceptions_status_expires
                ON compliance_exceptions (status, expires_at)
            """))
            print("Created ix_exceptions_status_expires")

        conn.commit()
        print("\nException exclusivity migration completed successfully!")


if __name__ == "__main__":
    run_migration()
