"""
Migration: policy expiry date on verifications.

Adds the nullable verifications.expiry_date column read by the daily
expiration reminders, plus its index. Existing rows keep NULL and are never
reminded.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/riskshield"
)


def column_exists(conn, table_name: str, column_name: str) -> bool:
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.columns
            WHERE table_name = :table_name AND column_name = :column_name
        )
    """), {"table_name": table_name, "column_name": column_name})
    return result.fetchone()[0]


def run_migration():
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        if column_exists(conn, "verifications", "expiry_date"):
            print("verifications.expiry_date already exists")
        else:
            conn.execute(text("ALTER TABLE verifications ADD COLUMN expiry_date DATE"))
            print("Added verifications.expiry_date")

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_verifications_expiry_date
            ON verifications (expiry_date)
        """))

        conn.commit()
        print("\nVerification expiry migration completed successfully!")


if __name__ == "__main__":
    run_migration()
