#!/usr/bin/env python3
"""
Company Seed Script
Creates a company with an admin user and prints a bearer token for it.

Usage:
    python -m scripts.seed_company <company_name> <admin_email> [admin_name]

Example:
    python -m scripts.seed_company "Acme Builders" admin@acme.com "Alex Admin"
"""
import sys
from uuid import uuid4

from riskshield.auth import create_access_token
from riskshield.config import get_settings
from riskshield.database import create_session_factory, init_db
from riskshield.models.db_models import CompanyDB, UserDB, UserRole


def seed_company(company_name: str, admin_email: str, admin_name: str = None) -> bool:
    """Create the company and its first admin."""
    settings = get_settings()
    session_factory = create_session_factory(settings.database_url)
    # Ensure tables exist
    init_db(session_factory.kw["bind"])

    db = session_factory()
    try:
        existing = db.query(UserDB).filter(UserDB.email == admin_email).first()
        if existing:
            print(f"Error: Email '{admin_email}' already exists.")
            return False

        company = CompanyDB(id=str(uuid4()), name=company_name)
        admin = UserDB(
            id=str(uuid4()),
            company_id=company.id,
            email=admin_email,
            name=admin_name,
            role=UserRole.ADMIN,
        )
        db.add(company)
        db.add(admin)
        db.commit()

        token = create_access_token(admin.id, admin.email, UserRole.ADMIN.value, settings)
        print(f"Created company '{company_name}' ({company.id})")
        print(f"Created admin '{admin_email}' ({admin.id})")
        print(f"\nBearer token (24h):\n{token}")
        return True
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)

    name = sys.argv[3] if len(sys.argv) > 3 else None
    success = seed_company(sys.argv[1], sys.argv[2], name)
    sys.exit(0 if success else 1)
