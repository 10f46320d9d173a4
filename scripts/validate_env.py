#!/usr/bin/env python3
"""
Validate forge3d configuration before deployment.
Checks settings, database connectivity, the seeded service catalog, the
generation provider and, with --audit-ledger, every user's credit ledger.
Exit code 0 = OK, 1 = problems detected.
"""
import argparse
import logging
import sys
from typing import List

from pydantic import ValidationError as SettingsValidationError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

WEAK_SECRETS = {"change-me", "changeme", "secret", "your-secret-key"}

class EnvironmentValidator:
    """Validates environment configuration for production deployment."""

    def __init__(self, audit_ledger: bool = False):
        self.audit_ledger = audit_ledger
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []
        self.settings = None

    def validate_all(self) -> bool:
        logger.info("Starting environment validation...")

        if self.validate_settings():
            self.validate_jwt_configuration()
            self.validate_provider()
            if self.validate_database_connection():
                self.validate_service_catalog()
                if self.audit_ledger:
                    self.validate_ledgers()

        self.print_results()
        return len(self.errors) == 0

    def validate_settings(self) -> bool:
        try:
            from forge3d.config import Settings
            self.settings = Settings()
        except SettingsValidationError as e:
            self.errors.append(f"Invalid settings: {e}")
            return False
        self.info.append(f"Settings loaded for '{self.settings.app_name}'")
        if self.settings.debug:
            self.warnings.append("DEBUG is enabled; disable in production")
        return True

    def validate_jwt_configuration(self):
        secret = self.settings.jwt_secret
        if secret in WEAK_SECRETS:
            self.errors.append("JWT_SECRET appears to be a default/example value")
        elif len(secret) < 32:
            self.warnings.append("JWT_SECRET should be at least 32 characters")
        if self.settings.jwt_algorithm not in ("HS256", "HS384", "HS512"):
            self.warnings.append(f"JWT_ALGORITHM '{self.settings.jwt_algorithm}' may not be supported")

    def validate_provider(self):
        if self.settings.provider_backend == "mock":
            self.warnings.append("PROVIDER_BACKEND is 'mock'; no real models will be generated")
        elif not self.settings.meshy_api_key:
            self.errors.append("MESHY_API_KEY is required when PROVIDER_BACKEND is 'meshy'")
        else:
            self.info.append(f"Generation provider: meshy at {self.settings.meshy_base_url}")

    def validate_database_connection(self) -> bool:
        from sqlalchemy import create_engine, text
        from sqlalchemy.exc import SQLAlchemyError

        url = self.settings.database_url
        if not url.startswith("postgresql"):
            self.warnings.append("Database URL is not PostgreSQL; row locks on spend are not enforced")
        try:
            engine = create_engine(url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.errors.append(f"Database connection failed: {e}")
            return False
        self.info.append("Database connection successful")
        return True

    def validate_service_catalog(self):
        from forge3d.db import SessionLocal
        from forge3d.services.catalog import DEFAULT_SERVICE_TYPES, ServiceCatalog

        db = SessionLocal()
        try:
            catalog = ServiceCatalog()
            catalog.load(db)
        finally:
            db.close()

        for default in DEFAULT_SERVICE_TYPES:
            name = default["name"]
            if name not in catalog.names():
                self.errors.append(f"Service type '{name}' is not seeded; run scripts/seed_data.py")
            elif catalog.cost(name) != default["credit_cost"]:
                self.warnings.append(
                    f"Service type '{name}' costs {catalog.cost(name)}, default is {default['credit_cost']}"
                )
        self.info.append(f"Service catalog: {', '.join(catalog.names()) or 'empty'}")

    def validate_ledgers(self):
        from forge3d.db import SessionLocal
        from forge3d.models import User
        from forge3d.services.credits import check_ledger_consistency

        db = SessionLocal()
        try:
            user_ids = [row.id for row in db.query(User.id).all()]
            broken = 0
            for user_id in user_ids:
                problems = check_ledger_consistency(db, user_id)
                if problems:
                    broken += 1
                    self.errors.append(f"Ledger for {user_id}: {'; '.join(problems)}")
        finally:
            db.close()
        self.info.append(f"Audited {len(user_ids)} ledgers, {broken} inconsistent")

    def print_results(self):
        print("\n===== Environment Validation Report =====\n")
        for title, messages in (("Info", self.info), ("Warnings", self.warnings), ("Errors", self.errors)):
            if messages:
                print(f"{title}:")
                for msg in messages:
                    print(f"  - {msg}")
                print("")
        overall = "PASS" if not self.errors else "FAIL"
        print(f"Overall: {overall}")
        print("")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--audit-ledger", action="store_true", help="replay every user's credit ledger")
    args = parser.parse_args()
    validator = EnvironmentValidator(audit_ledger=args.audit_ledger)
    ok = validator.validate_all()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
