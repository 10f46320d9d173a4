# Seed the service catalog, optionally granting a demo user their signup credits
import sys
from sqlalchemy.orm import Session
from forge3d.db import SessionLocal
from forge3d.services.catalog import DEFAULT_SERVICE_TYPES, seed_service_types
from forge3d.services.credits import initialize_user_credits

def main():
    db: Session = SessionLocal()
    try:
        seed_service_types(db)
        for default in DEFAULT_SERVICE_TYPES:
            print(f"Service type {default['name']}: {default['credit_cost']} credits")

        if len(sys.argv) > 1:
            head = initialize_user_credits(db, sys.argv[1], "demo@example.com")
            print(f"Initialized {sys.argv[1]} with {head.current_credits} credits")
    finally:
        db.close()

if __name__ == "__main__":
    main()
