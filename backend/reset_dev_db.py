#!/usr/bin/env python3
"""
Reset the development database: fresh schema plus seed commission policies and a team.
Run from the backend/ directory.
"""
import os
from pathlib import Path

backend_dir = Path(__file__).parent
os.chdir(backend_dir)

# Load .env before the settings object is built.
from dotenv import load_dotenv  # noqa: E402

load_dotenv(backend_dir / ".env", override=True)

# Always target the local sqlite dev DB for this script.
os.environ["DATABASE_URL"] = "sqlite:///./dev.db"

from courierhub import models  # noqa: E402
from courierhub.config import settings  # noqa: E402
from courierhub.database import Base, SessionLocal, atomic, engine  # noqa: E402
from courierhub.services import commission_policy  # noqa: E402

SEED_ADMIN_ID = 1
SEED_LEADER_ID = 100
SEED_HELPERS = (101, 102, 103)
SEED_OVERRIDE_HELPER = 201


def main():
    db_path = backend_dir / "dev.db"
    if db_path.exists():
        print(f"Removing existing database: {db_path}")
        db_path.unlink()

    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        with atomic(db):
            commission_policy.set_global_policy(
                db,
                total_rate=settings.default_commission_rate,
                platform_rate=settings.default_platform_rate,
                team_leader_rate=settings.default_team_leader_rate,
                actor_id=SEED_ADMIN_ID,
            )
            commission_policy.set_deposit_rate(
                db, percent=settings.default_deposit_rate_percent, actor_id=SEED_ADMIN_ID
            )

            team = models.Team(name="Seoul North", leader_id=SEED_LEADER_ID, is_active=True)
            db.add(team)
            db.flush()
            for helper_id in SEED_HELPERS:
                db.add(models.TeamMember(team_id=team.id, helper_id=helper_id, is_active=True))

            commission_policy.set_helper_override(
                db, helper_id=SEED_OVERRIDE_HELPER, commission_rate=7, actor_id=SEED_ADMIN_ID
            )
        print("Seeded global policy, deposit rate, one team and one helper override")
        print(f"Database: {db_path}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
