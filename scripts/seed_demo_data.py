"""
Seed demo users and the static workflow directory.

Usage:
    python scripts/seed_demo_data.py                 # development DB, DEFAULT_SITE
    python scripts/seed_demo_data.py --site NDS
    python scripts/seed_demo_data.py --env production

Idempotent — safe to run multiple times.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from opexhub import create_app
from opexhub.models import db
from opexhub.services.setup_service import seed_workflow_directory


def main():
    parser = argparse.ArgumentParser(description="Seed the OpEx Hub workflow directory")
    parser.add_argument("--env", default=os.getenv("APP_ENV", "development"),
                        choices=["development", "testing", "production"])
    parser.add_argument("--site", default=None, help="Site code (defaults to DEFAULT_SITE)")
    parser.add_argument("--create-tables", action="store_true",
                        help="db.create_all() first (dev convenience; use migrations otherwise)")
    args = parser.parse_args()

    app = create_app(args.env)
    with app.app_context():
        if args.create_tables:
            db.create_all()
        result = seed_workflow_directory(args.site or app.config.get("DEFAULT_SITE", "NDS"))

        print(f"Site {result['site']}: {result['users_created']} users created")
        for assignment in result["assignments"]:
            print(f"  stage {assignment.stage_number:>2}  {assignment.role_code:<5} {assignment.user.email}")
        print("Stages 4, 5 and 6 are bound per initiative when stage 3 names the Initiative Lead.")


if __name__ == "__main__":
    main()
