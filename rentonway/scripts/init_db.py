#!/usr/bin/env python3
"""Create the rental tables and optionally seed demo catalog products."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models.rental_models import Product


DEMO_PRODUCTS = [
    {"Name": "Embroidered Lehenga", "Category": "Wedding", "DailyRentalPrice": 1499, "SecurityDeposit": 3000},
    {"Name": "Silk Kurta Set", "Category": "Festival", "DailyRentalPrice": 499, "SecurityDeposit": 1000},
    {"Name": "Velvet Tuxedo", "Category": "Party", "DailyRentalPrice": 899, "SecurityDeposit": 2000},
    {"Name": "College Blazer", "Category": "College", "DailyRentalPrice": 299, "SecurityDeposit": 500},
]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create rental tables for a database.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    parser.add_argument("--seed", action="store_true", help="Insert demo products when the catalog is empty.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, future=True)
    Base.metadata.create_all(engine)
    print(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    if args.seed:
        with Session(engine) as db:
            existing = db.execute(select(func.count(Product.ProductID))).scalar_one()
            if existing:
                print(f"Catalog already has {existing} products; skipping seed.")
                return 0
            for row in DEMO_PRODUCTS:
                db.add(Product(**row, IsActive=True, CreatedDate=datetime.now(), UpdatedDate=datetime.now()))
            db.commit()
            print(f"Seeded {len(DEMO_PRODUCTS)} products.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
