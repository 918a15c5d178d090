import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path


os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("PAYMENT_KEY_SECRET", "test-gateway-secret")
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="rentonway-uploads-"))

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from models.rental_models import Product
from services.identity_service import create_session
from services.payment_service import sign_payment


def make_session_factory(db_url: str | None = None):
    if db_url is None:
        engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(db_url, connect_args={"check_same_thread": False}, future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    return engine, factory


def add_product(db, name: str = "Silk Saree", daily_price: float = 500, deposit: float = 1000) -> Product:
    product = Product(
        Name=name,
        Category="Festival",
        DailyRentalPrice=daily_price,
        SecurityDeposit=deposit,
        IsActive=True,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(product)
    db.commit()
    return product


def payment_fields(order_id: str = "order_TEST1", payment_id: str = "pay_TEST1") -> dict:
    return {
        "payment_id": payment_id,
        "payment_order_id": order_id,
        "payment_signature": sign_payment(order_id, payment_id),
    }


def auth_headers(caller_id: int, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {create_session({'id': caller_id, 'role': role})}"}
