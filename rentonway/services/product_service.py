from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Product
from services.errors import NotFoundError, ValidationFailedError
from services.persistence import commit_changes, log_audit


def serialize_product(product: Product | None) -> dict | None:
    if product is None:
        return None
    return {
        "id": product.ProductID,
        "name": product.Name,
        "category": product.Category,
        "description": product.Description,
        "dailyRentalPrice": float(product.DailyRentalPrice or 0),
        "securityDeposit": float(product.SecurityDeposit or 0),
        "imagePath": product.ImagePath,
        "retailer": product.RetailerID,
        "isActive": bool(product.IsActive),
        "createdAt": product.CreatedDate,
        "updatedAt": product.UpdatedDate,
    }


def get_active_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product or not product.IsActive:
        raise NotFoundError("Product not found")
    return product


def list_products(db: Session, category: str | None = None) -> list[Product]:
    stmt = select(Product).where(Product.IsActive.is_(True))
    if category:
        stmt = stmt.where(Product.Category == category)
    return db.execute(stmt.order_by(Product.CreatedDate.desc(), Product.ProductID.desc())).scalars().all()


def create_product(
    db: Session,
    *,
    retailer_id: int,
    name: str,
    daily_rental_price: float,
    security_deposit: float = 0,
    category: str | None = None,
    description: str | None = None,
    image_path: str | None = None,
) -> Product:
    if not (name or "").strip():
        raise ValidationFailedError("Product name is required.")
    if daily_rental_price is None or float(daily_rental_price) <= 0:
        raise ValidationFailedError("dailyRentalPrice must be greater than zero.")
    if float(security_deposit or 0) < 0:
        raise ValidationFailedError("securityDeposit cannot be negative.")

    product = Product(
        Name=name.strip(),
        Category=category,
        Description=description,
        DailyRentalPrice=daily_rental_price,
        SecurityDeposit=security_deposit or 0,
        ImagePath=image_path,
        RetailerID=retailer_id,
        IsActive=True,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(product)
    db.flush()
    log_audit(db, "Product", product.ProductID, "CreateProduct", product.Name, user_id=retailer_id)
    commit_changes(db)
    return product
