from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


RETURN_STATUSES = ("scheduled", "picked_up", "inspected", "completed")
TIME_SLOTS = ("9AM-12PM", "12PM-3PM", "3PM-6PM", "6PM-9PM")
INSPECTION_CONDITIONS = ("excellent", "good", "fair", "poor")
QUALITY_ISSUES = ("stains", "tears", "missing_parts", "broken_components", "odor", "color_fade")


class Product(Base):
    __tablename__ = "Products"

    ProductID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100))
    Description = Column(String(2000))
    DailyRentalPrice = Column(Numeric(10, 2), nullable=False)
    SecurityDeposit = Column(Numeric(10, 2), nullable=False, default=0)
    ImagePath = Column(String(500))
    RetailerID = Column(Integer)
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="Product")


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    RentalNumber = Column(String(20), nullable=False, unique=True)
    UserID = Column(Integer, nullable=False, index=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    TotalDays = Column(Integer, nullable=False)
    RentalPrice = Column(Numeric(10, 2), nullable=False)
    SecurityDeposit = Column(Numeric(10, 2), nullable=False)
    TotalAmount = Column(Numeric(10, 2), nullable=False)
    PaymentID = Column(String(100), nullable=False)
    PaymentOrderID = Column(String(100))
    Status = Column(String(20), nullable=False, default="active")
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Product = relationship("Product", back_populates="Rentals")
    Return = relationship("Return", back_populates="Rental", uselist=False)

    __mapper_args__ = {"version_id_col": Version}


class Return(Base):
    __tablename__ = "Returns"

    ReturnID = Column(Integer, primary_key=True)
    ReturnNumber = Column(String(20), nullable=False, unique=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False, unique=True)
    UserID = Column(Integer, nullable=False, index=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    PickupDate = Column(Date, nullable=False)
    TimeSlot = Column(String(20), nullable=False)
    AdditionalNotes = Column(String(1000))
    Status = Column(String(20), nullable=False, default="scheduled")
    DeliveryPartnerID = Column(Integer, index=True)
    InspectionCondition = Column(String(20))
    InspectionQualityIssues = Column(Text)
    InspectionComments = Column(String(2000))
    InspectionImages = Column(Text)
    InspectedAt = Column(DateTime)
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Return")
    Product = relationship("Product")

    __mapper_args__ = {"version_id_col": Version}


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
