from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lending_desk.db.base import Base


class Tenant(Base):
    __tablename__ = "Tenants"

    TenantID = Column(Integer, primary_key=True)
    DisplayName = Column(String(255), nullable=False)
    Kind = Column(String(20), nullable=False, default="city")
    IsActive = Column(Boolean, nullable=False, default=True)
    Mode = Column(String(20), nullable=False, default="direct")
    AccessCode = Column(String(50))
    RequireCallerID = Column(Boolean, nullable=False, default=False)
    RequireReturnApproval = Column(Boolean)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Credentials = relationship("TenantCredential", back_populates="Tenant", cascade="all, delete-orphan")
    CountedItems = relationship("CountedItem", back_populates="Tenant")
    UnitItems = relationship("UnitItem", back_populates="Tenant")
    Loans = relationship("Loan", back_populates="Tenant")


class TenantCredential(Base):
    __tablename__ = "TenantCredentials"
    __table_args__ = (UniqueConstraint("TenantID", "Label", name="uq_tenant_credential_label"),)

    CredentialID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False)
    Label = Column(String(100), nullable=False, default="primary")
    SecretHash = Column(String(256), nullable=False)
    SecretSalt = Column(String(64), nullable=False)
    Tier = Column(String(30), nullable=False, default="full_access")
    IsActive = Column(Boolean, nullable=False, default=True)
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tenant = relationship("Tenant", back_populates="Credentials")


class CountedItem(Base):
    __tablename__ = "CountedItems"

    CountedItemID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100))
    Quantity = Column(Integer, nullable=False, default=0)
    CatalogTotal = Column(Integer, nullable=False, default=0)
    IsConsumable = Column(Boolean, nullable=False, default=False)
    Status = Column(String(20), nullable=False, default="working")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tenant = relationship("Tenant", back_populates="CountedItems")
    Loans = relationship("Loan", back_populates="CountedItem")


class UnitItem(Base):
    __tablename__ = "UnitItems"
    __table_args__ = (UniqueConstraint("TenantID", "UnitCode", name="uq_unit_item_code"),)

    UnitItemID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    UnitCode = Column(String(50), nullable=False)
    Name = Column(String(255))
    Category = Column(String(100))
    RimSize = Column(String(20))
    BoltCount = Column(Integer)
    BoltSpacing = Column(String(20))
    IsAvailable = Column(Boolean, nullable=False, default=True)
    Status = Column(String(20), nullable=False, default="working")
    Notes = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tenant = relationship("Tenant", back_populates="UnitItems")
    Loans = relationship("Loan", back_populates="UnitItem")


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, ForeignKey("Tenants.TenantID"), nullable=False, index=True)
    ItemKind = Column(String(20), nullable=False)
    CountedItemID = Column(Integer, ForeignKey("CountedItems.CountedItemID"), index=True)
    UnitItemID = Column(Integer, ForeignKey("UnitItems.UnitItemID"), index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    BorrowerName = Column(String(255), nullable=False)
    BorrowerPhone = Column(String(30), nullable=False, index=True)
    CallerID = Column(String(100))
    Status = Column(String(20), nullable=False, default="pending", index=True)
    RequestedAt = Column(DateTime, nullable=False)
    BorrowDate = Column(DateTime)
    ExpectedReturnDate = Column(Date)
    ReturnDate = Column(DateTime)
    DepositType = Column(String(50))
    DepositDetails = Column(String(500))
    IsSigned = Column(Boolean, nullable=False, default=False)
    SignedAt = Column(DateTime)
    ReportedStatus = Column(String(20))
    FaultNotes = Column(String(1000))
    EvidenceUrl = Column(String(1000))
    EvidenceUploadedAt = Column(DateTime)
    DecidedBy = Column(String(100))
    DecidedAt = Column(DateTime)
    RejectedReason = Column(String(500))
    IsConsumed = Column(Boolean, nullable=False, default=False)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tenant = relationship("Tenant", back_populates="Loans")
    CountedItem = relationship("CountedItem", back_populates="Loans")
    UnitItem = relationship("UnitItem", back_populates="Loans")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, index=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    Actor = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    TenantID = Column(Integer, index=True)
    LoanID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
