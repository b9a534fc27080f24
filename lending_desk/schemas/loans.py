from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class ItemRefDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["counted", "unit"]
    itemID: int


class DepositDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Optional[str] = None
    details: Optional[str] = None


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tenantID: int
    item: ItemRefDto
    intent: Literal["request", "borrow"] = "request"
    borrowerName: str
    borrowerPhone: str
    quantity: int = 1
    expectedReturnDate: Optional[date] = None
    deposit: Optional[DepositDto] = None
    callerID: Optional[str] = None
    notes: Optional[str] = None
    isSigned: bool = False
    credential: Optional[str] = None


class LoanDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Literal["approve", "reject"]
    credential: Optional[str] = None
    reason: Optional[str] = None


class CancelLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerPhone: Optional[str] = None
    credential: Optional[str] = None


class FaultReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reportedStatus: Literal["working", "faulty"] = "working"
    notes: Optional[str] = None


class ReturnLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    credential: Optional[str] = None
    faultReport: Optional[FaultReportDto] = None
    evidenceUrl: Optional[str] = None


class CredentialOnlyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    credential: Optional[str] = None
