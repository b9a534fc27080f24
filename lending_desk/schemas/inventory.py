from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CountedItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    quantity: int = 1
    isConsumable: bool = False
    status: Literal["working", "faulty"] = "working"
    category: Optional[str] = None
    credential: Optional[str] = None


class UnitItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unitCode: str
    name: Optional[str] = None
    category: Optional[str] = None
    rimSize: Optional[str] = None
    boltCount: Optional[int] = None
    boltSpacing: Optional[str] = None
    notes: Optional[str] = None
    credential: Optional[str] = None


class ItemStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["working", "faulty"]
    credential: Optional[str] = None


class ItemRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: Optional[int] = None
    catalogTotal: Optional[int] = None
    isAvailable: Optional[bool] = None
    credential: Optional[str] = None
