from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateTenantDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    displayName: str
    kind: Literal["city", "station"] = "city"
    mode: Literal["direct", "request"] = "direct"
    accessCode: Optional[str] = None
    requireCallerID: bool = False
    requireReturnApproval: Optional[bool] = None
    managerSecret: Optional[str] = None
    managerLabel: str = "primary"
    credential: Optional[str] = None


class TenantSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    displayName: Optional[str] = None
    accessCode: Optional[str] = None
    requireCallerID: Optional[bool] = None
    requireReturnApproval: Optional[bool] = None
    credential: Optional[str] = None


class TenantModeUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mode: Literal["direct", "request"]
    credential: Optional[str] = None


class TenantCredentialUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    secret: str
    label: str = "primary"
    tier: Literal["view_only", "approve_requests", "full_access"] = "full_access"
    credential: Optional[str] = None
