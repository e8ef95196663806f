from __future__ import annotations

from enum import Enum
from ipaddress import ip_address
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    field_validator,
)

TOKEN_PATTERN = r"^[A-Za-z0-9_\-.]+$"

IdToken = Annotated[
    str, StringConstraints(min_length=10, max_length=3000, pattern=TOKEN_PATTERN)
]
SubjectId = Annotated[str, StringConstraints(min_length=10, max_length=100)]
Reason = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=5, max_length=500)
]
BanDuration = Annotated[StrictInt, Field(ge=1, le=36500)]
ValidityDays = Annotated[StrictInt, Field(ge=1, le=3650)]
MaxAccounts = Annotated[StrictInt, Field(ge=1, le=1000)]
Email = Annotated[str, StringConstraints(strip_whitespace=True, max_length=254)]
DisplayName = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=80)
]


class LicensePlan(str, Enum):
    """Closed set of license tiers an admin can issue."""

    FREE = "Free"
    CLASSIC = "Classic"
    PRO = "Pro"


def normalize_ip(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("ip address must be a string")
    # Scoped literals (fe80::1%eth0) are host-local and never a client address
    if "%" in value:
        raise ValueError("invalid IPv4 or IPv6 address")
    try:
        parsed = ip_address(value.strip())
    except ValueError:
        raise ValueError("invalid IPv4 or IPv6 address") from None
    # ::ffff:a.b.c.d collapses onto a.b.c.d so one host has one ban key
    mapped = getattr(parsed, "ipv4_mapped", None)
    return str(mapped if mapped is not None else parsed)


class RequestModel(BaseModel):
    """Base for inbound bodies: camelCase wire names, unknown keys dropped."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class TokenRequest(RequestModel):
    id_token: IdToken = Field(..., alias="idToken")


class VerifyAdminRequest(TokenRequest):
    pass


class BanUserRequest(TokenRequest):
    user_id: SubjectId = Field(..., alias="userId")
    reason: Reason
    duration: BanDuration


class BanIPRequest(TokenRequest):
    ip_address: str = Field(..., alias="ipAddress")
    reason: Reason
    duration: BanDuration

    @field_validator("ip_address", mode="before")
    @classmethod
    def _validate_ip(cls, value: str) -> str:
        return normalize_ip(value)


class DeleteUserRequest(TokenRequest):
    user_id: SubjectId = Field(..., alias="userId")


class CreateLicenseRequest(TokenRequest):
    plan: LicensePlan
    validity_days: ValidityDays = Field(..., alias="validityDays")


class SetAdminRequest(TokenRequest):
    user_id: SubjectId = Field(..., alias="userId")
    is_admin: StrictBool = Field(..., alias="isAdmin")


class RegisterSubjectRequest(TokenRequest):
    display_name: Optional[DisplayName] = Field(None, alias="displayName")


class CheckIPBanRequest(RequestModel):
    ip_address: str = Field(..., alias="ipAddress")

    @field_validator("ip_address", mode="before")
    @classmethod
    def _validate_ip(cls, value: str) -> str:
        return normalize_ip(value)


class CheckIPLimitRequest(CheckIPBanRequest):
    max_accounts: Optional[MaxAccounts] = Field(None, alias="maxAccounts")


class RecordUserIPRequest(CheckIPBanRequest):
    user_id: SubjectId = Field(..., alias="userId")
    email: Optional[Email] = None


class CheckUserBanRequest(RequestModel):
    user_id: SubjectId = Field(..., alias="userId")


__all__ = [
    "LicensePlan",
    "normalize_ip",
    "RequestModel",
    "TokenRequest",
    "VerifyAdminRequest",
    "BanUserRequest",
    "BanIPRequest",
    "DeleteUserRequest",
    "CreateLicenseRequest",
    "SetAdminRequest",
    "RegisterSubjectRequest",
    "CheckIPBanRequest",
    "CheckIPLimitRequest",
    "RecordUserIPRequest",
    "CheckUserBanRequest",
]
