"""
Pydantic request bodies for the HTTP API

Fields use the camelCase aliases the mobile/web clients send. Presence
checks with user-facing messages live in the services, so most fields
are optional here.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# --------------------- Auth ---------------------


class GuestRegisterRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class SendUpgradeOTPRequest(BaseModel):
    full_name: Optional[str] = Field(None, alias="fullName")
    email: Optional[str] = None
    gender: Optional[str] = None


class VerifyUpgradeOTPRequest(BaseModel):
    otp: Optional[str] = None
    password: Optional[str] = None


class UpgradeGuestRequest(BaseModel):
    full_name: Optional[str] = Field(None, alias="fullName")
    email: Optional[str] = None
    password: Optional[str] = None
    gender: Optional[str] = None


# --------------------- Shopper ---------------------


class LocationHeartbeatRequest(BaseModel):
    user_id: Optional[str] = Field(None, alias="userId")
    # Validated by geo.validate_coordinates so bools and strings are rejected
    lat: Any = None
    lng: Any = None
    accuracy: Optional[float] = None


class OfferActionRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    user_id: Optional[str] = Field(None, alias="userId")


class CurrentLocation(BaseModel):
    lat: Any = None
    lng: Any = None


class SmartAssignRequest(BaseModel):
    user_id: str
    current_location: CurrentLocation


class NearbyShoppersRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    max_distance: float = Field(10, alias="maxDistance", gt=0)
    exclude_shopper_id: Optional[str] = Field(None, alias="excludeShopperId")


class RegisterTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    platform: str = "web"


class WalletOperationRequest(BaseModel):
    order_id: str = Field(..., alias="orderId")
    operation: str


class UpdateOrderStatusRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    status: Optional[str] = None


class OrderRevenueRequest(BaseModel):
    order_id: str = Field(..., alias="orderId")
