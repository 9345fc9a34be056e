"""
Pydantic Schemas for Request/Response Validation

Money fields are Decimals end to end; they serialize as strings so no
float rounding creeps in on the wire.

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.models import DineOption, ItemSize, OrderStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreate(BaseModel):
    """Request schema for opening a new order."""
    store_id: int = Field(..., ge=1, examples=[1])
    notes: Optional[str] = Field(None, max_length=500, examples=["No onions"])
    dine_option: DineOption = Field(default=DineOption.DINE_IN, examples=["takeaway"])


class LineItemCreate(BaseModel):
    """Single item added to an order."""
    item_id: int = Field(..., ge=1, examples=[3])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    size: ItemSize = Field(..., examples=["small"])
    special_requests: Optional[str] = Field(None, max_length=200)


class LineItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1, le=99)
    size: ItemSize
    item_id: Optional[int] = Field(None, ge=1)
    special_requests: Optional[str] = Field(None, max_length=200)


class RechargeRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, examples=["100.00"])


class CouponCreate(BaseModel):
    discount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, examples=["5.00"])
    min_purchase: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2, examples=["20.00"])
    expiration_date: datetime
    is_active: bool = True


class CouponUpdate(CouponCreate):
    """Full replacement of a coupon's terms; the code is kept."""


class CouponBatchCreate(BaseModel):
    coupons: List[CouponCreate] = Field(..., min_length=1, max_length=100)


class CouponAssign(BaseModel):
    user_id: int = Field(..., ge=1)
    coupon_id: int = Field(..., ge=1)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LineItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    detail_id: int
    order_id: int
    item_id: int
    quantity: int
    unit_price: Decimal
    size: ItemSize
    special_requests: Optional[str] = None


class OrderResponse(BaseModel):
    """Response schema for an order aggregate."""
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    user_id: int
    store_id: int
    status: OrderStatus
    total_price: Decimal
    discount: Decimal
    user_coupon_id: Optional[int] = None
    order_time: datetime
    notes: Optional[str] = None
    dine_option: DineOption
    details: List[LineItemResponse] = []


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class OrderStatsResponse(BaseModel):
    """Order counts per status."""
    total: int
    by_status: dict[str, int] = Field(..., examples=[{"created": 2, "in_progress": 1}])


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    name: str
    phone: Optional[str] = None
    role: str
    balance: Decimal


class CouponResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    coupon_id: int
    code: str
    discount: Decimal
    min_purchase: Decimal
    expiration_date: datetime
    is_active: bool


class UserCouponResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_coupon_id: int
    user_id: int
    coupon_id: int
    is_used: bool


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    details: dict = {}
    retryable: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    timestamp: datetime
