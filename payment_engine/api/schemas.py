"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


# Auth schemas
class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    payment_pin: str = Field(..., description="5-character payment PIN")


class LoginRequest(BaseModel):
    email: str
    password: str


class ForgetPasswordRequest(BaseModel):
    email: str
    new_password: str


# User schemas
class ForgetPinRequest(BaseModel):
    password: str
    new_pin: str


# Payment schemas
class InitiatePaymentRequest(BaseModel):
    sender_id: str
    receiver_id: str
    amount: Decimal = Field(..., description="Positive amount, two decimal places")
    payment_pin: str


# Product schemas
class AddProductRequest(BaseModel):
    product_id: str = Field(..., description="Owner's product code")
    price: Decimal


class PurchaseProductRequest(BaseModel):
    password: str
    payment_pin: str


# Autopay schemas
class CreateMandateRequest(BaseModel):
    receiver_id: str
    amount: Decimal
    frequency: str = Field(..., description="2min, daily, weekly, monthly, yearly or asNeeded")
    start_date: datetime
    end_date: Optional[datetime] = None


class UpdateMandateStatusRequest(BaseModel):
    status: str = Field(..., description="paused, cancelled or expired")
    reason: Optional[str] = None
