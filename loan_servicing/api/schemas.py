"""
Pydantic schemas for API requests

Amounts travel as decimal strings and dates as ISO strings.
"""

import base64
import binascii
from datetime import date
from decimal import Decimal
from typing import List, Optional, Union
from pydantic import BaseModel, Field

from ..money import to_decimal


def optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def optional_amount(value: Optional[str]) -> Optional[Decimal]:
    return to_decimal(value) if value not in (None, "") else None


# Credit schemas
class RegisterCreditRequest(BaseModel):
    borrower_identity: str
    borrower_name: str = ""
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate: str = Field(..., description="Annual percentage rate, 36 for 36%")
    term_months: int = Field(..., ge=1)
    start_date: str  # ISO date string
    reference: Optional[str] = None
    deductora_id: Optional[str] = None
    monthly_policy: str = "0"


class FormalizeCreditRequest(BaseModel):
    formalized_on: Optional[str] = None


class SchedulePreviewRequest(BaseModel):
    principal: str
    annual_rate: str
    term_months: int = Field(..., ge=1)
    start_date: str


class PaymentRequest(BaseModel):
    amount: str
    payment_date: Optional[str] = None
    source: str = "manual"  # manual or transfer
    target_installments: Optional[List[int]] = None
    reference: Optional[str] = None


class ExtraordinaryPaymentRequest(BaseModel):
    amount: str
    strategy: str = "reduce_amount"  # reduce_amount or reduce_term
    payment_date: Optional[str] = None
    reference: Optional[str] = None


class PayoffRequest(BaseModel):
    amount: Optional[str] = None  # Defaults to the quoted total
    payment_date: Optional[str] = None
    reference: Optional[str] = None


# Batch schemas
class BatchPreviewRequest(BaseModel):
    content: Optional[str] = Field(None, description="CSV text of the payroll file")
    content_base64: Optional[str] = Field(None, description="Base64 of a binary payroll file (.xlsx)")
    file_name: str = ""
    processing_date: Optional[str] = None
    deductora_id: Optional[str] = None
    period: Optional[str] = Field(None, description="YYYY-MM, defaults to the processing month")

    def file_content(self) -> Union[bytes, str]:
        if self.content_base64:
            try:
                return base64.b64decode(self.content_base64, validate=True)
            except binascii.Error as e:
                raise ValueError(f"content_base64 is not valid base64: {e}")
        if self.content is None:
            raise ValueError("Either content or content_base64 is required")
        return self.content


class BatchCommitRequest(BatchPreviewRequest):
    token: str


class BatchVoidRequest(BaseModel):
    reason: str


# Pending balance schemas
class PendingToInstallmentRequest(BaseModel):
    amount: Optional[str] = None  # Defaults to the full remainder
    credit_id: Optional[str] = None
    target_installments: Optional[List[int]] = None
    payment_date: Optional[str] = None


class PendingToPrincipalRequest(BaseModel):
    amount: Optional[str] = None
    credit_id: Optional[str] = None
    strategy: str = "reduce_amount"
    payment_date: Optional[str] = None


# Ledger and admin schemas
class LedgerRetryRequest(BaseModel):
    limit: int = Field(10, ge=1)
    dry_run: bool = False


class ArrearsSweepRequest(BaseModel):
    as_of: Optional[str] = None
