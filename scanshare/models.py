from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# Item payloads
class ScanItem(BaseModel):
    code: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    internalCode: Optional[str] = None
    productName: Optional[str] = None
    price: Optional[float] = None


class ScanDelta(ScanItem):
    """Change to a code of an already-synced session.

    ``quantity`` is relative to what the server last acknowledged, so it can be
    zero (details-only edit) or negative (downward correction).
    """
    quantity: int = 1


class SessionFlags(BaseModel):
    askInternalCode: bool = False
    askProductName: bool = False
    askPrice: bool = False


# Request bodies
class CreateSessionRequest(SessionFlags):
    name: str = Field(..., min_length=1)
    type: Optional[str] = None
    scans: list[ScanItem] = []


class AddScansRequest(BaseModel):
    scans: list[ScanDelta]


class DeleteScansRequest(BaseModel):
    codes: list[str]


class VerifyAccessRequest(BaseModel):
    accessCode: str


# Responses
class SessionCreatedResponse(SessionFlags):
    shortCode: str
    accessCode: str
    name: str
    type: Optional[str] = None
    totalScans: int


class AddScansResponse(BaseModel):
    shortCode: str
    totalScans: int


class ScanRow(BaseModel):
    code: str
    quantity: int
    internalCode: Optional[str] = None
    productName: Optional[str] = None
    price: Optional[float] = None
    scannedAt: Optional[datetime] = None


class SessionDetail(SessionFlags):
    shortCode: str
    name: str
    type: Optional[str] = None
    createdAt: Optional[datetime] = None
    totalScans: int
    scans: list[ScanRow]


class ErrorResponse(BaseModel):
    detail: str
