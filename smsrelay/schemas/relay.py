from pydantic import BaseModel, Field
from typing import Optional, List
from uuid import UUID

class RelaySubmit(BaseModel):
    phone: str = Field(min_length=1, max_length=40)
    access_code: str = Field(min_length=1, max_length=40)

class SmsCodeSubmit(BaseModel):
    code: str = Field(min_length=1, max_length=32)

class RelayRequestRead(BaseModel):
    id: UUID
    short_id: str
    credential_id: UUID
    phone: Optional[str] = None
    status: str
    sms_code: Optional[str] = None
    allowed_operations: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class RelayRequestList(BaseModel):
    rows: List[RelayRequestRead]
    total: int

class StatusHistoryRead(BaseModel):
    id: UUID
    request_id: UUID
    from_status: Optional[str] = None
    to_status: str
    actor: str
    comment: Optional[str] = None
    created_at: Optional[str] = None

class WorkerSessionRead(BaseModel):
    active: bool
    request: Optional[RelayRequestRead] = None
