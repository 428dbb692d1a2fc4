from pydantic import BaseModel, Field
from typing import Optional, List
from uuid import UUID

class CredentialCreate(BaseModel):
    phone: str = Field(min_length=1, max_length=40)
    access_code: Optional[str] = Field(default=None, max_length=32)
    source_domain: Optional[str] = None
    source_url: Optional[str] = None

class CredentialPatch(BaseModel):
    phone: Optional[str] = Field(default=None, max_length=40)
    access_code: Optional[str] = Field(default=None, max_length=32)
    source_domain: Optional[str] = None
    source_url: Optional[str] = None

class CredentialRead(BaseModel):
    id: UUID
    phone: str
    access_code: str
    is_used: bool
    used_at: Optional[str] = None
    source_domain: Optional[str] = None
    source_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class CredentialList(BaseModel):
    rows: List[CredentialRead]
    total: int
