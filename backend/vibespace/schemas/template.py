# backend/vibespace/schemas/template.py
from datetime import datetime
from typing import Optional, List, Dict
from uuid import UUID
from pydantic import BaseModel, Field

from vibespace.models.template import TemplateStatus


class TemplateBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    tech_stacks: List[str] = Field(default_factory=list)
    base_ct_template: Optional[str] = Field(None, max_length=255)
    env_vars: Optional[Dict[str, str]] = None


class TemplateCreate(TemplateBase):
    parent_template_id: Optional[UUID] = None
    is_default: bool = False


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    tech_stacks: Optional[List[str]] = None
    base_ct_template: Optional[str] = Field(None, max_length=255)
    env_vars: Optional[Dict[str, str]] = None
    is_default: Optional[bool] = None


class TemplateStatusUpdate(BaseModel):
    """Fields written alongside a status transition."""
    status: TemplateStatus
    vmid: Optional[int] = None
    node: Optional[str] = None
    storage: Optional[str] = None
    error_message: Optional[str] = None
    staging_container_ip: Optional[str] = None


class TemplateResponse(TemplateBase):
    id: UUID
    user_id: UUID
    parent_template_id: Optional[UUID] = None
    inherited_tech_stacks: List[str] = Field(default_factory=list)
    vmid: Optional[int] = None
    node: Optional[str] = None
    storage: Optional[str] = None
    status: TemplateStatus
    error_message: Optional[str] = None
    staging_container_ip: Optional[str] = None
    is_default: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
