from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class RecipientIn(BaseModel):
    name: str
    phone: str
    avatar: Optional[str] = None
    message: Optional[str] = None  # 指定時はテンプレート展開より優先
    row_number: Optional[int] = None


class ReportCreateRequest(BaseModel):
    name: str
    message_template: Optional[str] = None  # 未指定なら既定テンプレート
    delivery_template: Optional[str] = None
    target_language: Optional[str] = None
    preview_only: bool = False
    recipients: list[RecipientIn] = Field(default_factory=list)


class DeliveryTemplateUpdate(BaseModel):
    delivery_template: Optional[str] = None


class EmergencyStopUpdate(BaseModel):
    active: bool


class ReportInfo(BaseModel):
    id: int
    name: str
    status: str
    target_language: Optional[str] = None
    message_template: str
    delivery_template: Optional[str] = None
    total_records: int
    processed_records: int
    success_count: int
    failed_count: int
    delivery_sent_count: int
    delivery_failed_count: int
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReportItemInfo(BaseModel):
    id: int
    report_id: int
    row_number: int
    name: str
    phone: str
    avatar: Optional[str] = None
    personalized_message: Optional[str] = None
    excluded: bool
    status: str
    artifact_url: Optional[str] = None
    share_url: Optional[str] = None
    error_message: Optional[str] = None
    generated_at: Optional[datetime] = None
    delivery_status: Optional[str] = None
    delivery_message_id: Optional[str] = None
    delivery_error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReportListResponse(BaseModel):
    total: int
    reports: list[ReportInfo]


class ReportItemListResponse(BaseModel):
    total: int
    items: list[ReportItemInfo]
