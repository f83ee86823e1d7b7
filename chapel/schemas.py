from pydantic import BaseModel, Field


class ConfirmUploadRequest(BaseModel):
    confirmed_by: str | None = None


class ClearStudentRequest(BaseModel):
    student_id: str
    service_id: str
    level: str
    reason_id: str
    admin_id: str
    note: str | None = None


class BatchClearRequest(BaseModel):
    student_ids: list[str] = Field(default_factory=list)
    service_id: str
    level: str
    reason_id: str
    admin_id: str
    note: str | None = None


class RevertClearanceRequest(BaseModel):
    student_id: str
    service_id: str
    level: str
    admin_id: str


class ResolveIssueRequest(BaseModel):
    admin_id: str
