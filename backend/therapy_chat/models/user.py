# user models: therapist, patient, group and assignment schemas

from typing import Optional
from pydantic import BaseModel, Field


class UserSummary(BaseModel):
    id: str
    name: str
    role: str
    email: Optional[str] = None


class GroupResponse(BaseModel):
    id: str
    name: str
    patient_count: int = Field(0, alias="patientCount")

    model_config = {"populate_by_name": True}


class AssignmentsUpdate(BaseModel):
    group_ids: list[str] = Field(..., alias="groupIds")

    model_config = {"populate_by_name": True}


class AssignmentsResponse(BaseModel):
    therapist_id: str = Field(..., alias="therapistId")
    group_ids: list[str] = Field(default_factory=list, alias="groupIds")

    model_config = {"populate_by_name": True}
