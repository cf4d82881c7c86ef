from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List, Optional

from pyqvault.api.dependencies import AppServices, get_services
from pyqvault.models.feedback import Subject

router = APIRouter(prefix="/api/subjects")


class SubjectRequest(BaseModel):
    name: Optional[str] = None


class SubjectResponse(BaseModel):
    message: str
    subject: Subject


class SubjectListResponse(BaseModel):
    subjects: List[Subject]


@router.get("", response_model=SubjectListResponse)
async def list_subjects(services: AppServices = Depends(get_services)):
    """All subjects, sorted by name"""
    return SubjectListResponse(subjects=await services.subjects.list())


@router.post("", response_model=SubjectResponse, status_code=201)
async def add_subject(request: SubjectRequest, services: AppServices = Depends(get_services)):
    subject = await services.subjects.add(request.name)
    return SubjectResponse(message="Subject added", subject=subject)
