from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from pyqvault.api.dependencies import AppServices, get_services
from pyqvault.models.feedback import Feedback

router = APIRouter(prefix="/api")


class FeedbackRequest(BaseModel):
    message: Optional[str] = None
    email: Optional[str] = None


class FeedbackResponse(BaseModel):
    success: bool
    message: str
    feedback: Feedback


@router.post("/feedback", response_model=FeedbackResponse, status_code=201)
async def submit_feedback(request: FeedbackRequest, services: AppServices = Depends(get_services)):
    feedback = await services.feedback.submit(request.message, request.email)
    return FeedbackResponse(success=True, message="Feedback submitted", feedback=feedback)
