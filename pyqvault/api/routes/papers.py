from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel
from typing import List, Optional

from pyqvault.api.dependencies import AppServices, get_services
from pyqvault.models.document import Upload
from pyqvault.models.paper import Paper, PaperFile

router = APIRouter()


class DiscardedFile(BaseModel):
    filename: str
    reason: Optional[str] = None
    detail: Optional[str] = None


class UploadResponse(BaseModel):
    success: bool
    message: str
    paper: Paper
    discarded: List[DiscardedFile] = []


class VoteResponse(BaseModel):
    message: str
    file: PaperFile


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_paper(
    files: Optional[List[UploadFile]] = File(None),
    subject: Optional[str] = Form(None),
    semester: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    services: AppServices = Depends(get_services),
):
    """Upload one or more files as a new paper"""
    # One byte past the limit is enough for the size check
    limit = services.config.MAX_UPLOAD_BYTES + 1
    uploads = []
    for f in files or []:
        data = await f.read(limit)
        uploads.append(Upload(filename=f.filename or "", media_type=f.content_type, data=data))

    result = await services.papers.submit(uploads, subject, semester, description)

    return UploadResponse(
        success=True,
        message="Uploaded (compressed when smaller)",
        paper=result.paper,
        discarded=[
            DiscardedFile(filename=o.filename, reason=o.reason, detail=o.detail)
            for o in result.discarded
        ],
    )


@router.get("/papers", response_model=List[Paper])
async def list_papers(
    subject: Optional[str] = None,
    semester: Optional[str] = None,
    services: AppServices = Depends(get_services),
):
    """Visible papers, newest first"""
    return await services.papers.list_visible(subject, semester)


@router.put("/papers/{paper_id}/files/{index}/upvote", response_model=VoteResponse)
async def upvote_file(paper_id: str, index: int, services: AppServices = Depends(get_services)):
    file = await services.votes.upvote(paper_id, index)
    return VoteResponse(message="File upvoted", file=file)


@router.put("/papers/{paper_id}/files/{index}/downvote", response_model=VoteResponse)
async def downvote_file(paper_id: str, index: int, services: AppServices = Depends(get_services)):
    file = await services.votes.downvote(paper_id, index)
    return VoteResponse(message="File downvoted", file=file)
