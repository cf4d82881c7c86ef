from fastapi import APIRouter, Depends
from typing import List

from pyqvault.api.dependencies import AppServices, get_services, require_admin
from pyqvault.models.paper import Paper

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/papers", response_model=List[Paper])
async def admin_list_papers(services: AppServices = Depends(get_services)):
    """Every paper with every file, hidden ones included"""
    return await services.papers.list_all()


@router.delete("/papers/{paper_id}")
async def admin_delete_paper(paper_id: str, services: AppServices = Depends(get_services)):
    """Delete a paper and all of its stored files"""
    paper = await services.papers.delete(paper_id)
    return {"message": "Deleted successfully", "id": paper.id, "files_deleted": len(paper.files)}
