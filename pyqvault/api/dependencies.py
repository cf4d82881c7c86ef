import secrets
from dataclasses import dataclass
from typing import Optional
from fastapi import Header, Request

from pyqvault.config import Config
from pyqvault.errors import AuthenticationError
from pyqvault.services.database_service import PaperDatabase
from pyqvault.services.feedback_service import FeedbackService, SubjectService
from pyqvault.services.paper_service import PaperService
from pyqvault.services.storage_service import StorageUploader
from pyqvault.services.vote_service import VoteLedger


@dataclass
class AppServices:
    config: Config
    database: PaperDatabase
    uploader: StorageUploader
    papers: PaperService
    votes: VoteLedger
    feedback: FeedbackService
    subjects: SubjectService


def get_services(request: Request) -> AppServices:
    """Dependency injection for the service container built at startup"""
    return request.app.state.services


def require_admin(
    request: Request,
    username: Optional[str] = Header(None),
    password: Optional[str] = Header(None),
):
    """Shared admin credential passed as `username` / `password` headers"""
    config: Config = request.app.state.services.config
    if not config.ADMIN_PASSWORD:
        raise AuthenticationError("Admin access is not configured")

    user_ok = secrets.compare_digest((username or "").encode(), config.ADMIN_USERNAME.encode())
    password_ok = secrets.compare_digest((password or "").encode(), config.ADMIN_PASSWORD.encode())
    if not (user_ok and password_ok):
        raise AuthenticationError("Unauthorized")
