from typing import Iterable, List, Optional

from pyqvault.models.paper import Paper, PaperFile

DOWNVOTE_THRESHOLD = 3


def is_file_visible(file: PaperFile) -> bool:
    return not file.removed and file.downvotes < DOWNVOTE_THRESHOLD


def filter_paper(paper: Paper) -> Optional[Paper]:
    """
    Reader view of a paper: only files below the downvote threshold whose
    payload still exists, or None when no file is left. Files keep their
    stored index so clients can still vote on them.
    """
    files = [f for f in paper.files if is_file_visible(f)]
    if not files:
        return None
    if len(files) == len(paper.files):
        return paper
    return paper.model_copy(update={"files": files})


def filter_papers(papers: Iterable[Paper]) -> List[Paper]:
    visible = []
    for paper in papers:
        view = filter_paper(paper)
        if view is not None:
            visible.append(view)
    return visible
