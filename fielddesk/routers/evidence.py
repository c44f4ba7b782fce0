"""Completion evidence download."""
from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from ..auth import get_current_user
from ..evidence import LocalEvidenceStore, get_evidence_store
from ..models import User

router = APIRouter(prefix="/evidence", tags=["evidence"])


@router.get("/{filename}")
def serve_evidence(
    filename: str,
    current_user: User = Depends(get_current_user),
    store: LocalEvidenceStore = Depends(get_evidence_store),
):
    path = store.path_for(filename)
    return FileResponse(path, headers={"Cache-Control": "private, max-age=3600"})
