from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from link_ingest.ingestion.merge import accept_link, dismiss_link
from link_ingest.schemas.links import LinkOut
from link_ingest.services.repository import get_repository
from link_ingest.services.store import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("/{link_id}/accept", response_model=LinkOut)
async def accept(link_id: str, repository=Depends(get_repository)) -> LinkOut:
    try:
        async with repository.transaction() as session:
            link = await accept_link(session, link_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return LinkOut(**asdict(link))


@router.post("/{link_id}/dismiss", response_model=LinkOut)
async def dismiss(link_id: str, repository=Depends(get_repository)) -> LinkOut:
    try:
        async with repository.transaction() as session:
            link = await dismiss_link(session, link_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return LinkOut(**asdict(link))
