from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from link_ingest.schemas.links import LinkOut, LinkState
from link_ingest.services.repository import get_repository
from link_ingest.services.store import RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


@router.get("/{profile_id}/links", response_model=list[LinkOut])
async def list_profile_links(
    profile_id: str,
    repository=Depends(get_repository),
    state: LinkState | None = Query(default=None),
) -> list[LinkOut]:
    try:
        async with repository.transaction() as session:
            if await session.get_profile(profile_id) is None:
                raise RepositoryNotFoundError("profile not found")
            links = await session.list_links(profile_id, state=state)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [LinkOut(**asdict(link)) for link in links]
