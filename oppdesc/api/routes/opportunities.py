from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from oppdesc.core.config import ExtractorConfig, get_settings
from oppdesc.schemas.descriptions import DescriptionOut
from oppdesc.schemas.opportunities import OpportunityDetailOut
from oppdesc.services.descriptions import (
    DescriptionBusyError,
    DescriptionService,
    OpportunityNotFoundError,
    classify_source,
    get_description_fetcher,
    list_status,
)
from oppdesc.services.fetcher import DescriptionFetcher
from oppdesc.services.repository import RepositoryNotFoundError, RepositoryUnavailableError, get_repository

BUSY_RETRY_AFTER_SECONDS = "1"

router = APIRouter()


def get_description_service(
    repository=Depends(get_repository),
    fetcher: DescriptionFetcher = Depends(get_description_fetcher),
) -> DescriptionService:
    settings = get_settings()
    return DescriptionService(
        repository,
        fetcher,
        extractor_config=ExtractorConfig.from_settings(settings),
        lock_wait_seconds=settings.lock_wait_seconds,
    )


@router.get("/{notice_id}", response_model=OpportunityDetailOut)
async def get_opportunity(notice_id: str, repository=Depends(get_repository)) -> OpportunityDetailOut:
    try:
        opportunity = await repository.get_opportunity(notice_id)
        description = await repository.get_description(notice_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return OpportunityDetailOut(
        notice_id=opportunity.notice_id,
        title=opportunity.title,
        department=opportunity.department,
        sub_tier=opportunity.sub_tier,
        office=opportunity.office,
        posted_date=opportunity.posted_date,
        response_deadline=opportunity.response_deadline,
        type=opportunity.type,
        type_of_set_aside=opportunity.type_of_set_aside,
        active=opportunity.active,
        description=opportunity.description,
        content_hash=opportunity.content_hash,
        description_status=list_status(description, classify_source(opportunity.description)),
        raw=opportunity.raw,
    )


@router.get("/{notice_id}/description", response_model=DescriptionOut)
async def get_opportunity_description(
    notice_id: str,
    refresh: bool = Query(default=False),
    service: DescriptionService = Depends(get_description_service),
) -> DescriptionOut:
    try:
        return await service.get_description(notice_id, refresh=refresh)
    except OpportunityNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DescriptionBusyError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
            headers={"Retry-After": BUSY_RETRY_AFTER_SECONDS},
        ) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
