from fastapi import APIRouter, Depends, HTTPException, status

from selfstudy_ingest.core.auth import Principal
from selfstudy_ingest.core.security import get_callback_principal, get_human_principal
from selfstudy_ingest.schemas.callbacks import CallbackAck, ConnectionTestOut, DocumentMatcherCallback
from selfstudy_ingest.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from selfstudy_ingest.services.gateway import ClassifierConfig, ExternalMappingGateway, get_classifier_config
from selfstudy_ingest.services.records import InvalidTransitionError, utcnow
from selfstudy_ingest.services.repository import get_repository

router = APIRouter()


def _gateway(repository, classifier_config: ClassifierConfig | None) -> ExternalMappingGateway:
    if classifier_config is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="external classifier is not configured",
        )
    return ExternalMappingGateway(repository, classifier_config)


@router.post("/document-matcher/callback", response_model=CallbackAck)
async def document_matcher_callback(
    payload: DocumentMatcherCallback,
    principal: Principal = Depends(get_callback_principal),
    repository=Depends(get_repository),
    classifier_config: ClassifierConfig | None = Depends(get_classifier_config),
) -> CallbackAck:
    gateway = _gateway(repository, classifier_config)
    try:
        outcome = await gateway.handle_callback(payload)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (RepositoryConflictError, InvalidTransitionError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CallbackAck(status=outcome.status, action=outcome.action)


@router.post("/document-matcher/test", response_model=ConnectionTestOut)
async def probe_document_matcher(
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
    classifier_config: ClassifierConfig | None = Depends(get_classifier_config),
) -> ConnectionTestOut:
    try:
        principal.require_scopes({"imports:review"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    gateway = _gateway(repository, classifier_config)
    probe = await gateway.test_connection()
    return ConnectionTestOut(
        success=probe.success,
        status_code=probe.status_code,
        latency_ms=probe.latency_ms,
        error=probe.error,
        tested_at=utcnow(),
    )
