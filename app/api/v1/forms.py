"""Form administration endpoints: sync, versioned fields and choices."""

from fastapi import APIRouter, HTTPException, status

from app.api.deps import DbSession, FormProviderDep
from app.schemas.form import ChoiceVersionRead, FieldVersionRead, FieldVersionWithChoices, FormSyncResult
from app.services.form_sync import FormNotFoundError, FormSyncService
from app.services.typeform import FormProviderError
from app.services.version_store import FieldVersionStore

router = APIRouter()


@router.post(
    "/{form_id}/sync",
    response_model=FormSyncResult,
    summary="Sync a form definition",
)
async def sync_form(
    form_id: str,
    db: DbSession,
    provider: FormProviderDep,
) -> FormSyncResult:
    """Fetch the form from the provider and reconcile its versioned fields."""
    service = FormSyncService(db, provider)
    try:
        return await service.sync_form(form_id)
    except FormProviderError as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Form not found at provider: {form_id}",
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        )


@router.get(
    "/{form_id}/fields",
    response_model=list[FieldVersionWithChoices],
    summary="List active fields of a form",
)
async def list_form_fields(
    form_id: str,
    db: DbSession,
    provider: FormProviderDep,
) -> list[FieldVersionWithChoices]:
    """Active field versions ordered by hierarchy level then display order."""
    try:
        return await FormSyncService(db, provider).get_fields_with_choices(form_id)
    except FormNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get(
    "/fields/{field_version_id}/children",
    response_model=list[FieldVersionRead],
    summary="List child fields of a group",
)
async def list_child_fields(field_version_id: str, db: DbSession) -> list[FieldVersionRead]:
    versions = await FieldVersionStore(db).get_child_fields(field_version_id)
    return [FieldVersionRead.model_validate(v) for v in versions]


@router.get(
    "/fields/{field_version_id}/choices",
    response_model=list[ChoiceVersionRead],
    summary="List active choices of a field",
)
async def list_field_choices(field_version_id: str, db: DbSession) -> list[ChoiceVersionRead]:
    choices = await FieldVersionStore(db).get_choice_versions(field_version_id)
    return [ChoiceVersionRead.model_validate(c) for c in choices]


@router.delete(
    "/{form_id}",
    summary="Deactivate a form",
)
async def delete_form(
    form_id: str,
    db: DbSession,
    provider: FormProviderDep,
) -> dict:
    """Soft-deactivate a form with its fields, choices and their scoring rules."""
    try:
        await FormSyncService(db, provider).delete_form(form_id)
    except FormNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"success": True}
