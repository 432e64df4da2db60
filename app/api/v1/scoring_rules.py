"""Scoring rule administration endpoints."""

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import DbSession
from app.models.scoring_rule import RuleTargetType
from app.schemas.scoring import ScoringRuleRead, ScoringRuleUpsert
from app.services.scoring_rules import RuleTargetNotFoundError, ScoringRuleService

router = APIRouter()


@router.get(
    "",
    response_model=list[ScoringRuleRead],
    summary="List active scoring rules",
)
async def list_scoring_rules(
    db: DbSession,
    target_type: RuleTargetType | None = None,
    target_ids: str | None = Query(
        default=None,
        description="Comma-separated field or choice version ids",
    ),
) -> list[ScoringRuleRead]:
    ids = [t for t in target_ids.split(",") if t] if target_ids else None
    rules = await ScoringRuleService(db).get_rules(target_type, ids)
    return [ScoringRuleRead.model_validate(rule) for rule in rules]


@router.put(
    "",
    response_model=ScoringRuleRead,
    summary="Create or update a scoring rule",
)
async def set_scoring_rule(request: ScoringRuleUpsert, db: DbSession) -> ScoringRuleRead:
    """Set the colour for a field (per criteria) or a choice."""
    service = ScoringRuleService(db)
    try:
        rule = await service.set_rule(
            request.target_type,
            request.target_id,
            request.score_value,
            request.criteria,
            request.created_by,
        )
    except RuleTargetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ScoringRuleRead.model_validate(rule)


@router.delete(
    "/{rule_id}",
    summary="Soft-delete a scoring rule",
)
async def delete_scoring_rule(rule_id: str, db: DbSession) -> dict:
    """Deactivate a rule. Deleting an unknown or inactive rule also succeeds."""
    await ScoringRuleService(db).delete_rule(rule_id)
    return {"success": True}
