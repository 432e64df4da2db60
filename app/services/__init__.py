"""Business logic services."""

from app.services.applications import ApplicationService
from app.services.intake import WebhookIntakeService
from app.services.scoring import ScoringService
from app.services.scoring_rules import ScoringRuleService

__all__ = [
    "ApplicationService",
    "WebhookIntakeService",
    "ScoringService",
    "ScoringRuleService",
]
