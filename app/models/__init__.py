"""Database models for the applicant screening service."""

from app.models.application import Application, ApplicationFieldResponse, ApplicationStatus
from app.models.form import ChoiceVersion, FieldType, FieldVersion, Form
from app.models.participant import Participant
from app.models.processing_lock import ProcessingLock
from app.models.scoring_rule import RuleTargetType, ScoreValue, ScoringRule

__all__ = [
    # Forms
    "Form",
    "FieldVersion",
    "ChoiceVersion",
    "FieldType",
    # Scoring
    "ScoringRule",
    "ScoreValue",
    "RuleTargetType",
    # Applications
    "Participant",
    "Application",
    "ApplicationStatus",
    "ApplicationFieldResponse",
    # Pipeline
    "ProcessingLock",
]
