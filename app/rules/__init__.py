"""Deterministic scoring rules engine.

Colours stored answers red/yellow/green/na from configured scoring rules.
Scoring rule seeds can be declared in YAML and loaded from /rulesets.
"""

from app.rules.engine import RuleIndex, ScoringRulesEngine, aggregate
from app.rules.loader import RulesetLoader, ScoringSeed, SeedRule, compute_ruleset_hash, load_ruleset
from app.rules.models import AnswerEvaluation, ColorCounts, ResponseFacts, RuleSnapshot, total_score

__all__ = [
    "RuleIndex",
    "ScoringRulesEngine",
    "aggregate",
    "RulesetLoader",
    "ScoringSeed",
    "SeedRule",
    "load_ruleset",
    "compute_ruleset_hash",
    "AnswerEvaluation",
    "ColorCounts",
    "ResponseFacts",
    "RuleSnapshot",
    "total_score",
]
