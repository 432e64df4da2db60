"""YAML scoring seed loader with integrity hashing."""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from app.models.scoring_rule import ScoreValue

# Default seeds directory
RULESETS_DIR = Path(__file__).parent.parent.parent / "rulesets"


class SeedError(ValueError):
    """Raised when a seed file is structurally invalid."""


def compute_ruleset_hash(content: str) -> str:
    """Compute SHA256 hash of seed file content.

    Args:
        content: Raw YAML content string

    Returns:
        SHA256 hex digest
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class SeedRule:
    """One rule declared against an external field id."""

    field_id: str
    score: ScoreValue
    choice: str | None = None
    criteria: dict[str, Any] | None = None


@dataclass
class ScoringSeed:
    """Parsed seed file."""

    id: str
    version: str
    form_id: str
    description: str = ""
    rules: list[SeedRule] = field(default_factory=list)
    hash: str = ""


def parse_seed(data: dict[str, Any], content_hash: str = "") -> ScoringSeed:
    """Validate and convert a loaded YAML document.

    Raises:
        SeedError: If required keys are missing or a score is unknown
    """
    if not isinstance(data, dict) or not data.get("form_id"):
        raise SeedError("Seed must be a mapping with a form_id")

    rules = []
    for index, entry in enumerate(data.get("rules") or []):
        if not isinstance(entry, dict) or not entry.get("field_id"):
            raise SeedError(f"Rule {index} has no field_id")
        try:
            score = ScoreValue(str(entry.get("score", "")).lower())
        except ValueError:
            raise SeedError(f"Rule {index} has unknown score {entry.get('score')!r}") from None
        criteria = entry.get("criteria")
        if criteria is not None and not isinstance(criteria, dict):
            raise SeedError(f"Rule {index} criteria must be a mapping")
        choice = entry.get("choice")
        rules.append(
            SeedRule(
                field_id=str(entry["field_id"]),
                score=score,
                # YAML reads bare scale steps (1, 2, ...) as ints
                choice=str(choice) if choice is not None else None,
                criteria=criteria,
            )
        )

    return ScoringSeed(
        id=str(data.get("id", "unknown")),
        version=str(data.get("version", "unknown")),
        form_id=str(data["form_id"]),
        description=data.get("description", ""),
        rules=rules,
        hash=content_hash,
    )


def load_ruleset(
    filename: str,
    rulesets_dir: Path | None = None,
) -> ScoringSeed:
    """Load a seed YAML file and compute its hash.

    Args:
        filename: Name of the seed file (e.g., "example-screening-v1.yaml")
        rulesets_dir: Directory containing seeds (defaults to /rulesets)

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        SeedError: If the document is not a valid seed
    """
    if rulesets_dir is None:
        rulesets_dir = RULESETS_DIR

    filepath = rulesets_dir / filename

    if not filepath.exists():
        raise FileNotFoundError(f"Ruleset not found: {filepath}")

    content = filepath.read_text(encoding="utf-8")
    return parse_seed(yaml.safe_load(content), compute_ruleset_hash(content))


class RulesetLoader:
    """Seed loader with caching."""

    def __init__(self, rulesets_dir: Path | None = None) -> None:
        self.rulesets_dir = rulesets_dir or RULESETS_DIR
        self._cache: dict[str, ScoringSeed] = {}

    def load(self, filename: str, use_cache: bool = True) -> ScoringSeed:
        """Load a seed, from cache when available."""
        if use_cache and filename in self._cache:
            return self._cache[filename]

        seed = load_ruleset(filename, self.rulesets_dir)
        self._cache[filename] = seed
        return seed

    def clear_cache(self) -> None:
        self._cache.clear()

    def list_rulesets(self) -> list[str]:
        """List available seed files."""
        return sorted(f.name for f in self.rulesets_dir.glob("*.yaml"))
