"""Field/choice version store.

Keeps an append-only history of a form's fields and choices:

- a field gets a new version only when a meaningful property changes;
  a group's child list is never part of that comparison, since children
  are versioned by their own recursive calls
- a field that reappears after deactivation is reactivated in place so
  scoring rules bound to its version id keep working
- opinion scale fields get synthetic step choices ``{field_id}-{n}``
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.form import ChoiceVersion, FieldType, FieldVersion
from app.schemas.form import ProviderChoice, ProviderField

logger = logging.getLogger(__name__)


# Type-specific properties whose change forces a new field version.
# "fields" (group children) is deliberately absent.
SIGNIFICANT_PROPERTIES = (
    "choices",
    "steps",
    "start_at_one",
    "allow_multiple_selection",
    "allow_other_choice",
    "randomize",
    "required",
)


@dataclass
class DesiredChoice:
    """Choice as it should exist after reconciliation."""

    choice_id: str
    label: str
    ref: str | None
    display_order: int


@dataclass
class FieldSyncStats:
    """Counters collected while walking a form's fields."""

    processed: int = 0
    failed: int = 0
    new_versions: int = 0
    failed_field_ids: list[str] = field(default_factory=list)


def _choice_ids(choices: Any) -> list[str]:
    if not isinstance(choices, list):
        return []
    return sorted(str(c.get("id")) for c in choices if isinstance(c, dict))


def _property_changed(name: str, old: Any, new: Any) -> bool:
    if old is None and new is None:
        return False
    if (old is None) != (new is None):
        return True
    if name == "choices":
        return _choice_ids(old) != _choice_ids(new)
    if isinstance(old, dict) and isinstance(new, dict):
        # Nested objects compare by key set only
        return sorted(old.keys()) != sorted(new.keys())
    if type(old) is not type(new):
        return True
    return old != new


def field_has_changed(
    existing: FieldVersion,
    provider_field: ProviderField,
    parent_version_id: str | None,
    level: int,
) -> bool:
    """Whether ``provider_field`` differs meaningfully from ``existing``."""
    if (
        existing.field_title != provider_field.title
        or existing.field_type != provider_field.type
        or (existing.field_ref or None) != (provider_field.ref or None)
        or existing.parent_field_version_id != parent_version_id
        or existing.hierarchy_level != level
    ):
        return True

    old_props = existing.properties or {}
    new_props = provider_field.properties or {}
    return any(
        _property_changed(name, old_props.get(name), new_props.get(name))
        for name in SIGNIFICANT_PROPERTIES
    )


def scale_choices(provider_field: ProviderField) -> list[DesiredChoice] | None:
    """Synthetic step choices for an opinion scale, or None if steps is invalid."""
    steps = provider_field.properties.get("steps")
    if not isinstance(steps, int) or isinstance(steps, bool) or steps <= 0:
        return None

    start = 1 if provider_field.properties.get("start_at_one") else 0
    return [
        DesiredChoice(
            choice_id=f"{provider_field.id}-{number}",
            label=str(number),
            ref=str(number),
            display_order=number - start,
        )
        for number in range(start, start + steps)
    ]


def provider_choices(choices: Sequence[ProviderChoice]) -> list[DesiredChoice]:
    """Desired choices for provider-defined options, ordered as delivered."""
    return [
        DesiredChoice(
            choice_id=choice.id,
            label=choice.label,
            ref=choice.ref,
            display_order=index,
        )
        for index, choice in enumerate(choices)
    ]


class FieldVersionStore:
    """Versioned persistence for form fields and their choices."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_version(self, form_id: str, field_id: str) -> FieldVersion | None:
        """Return the active version of an external field."""
        result = await self.session.execute(
            select(FieldVersion)
            .where(
                FieldVersion.form_id == form_id,
                FieldVersion.field_id == field_id,
                FieldVersion.is_active == True,  # noqa: E712
            )
            .order_by(FieldVersion.version_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_latest_inactive_version(
        self, form_id: str, field_id: str
    ) -> FieldVersion | None:
        result = await self.session.execute(
            select(FieldVersion)
            .where(
                FieldVersion.form_id == form_id,
                FieldVersion.field_id == field_id,
                FieldVersion.is_active == False,  # noqa: E712
            )
            .order_by(FieldVersion.version_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert_field(
        self,
        provider_field: ProviderField,
        form_id: str,
        parent_version_id: str | None,
        level: int,
        version_date: datetime,
        display_order: int,
        stats: FieldSyncStats | None = None,
    ) -> str | None:
        """Reconcile one provider field (and its subtree) into the store.

        Returns the active version id, or None if the field could not be
        processed. Errors are logged and contained to this field.
        """
        stats = stats if stats is not None else FieldSyncStats()

        try:
            version_id, is_new_version = await self._upsert_field_version(
                provider_field,
                form_id,
                parent_version_id,
                level,
                version_date,
                display_order,
            )

            if provider_field.type == FieldType.OPINION_SCALE:
                if is_new_version:
                    desired = scale_choices(provider_field)
                    if desired is None:
                        logger.warning(
                            f"Opinion scale {provider_field.id} has invalid steps; "
                            f"no choices generated"
                        )
                    else:
                        await self.reconcile_choices(version_id, desired, version_date)
            elif provider_field.choices:
                await self.reconcile_choices(
                    version_id, provider_choices(provider_field.choices), version_date
                )

            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Failed to process field {provider_field.id}: {e}", exc_info=True)
            stats.failed += 1
            stats.failed_field_ids.append(provider_field.id)
            return None

        stats.processed += 1
        if is_new_version:
            stats.new_versions += 1

        for index, child in enumerate(provider_field.children):
            await self.upsert_field(
                child,
                form_id,
                version_id,
                level + 1,
                version_date,
                index,
                stats,
            )

        return version_id

    async def _upsert_field_version(
        self,
        provider_field: ProviderField,
        form_id: str,
        parent_version_id: str | None,
        level: int,
        version_date: datetime,
        display_order: int,
    ) -> tuple[str, bool]:
        """Returns (version id, whether the version is new or reactivated)."""
        active = await self.get_active_version(form_id, provider_field.id)

        if active is not None:
            if not field_has_changed(active, provider_field, parent_version_id, level):
                if active.display_order != display_order:
                    # Reordering is cosmetic; keep the version
                    active.display_order = display_order
                return active.id, False

            logger.info(f"Field {provider_field.id} changed, creating new version")
            active.deactivate()
            await self._deactivate_choices(active.id)
            new_version = self._build_version(
                provider_field,
                form_id,
                parent_version_id,
                level,
                version_date,
                display_order,
                is_scored=active.is_scored,
            )
            self.session.add(new_version)
            await self.session.flush()
            return new_version.id, True

        inactive = await self._get_latest_inactive_version(form_id, provider_field.id)
        if inactive is not None:
            logger.info(f"Reactivating field {provider_field.id}")
            inactive.field_title = provider_field.title
            inactive.field_type = provider_field.type
            inactive.field_ref = provider_field.ref
            inactive.properties = provider_field.properties
            inactive.parent_field_version_id = parent_version_id
            inactive.hierarchy_level = level
            inactive.display_order = display_order
            inactive.version_date = version_date
            inactive.reactivate()
            await self.session.flush()
            return inactive.id, True

        logger.info(f"Creating field {provider_field.id} ({provider_field.type})")
        new_version = self._build_version(
            provider_field,
            form_id,
            parent_version_id,
            level,
            version_date,
            display_order,
            is_scored=False,
        )
        self.session.add(new_version)
        await self.session.flush()
        return new_version.id, True

    @staticmethod
    def _build_version(
        provider_field: ProviderField,
        form_id: str,
        parent_version_id: str | None,
        level: int,
        version_date: datetime,
        display_order: int,
        is_scored: bool,
    ) -> FieldVersion:
        return FieldVersion(
            form_id=form_id,
            field_id=provider_field.id,
            field_title=provider_field.title,
            field_type=provider_field.type,
            field_ref=provider_field.ref,
            properties=provider_field.properties,
            parent_field_version_id=parent_version_id,
            hierarchy_level=level,
            display_order=display_order,
            version_date=version_date,
            is_active=True,
            is_scored=is_scored,
        )

    async def reconcile_choices(
        self,
        field_version_id: str,
        desired: list[DesiredChoice],
        version_date: datetime,
    ) -> None:
        """Bring a field version's choices in line with ``desired``.

        Missing choices are deactivated; matching active choices are updated
        in place only when label, ref or order differ; inactive matches are
        reactivated; anything else is inserted.
        """
        existing = await self.get_choice_versions(field_version_id, active_only=False)
        desired_ids = {choice.choice_id for choice in desired}

        active_by_id: dict[str, ChoiceVersion] = {}
        inactive_by_id: dict[str, ChoiceVersion] = {}
        for choice in existing:
            if choice.is_active:
                if choice.choice_id not in desired_ids:
                    choice.deactivate()
                else:
                    active_by_id[choice.choice_id] = choice
            else:
                inactive_by_id.setdefault(choice.choice_id, choice)

        for wanted in desired:
            current = active_by_id.get(wanted.choice_id)
            if current is not None:
                if (
                    current.choice_label != wanted.label
                    or current.choice_ref != wanted.ref
                    or current.display_order != wanted.display_order
                ):
                    current.choice_label = wanted.label
                    current.choice_ref = wanted.ref
                    current.display_order = wanted.display_order
                    current.version_date = version_date
                continue

            dormant = inactive_by_id.get(wanted.choice_id)
            if dormant is not None:
                dormant.choice_label = wanted.label
                dormant.choice_ref = wanted.ref
                dormant.display_order = wanted.display_order
                dormant.version_date = version_date
                dormant.reactivate()
                continue

            self.session.add(
                ChoiceVersion(
                    field_version_id=field_version_id,
                    choice_id=wanted.choice_id,
                    choice_label=wanted.label,
                    choice_ref=wanted.ref,
                    display_order=wanted.display_order,
                    version_date=version_date,
                    is_active=True,
                )
            )

        await self.session.flush()

    async def _deactivate_choices(self, field_version_id: str) -> None:
        await self.session.execute(
            update(ChoiceVersion)
            .where(
                ChoiceVersion.field_version_id == field_version_id,
                ChoiceVersion.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )

    async def deactivate_missing_fields(self, form_id: str, present_field_ids: set[str]) -> int:
        """Deactivate active fields of a form absent from ``present_field_ids``."""
        result = await self.session.execute(
            select(FieldVersion).where(
                FieldVersion.form_id == form_id,
                FieldVersion.is_active == True,  # noqa: E712
            )
        )
        deactivated = 0
        for version in result.scalars().all():
            if version.field_id not in present_field_ids:
                logger.info(f"Field {version.field_id} no longer on form, deactivating")
                version.deactivate()
                await self._deactivate_choices(version.id)
                deactivated += 1

        await self.session.commit()
        return deactivated

    async def get_field_versions(
        self, form_id: str, active_only: bool = True
    ) -> Sequence[FieldVersion]:
        """Field versions of a form ordered by hierarchy level then display order."""
        query = select(FieldVersion).where(FieldVersion.form_id == form_id)
        if active_only:
            query = query.where(FieldVersion.is_active == True)  # noqa: E712
        query = query.order_by(
            FieldVersion.hierarchy_level, FieldVersion.display_order, FieldVersion.version_date
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def get_child_fields(
        self, parent_version_id: str, active_only: bool = True
    ) -> Sequence[FieldVersion]:
        """Direct children of a group field version."""
        query = select(FieldVersion).where(
            FieldVersion.parent_field_version_id == parent_version_id
        )
        if active_only:
            query = query.where(FieldVersion.is_active == True)  # noqa: E712
        result = await self.session.execute(query.order_by(FieldVersion.display_order))
        return result.scalars().all()

    async def get_choice_versions(
        self, field_version_id: str, active_only: bool = True
    ) -> Sequence[ChoiceVersion]:
        """Choices of a field version ordered by display order."""
        query = select(ChoiceVersion).where(ChoiceVersion.field_version_id == field_version_id)
        if active_only:
            query = query.where(ChoiceVersion.is_active == True)  # noqa: E712
        result = await self.session.execute(
            query.order_by(ChoiceVersion.display_order, ChoiceVersion.version_date)
        )
        return result.scalars().all()
