from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timezone
from typing import Any, Protocol

from pydantic import BaseModel

from ..errors import NotFoundError, ValidationError
from ..persistence import Transaction
from ..schemas import ChapterCreate, ChapterType, ChapterUpdate, UnlockStatus, YearlyNarrativeUpsert
from ..store import InMemoryStore
from ..versioning import utcnow
from .records import VersionedRecordStore, coerce_payload, record_from_doc

logger = logging.getLogger(__name__)

REDACTED_FIELDS = ("content", "media_urls")


def calculate_age(birth_date: date, today: date) -> int:
    age = today.year - birth_date.year - ((today.month, today.day) < (birth_date.month, birth_date.day))
    return max(age, 0)


def _anniversary(birth_date: date, years: int) -> date:
    try:
        return birth_date.replace(year=birth_date.year + years)
    except ValueError:
        # born on 29 February
        return date(birth_date.year + years, 3, 1)


def _as_moment(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _days_until(target: datetime, now: datetime) -> int:
    return max(math.ceil((target - now).total_seconds() / 86400), 0)


def compute_unlock_status(
    chapter: dict[str, Any],
    child_birth_date: date | None,
    now: datetime | None = None,
) -> UnlockStatus:
    """An unlock date wins over an unlock age; an age gate without a known birth date stays locked."""
    now = _as_moment(now or utcnow())
    unlock_age = chapter.get("unlock_age")
    unlock_date = chapter.get("unlock_date")
    current_age = calculate_age(child_birth_date, now.date()) if child_birth_date else None

    if unlock_date is not None:
        unlock_moment = _as_moment(unlock_date)
        is_locked = now < unlock_moment
        return UnlockStatus(
            isLocked=is_locked,
            unlockAge=unlock_age,
            unlockDate=unlock_moment,
            currentAge=current_age,
            daysUntilUnlock=_days_until(unlock_moment, now) if is_locked else 0,
        )

    if unlock_age is not None:
        if current_age is None or child_birth_date is None:
            return UnlockStatus(isLocked=True, unlockAge=unlock_age)
        is_locked = current_age < unlock_age
        unlock_moment = _as_moment(_anniversary(child_birth_date, unlock_age))
        return UnlockStatus(
            isLocked=is_locked,
            unlockAge=unlock_age,
            currentAge=current_age,
            yearsUntilUnlock=max(unlock_age - current_age, 0),
            daysUntilUnlock=_days_until(unlock_moment, now) if is_locked else 0,
        )

    return UnlockStatus(isLocked=False, currentAge=current_age)


def redact(chapter: dict[str, Any]) -> dict[str, Any]:
    redacted = {**chapter, "content": "", "media_urls": []}
    if "versions" in redacted:
        redacted["versions"] = [
            {**entry, **{name: ([] if name == "media_urls" else "") for name in REDACTED_FIELDS if name in entry}}
            for entry in redacted["versions"]
        ]
    return redacted


class ChapterStore(VersionedRecordStore):
    """Narrative chapters, optionally gated behind an unlock age or date."""

    collection = "emotional/chapters"
    kind = "chapter"
    versioned_fields = (
        "title",
        "type",
        "content",
        "excerpt",
        "media_urls",
        "media_captions",
        "unlock_age",
        "unlock_date",
        "locked_teaser",
    )
    create_model = ChapterCreate
    update_model = ChapterUpdate

    def present(
        self,
        chapter: dict[str, Any],
        child_birth_date: date | None,
        include_content: bool,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        status = compute_unlock_status(chapter, child_birth_date, now or self.clock())
        chapter = {**chapter, "is_locked": status.isLocked}
        if status.isLocked and not include_content:
            return redact(chapter)
        return chapter

    async def create(
        self,
        owner_id: str,
        payload: BaseModel | dict[str, Any],
        record_id: str | None = None,
    ) -> dict[str, Any]:
        self._guard(owner_id)
        fields = self.fields_from(self.create_model, payload)
        existing = await self._query_raw(owner_id)
        fields.update({"sort_order": len(existing), "published_at": None})
        record_id = record_id or InMemoryStore.make_id()
        path = self.document_path(owner_id, record_id)
        document = self.new_document(owner_id, fields)
        await self._call("create", lambda: self.db.set(path, document))
        logger.info("created chapter %s (%s)", record_id, fields["type"])
        return record_from_doc(record_id, document)

    async def get(
        self,
        owner_id: str,
        record_id: str,
        child_birth_date: date | None = None,
        include_content: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        self._guard(owner_id)
        chapter = await self._get_raw(owner_id, record_id)
        if chapter is None:
            return None
        return self.present(chapter, child_birth_date, include_content, now)

    async def list(
        self,
        owner_id: str,
        chapter_type: ChapterType | str | None = None,
        child_birth_date: date | None = None,
        include_content: bool = False,
        only_unlocked: bool = False,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        self._guard(owner_id)
        filters = {"type": ChapterType(chapter_type).value} if chapter_type else None
        rows = await self._query_raw(owner_id, filters)
        chapters = [self.present(row, child_birth_date, include_content, now) for row in rows]
        if only_unlocked:
            chapters = [chapter for chapter in chapters if not chapter["is_locked"]]
        chapters.sort(key=lambda chapter: (chapter.get("sort_order", 0), chapter["created_at"]))
        return chapters

    async def unlock_status(
        self,
        owner_id: str,
        record_id: str,
        child_birth_date: date | None,
        now: datetime | None = None,
    ) -> UnlockStatus:
        self._guard(owner_id)
        chapter = await self._get_raw(owner_id, record_id)
        if chapter is None:
            raise NotFoundError(self.kind, record_id)
        return compute_unlock_status(chapter, child_birth_date, now or self.clock())

    async def publish(self, owner_id: str, record_id: str) -> dict[str, Any]:
        self._guard(owner_id)
        return await self._patch(owner_id, record_id, {"published_at": self.clock()})

    async def link_transactions(self, owner_id: str, record_id: str, transaction_ids: list[str]) -> dict[str, Any]:
        self._guard(owner_id)
        chapter = await self._get_raw(owner_id, record_id)
        if chapter is None:
            raise NotFoundError(self.kind, record_id)
        linked = list(dict.fromkeys([*chapter.get("linked_transaction_ids", []), *transaction_ids]))
        return await self._patch(owner_id, record_id, {"linked_transaction_ids": linked})

    async def link_years(self, owner_id: str, record_id: str, years: list[int]) -> dict[str, Any]:
        self._guard(owner_id)
        chapter = await self._get_raw(owner_id, record_id)
        if chapter is None:
            raise NotFoundError(self.kind, record_id)
        linked = sorted({*chapter.get("linked_years", []), *years})
        return await self._patch(owner_id, record_id, {"linked_years": linked})

    async def reorder(self, owner_id: str, chapter_ids: list[str]) -> None:
        self._guard(owner_id)
        if len(set(chapter_ids)) != len(chapter_ids):
            raise ValidationError("chapter ids must be unique")
        paths = [(self.document_path(owner_id, chapter_id), chapter_id) for chapter_id in chapter_ids]

        async def apply(tx: Transaction) -> None:
            for index, (path, chapter_id) in enumerate(paths):
                current = await tx.get(path)
                if current is None:
                    raise NotFoundError(self.kind, chapter_id)
                current["sort_order"] = index
                tx.set(path, current)

        await self._call("reorder", lambda: self.db.run_transaction(apply))

    async def upcoming_unlocks(
        self,
        owner_id: str,
        child_birth_date: date | None,
        within_years: int = 2,
        now: datetime | None = None,
    ) -> list[tuple[dict[str, Any], UnlockStatus]]:
        self._guard(owner_id)
        now = _as_moment(now or self.clock())
        horizon_days = within_years * 365
        upcoming: list[tuple[dict[str, Any], UnlockStatus]] = []
        for row in await self._query_raw(owner_id):
            status = compute_unlock_status(row, child_birth_date, now)
            if not status.isLocked or status.daysUntilUnlock is None:
                continue
            if status.daysUntilUnlock <= horizon_days:
                upcoming.append((self.present(row, child_birth_date, False, now), status))
        upcoming.sort(key=lambda item: item[1].daysUntilUnlock or 0)
        return upcoming

    async def chapters_by_year(
        self,
        owner_id: str,
        year: int,
        child_birth_date: date | None = None,
        include_content: bool = False,
    ) -> list[dict[str, Any]]:
        chapters = await self.list(owner_id, child_birth_date=child_birth_date, include_content=include_content)
        return [chapter for chapter in chapters if year in chapter.get("linked_years", [])]


class NarrativeGenerator(Protocol):
    async def generate(self, narrative: dict[str, Any]) -> str:
        ...


def narrative_key(owner_id: str, year: int) -> str:
    return f"{owner_id}:{year}"


class YearlyNarrativeStore(VersionedRecordStore):
    """One narrative per (owner, year), saved as an upsert."""

    collection = "emotional/yearlyNarratives"
    kind = "yearly narrative"
    versioned_fields = (
        "summary",
        "highlights",
        "lessons_learned",
        "what_we_decided",
        "what_we_learned",
        "challenges_faced",
        "gratitude",
        "family_context",
        "special_letter",
    )
    create_model = YearlyNarrativeUpsert
    update_model = YearlyNarrativeUpsert
    list_defaults = ("highlights", "lessons_learned", "year_photos", "photo_captions")

    async def save(
        self,
        owner_id: str,
        year: int,
        payload: YearlyNarrativeUpsert | dict[str, Any],
        edit_note: str | None = None,
    ) -> dict[str, Any]:
        self._guard(owner_id)
        if not 1900 <= year <= 2200:
            raise ValidationError(f"year out of range: {year}")
        upsert = coerce_payload(YearlyNarrativeUpsert, payload)
        edit_note = edit_note if edit_note is not None else upsert.editNote
        changes = self.fields_from(YearlyNarrativeUpsert, upsert, partial=True)
        record_id = narrative_key(owner_id, year)
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            now = self.clock()
            if current is None:
                fields = {name: changes.get(name) for name in self.versioned_fields}
                fields.update({name: changes.get(name) or [] for name in self.list_defaults})
                fields.update(
                    {
                        "year": year,
                        "child_age_at_year": changes.get("child_age_at_year"),
                        "ai_educational_content": None,
                        "ai_educational_generated_at": None,
                    }
                )
                document = self.new_document(owner_id, fields, now)
            else:
                document = self.next_document(current, changes, edit_note, now)
            tx.set(path, document)
            return document

        document = await self._call("save", lambda: self.db.run_transaction(apply))
        logger.info("yearly narrative %s at version %d", year, document["current_version"])
        return record_from_doc(record_id, document)

    async def get_year(self, owner_id: str, year: int) -> dict[str, Any] | None:
        return await self.get(owner_id, narrative_key(owner_id, year))

    async def list_narratives(self, owner_id: str) -> list[dict[str, Any]]:
        rows = await self.list(owner_id)
        rows.sort(key=lambda row: row["year"], reverse=True)
        return rows

    async def delete_year(self, owner_id: str, year: int) -> None:
        await self.delete(owner_id, narrative_key(owner_id, year))

    async def cache_ai_content(self, owner_id: str, year: int, content: str) -> dict[str, Any]:
        self._guard(owner_id)
        return await self._patch(
            owner_id,
            narrative_key(owner_id, year),
            {"ai_educational_content": content, "ai_educational_generated_at": self.clock()},
        )

    async def ensure_ai_content(self, owner_id: str, year: int, generator: NarrativeGenerator) -> str | None:
        narrative = await self.get_year(owner_id, year)
        if narrative is None:
            raise NotFoundError(self.kind, str(year))
        if narrative.get("ai_educational_content"):
            return narrative["ai_educational_content"]
        try:
            content = await generator.generate(narrative)
        except Exception:
            # generator output is optional
            logger.exception("narrative generator failed for year %s", year)
            return None
        await self.cache_ai_content(owner_id, year, content)
        return content
