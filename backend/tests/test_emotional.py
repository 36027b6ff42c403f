from datetime import date, datetime, timezone

import pytest

from bitacora.errors import NotFoundError
from bitacora.services.emotional import calculate_age, compute_unlock_status, narrative_key

from conftest import OWNER

BIRTH = date(2016, 6, 1)


def test_calculate_age_counts_birthdays() -> None:
    assert calculate_age(BIRTH, date(2026, 5, 31)) == 9
    assert calculate_age(BIRTH, date(2026, 6, 1)) == 10
    assert calculate_age(date(2030, 1, 1), date(2026, 1, 1)) == 0


def test_age_gate_unlocks_on_birthday() -> None:
    chapter = {"unlock_age": 10, "unlock_date": None}
    before = compute_unlock_status(chapter, BIRTH, datetime(2026, 5, 31, tzinfo=timezone.utc))
    assert before.isLocked
    assert before.currentAge == 9
    assert before.yearsUntilUnlock == 1
    assert before.daysUntilUnlock == 1

    after = compute_unlock_status(chapter, BIRTH, datetime(2026, 6, 1, tzinfo=timezone.utc))
    assert not after.isLocked
    assert after.daysUntilUnlock == 0


def test_unlock_date_wins_over_age() -> None:
    chapter = {"unlock_age": 5, "unlock_date": datetime(2030, 1, 1, tzinfo=timezone.utc)}
    status = compute_unlock_status(chapter, BIRTH, datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert status.isLocked
    assert status.currentAge == 9


def test_age_gate_without_birth_date_stays_locked() -> None:
    status = compute_unlock_status({"unlock_age": 1}, None, datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert status.isLocked
    assert compute_unlock_status({}, None).isLocked is False


@pytest.mark.asyncio
async def test_locked_chapter_is_redacted_until_unlocked(chapters, clock) -> None:
    clock.current = datetime(2026, 5, 31, 12, tzinfo=timezone.utc)
    created = await chapters.create(
        OWNER,
        {
            "title": "Para tus diez años",
            "type": "letter",
            "content": "Querida hija...",
            "mediaUrls": ["https://img/carta.jpg"],
            "unlockAge": 10,
            "lockedTeaser": "Una carta te espera",
        },
    )

    locked = await chapters.get(OWNER, created["id"], child_birth_date=BIRTH)
    assert locked["is_locked"] is True
    assert locked["content"] == ""
    assert locked["media_urls"] == []
    assert locked["locked_teaser"] == "Una carta te espera"
    assert all(entry["content"] == "" for entry in locked["versions"])

    clock.advance(days=1)
    unlocked = await chapters.get(OWNER, created["id"], child_birth_date=BIRTH)
    assert unlocked["is_locked"] is False
    assert unlocked["content"] == "Querida hija..."


@pytest.mark.asyncio
async def test_chapter_list_order_and_reorder(chapters, clock) -> None:
    ids = []
    for title in ("uno", "dos", "tres"):
        row = await chapters.create(OWNER, {"title": title, "type": "memory"})
        ids.append(row["id"])
        clock.advance(minutes=1)

    assert [row["title"] for row in await chapters.list(OWNER)] == ["uno", "dos", "tres"]
    await chapters.reorder(OWNER, list(reversed(ids)))
    assert [row["title"] for row in await chapters.list(OWNER)] == ["tres", "dos", "uno"]

    with pytest.raises(NotFoundError):
        await chapters.reorder(OWNER, [ids[0], "missing"])
    assert [row["title"] for row in await chapters.list(OWNER)] == ["tres", "dos", "uno"]


@pytest.mark.asyncio
async def test_chapter_update_publish_and_links(chapters, clock) -> None:
    row = await chapters.create(OWNER, {"title": "Borrador", "type": "memory", "content": "v1"})
    clock.advance(hours=1)
    row = await chapters.update(OWNER, row["id"], {"content": "v2", "editNote": "más detalle"})
    assert row["current_version"] == 2
    assert row["versions"][0]["content"] == "v1"

    published = await chapters.publish(OWNER, row["id"])
    assert published["published_at"] == clock()
    assert published["current_version"] == 2

    linked = await chapters.link_years(OWNER, row["id"], [2025, 2024, 2025])
    assert linked["linked_years"] == [2024, 2025]
    assert [chapter["id"] for chapter in await chapters.chapters_by_year(OWNER, 2024)] == [row["id"]]


@pytest.mark.asyncio
async def test_upcoming_unlocks(chapters, clock) -> None:
    clock.current = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await chapters.create(OWNER, {"title": "pronto", "type": "wish", "unlockAge": 10})
    await chapters.create(OWNER, {"title": "lejos", "type": "wish", "unlockAge": 18})
    await chapters.create(OWNER, {"title": "abierto", "type": "wish"})

    upcoming = await chapters.upcoming_unlocks(OWNER, BIRTH)
    assert [chapter["title"] for chapter, _ in upcoming] == ["pronto"]
    assert upcoming[0][1].daysUntilUnlock == 151


@pytest.mark.asyncio
async def test_narrative_upsert_keeps_one_record_per_year(narratives, clock) -> None:
    first = await narratives.save(OWNER, 2025, {"summary": "Un buen año", "highlights": ["primer diente"]})
    assert first["id"] == narrative_key(OWNER, 2025)
    assert first["current_version"] == 1
    assert first["year_photos"] == []

    clock.advance(days=3)
    second = await narratives.save(OWNER, 2025, {"gratitude": "a los abuelos", "editNote": "agradecimientos"})
    assert second["current_version"] == 2
    assert second["summary"] == "Un buen año"
    assert second["versions"][1]["gratitude"] == "a los abuelos"
    assert second["versions"][1]["edit_note"] == "agradecimientos"

    await narratives.save(OWNER, 2024, {"summary": "El comienzo"})
    assert [row["year"] for row in await narratives.list_narratives(OWNER)] == [2025, 2024]

    await narratives.delete_year(OWNER, 2024)
    assert await narratives.get_year(OWNER, 2024) is None


@pytest.mark.asyncio
async def test_ai_content_is_cached_and_failures_are_tolerated(narratives) -> None:
    await narratives.save(OWNER, 2025, {"summary": "Un buen año"})

    class Generator:
        calls = 0

        async def generate(self, narrative):
            Generator.calls += 1
            return f"Lección sobre {narrative['year']}"

    class Broken:
        async def generate(self, narrative):
            raise RuntimeError("model unavailable")

    assert await narratives.ensure_ai_content(OWNER, 2025, Broken()) is None
    assert await narratives.ensure_ai_content(OWNER, 2025, Generator()) == "Lección sobre 2025"
    assert await narratives.ensure_ai_content(OWNER, 2025, Generator()) == "Lección sobre 2025"
    assert Generator.calls == 1
    cached = await narratives.get_year(OWNER, 2025)
    assert cached["current_version"] == 1
