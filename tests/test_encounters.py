import asyncio

import pytest

from conftest import FakeEnrichment, face
from face_companion.encounters import (
    SAVE_PROMPT_TEXT,
    EncounterState,
    EncounterStateMachine,
    compose_notification,
)
from face_companion.exceptions import DatabaseError, SaveError
from face_companion.matcher import parse_embedding, serialize_embedding

NEW_PERSON = "You are meeting someone new. The new person is nearby."


def test_compose_prefixes_subject_for_predicate_text():
    assert compose_notification("This is Alice.", "Alice", "is nearby") == "This is Alice. Alice is nearby."
    assert (
        compose_notification("This is Alice.", "Alice", "Alice is reading a book")
        == "This is Alice. Alice is reading a book."
    )
    assert compose_notification("This is Alice.", "Alice", "  ") == "This is Alice."
    assert compose_notification("Lead.", "X", "Already done!") == "Lead. Already done!"


@pytest.mark.asyncio
async def test_unknown_pass_captures_and_logs(machine, speaker, db):
    result = await machine.process("snap-1", [face(0.5, 0.5)])
    await machine.wait_for_logs()

    assert result.is_known is False
    assert result.can_save is True
    assert machine.state == EncounterState.UNKNOWN
    assert machine.pending.image_b64 == "snap-1"
    assert speaker.spoken[0] == NEW_PERSON
    assert [e.action for e in db.list_encounters("owner-1")] == ["detected"]
    machine.reset()


@pytest.mark.asyncio
async def test_every_unknown_pass_is_logged(machine, db, clock):
    await machine.process("snap-1", [face(0.5, 0.5)])
    clock.advance(5)
    await machine.process("snap-2", [face(0.5, 0.5)])
    await machine.wait_for_logs()

    assert len(db.list_encounters("owner-1")) == 2
    assert machine.pending.image_b64 == "snap-2"
    machine.reset()


@pytest.mark.asyncio
async def test_known_pass_speaks_one_combined_notification(db, notifier, speaker):
    db.create_known_person("owner-1", "Alice", None, serialize_embedding(face(0.3, 0.4).embedding))
    enrichment = FakeEnrichment("Alice is watching TV wearing a red sweater")
    machine = EncounterStateMachine(db, notifier, enrichment, owner_id="owner-1")
    machine.refresh_registry()

    result = await machine.process("snap", [face(0.3, 0.41)])

    assert result.is_known is True
    assert result.confidence == 99
    assert machine.state == EncounterState.KNOWN
    assert enrichment.calls == ["Alice"]
    assert speaker.spoken == ["This is Alice. Alice is watching TV wearing a red sweater."]


@pytest.mark.asyncio
async def test_known_pass_clears_pending_capture(db, machine):
    await machine.process("snap", [face(0.9, 0.9)])
    db.create_known_person("owner-1", "Alice", None, serialize_embedding(face(0.3, 0.4).embedding))
    machine.refresh_registry()

    await machine.process("snap", [face(0.3, 0.4)])
    assert machine.pending is None
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_no_face_pass_returns_to_scanning(machine):
    await machine.process("snap", [face(0.5, 0.5)])
    assert await machine.process("", []) is None
    assert machine.state == EncounterState.SCANNING
    assert machine.current is None
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_save_prompt_offered_once_per_unknown_streak(machine, speaker, clock):
    await machine.process("snap", [face(0.5, 0.5)])
    await asyncio.sleep(0.1)
    assert speaker.spoken.count(SAVE_PROMPT_TEXT) == 1

    clock.advance(5)
    await machine.process("snap", [face(0.5, 0.5)])
    await asyncio.sleep(0.1)
    assert speaker.spoken.count(SAVE_PROMPT_TEXT) == 1

    await machine.process("", [])
    clock.advance(5)
    await machine.process("snap", [face(0.5, 0.5)])
    await asyncio.sleep(0.1)
    assert speaker.spoken.count(SAVE_PROMPT_TEXT) == 2
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_save_request_cancels_prompt(machine, speaker):
    await machine.process("snap", [face(0.5, 0.5)])
    machine.request_save()
    await asyncio.sleep(0.1)

    assert machine.state == EncounterState.SAVE_CANDIDATE
    assert SAVE_PROMPT_TEXT not in speaker.spoken
    await machine.wait_for_logs()


def test_request_save_without_capture_fails(machine):
    with pytest.raises(SaveError):
        machine.request_save()
    assert machine.state == EncounterState.SCANNING


@pytest.mark.asyncio
async def test_confirm_save_persists_and_recognizes_next_time(machine, db, speaker, clock):
    await machine.process("snap", [face(0.5, 0.5)])
    machine.request_save()

    person = await machine.confirm_save("  Bob ", "friend")

    assert person.name == "Bob"
    assert person.relationship == "friend"
    assert parse_embedding(person.face_encoding).tolist() == pytest.approx([0.5, 0.5])
    assert person.photo == "snap"
    assert machine.pending is None
    assert machine.state == EncounterState.SCANNING
    assert speaker.spoken[-1] == "I will remember Bob from now on."
    assert [p.name for p in db.list_known_people("owner-1")] == ["Bob"]

    clock.advance(5)
    result = await machine.process("snap", [face(0.5, 0.5)])
    assert result.is_known is True
    assert result.name == "Bob"
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_blank_name_keeps_candidate(machine, db):
    await machine.process("snap", [face(0.5, 0.5)])
    machine.request_save()
    pending = machine.pending

    with pytest.raises(SaveError):
        await machine.confirm_save("   ")

    assert machine.state == EncounterState.SAVE_CANDIDATE
    assert machine.pending is pending
    assert db.list_known_people("owner-1") == []
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_persistence_failure_allows_retry(machine, db, monkeypatch):
    await machine.process("snap", [face(0.5, 0.5)])
    machine.request_save()
    pending = machine.pending
    original = db.create_known_person

    def failing(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(db, "create_known_person", failing)
    with pytest.raises(SaveError):
        await machine.confirm_save("Bob")
    assert machine.state == EncounterState.SAVE_CANDIDATE
    assert machine.pending is pending

    monkeypatch.setattr(db, "create_known_person", original)
    person = await machine.confirm_save("Bob")
    assert person.name == "Bob"
    assert machine.state == EncounterState.SCANNING
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_cancel_save_clears_capture(machine):
    await machine.process("snap", [face(0.5, 0.5)])
    machine.request_save()
    machine.cancel_save()
    assert machine.pending is None
    assert machine.state == EncounterState.SCANNING
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_save_candidate_holds_capture_across_passes(machine):
    machine.capture("held", face(0.1, 0.9))
    await machine.process("other", [face(0.9, 0.1)])

    assert machine.state == EncounterState.SAVE_CANDIDATE
    assert machine.pending.image_b64 == "held"
    await machine.wait_for_logs()


@pytest.mark.asyncio
async def test_reset_discards_pass_in_flight(db, notifier, speaker):
    machine = EncounterStateMachine(db, notifier, FakeEnrichment(delay=0.1), owner_id="owner-1")
    pass_task = asyncio.create_task(machine.process("snap", [face(0.5, 0.5)]))
    await asyncio.sleep(0.02)
    machine.reset()

    assert await pass_task is None
    assert speaker.spoken == []
    assert machine.current is None


@pytest.mark.asyncio
async def test_encounter_log_failure_is_reported(machine, db, monkeypatch):
    def failing(*args, **kwargs):
        raise DatabaseError("database is locked")

    monkeypatch.setattr(db, "create_encounter", failing)
    errors = []
    machine.on_error(errors.append)

    result = await machine.process("snap", [face(0.5, 0.5)])
    await machine.wait_for_logs()

    assert result.is_known is False
    assert [str(e) for e in errors] == ["database is locked"]
    machine.reset()


@pytest.mark.asyncio
async def test_save_prompt_survives_unknown_passes_faster_than_its_delay(db, notifier, enrichment, speaker):
    machine = EncounterStateMachine(db, notifier, enrichment, owner_id="owner-1", save_prompt_delay=0.2)
    for _ in range(4):
        await machine.process("snap", [face(0.1, 0.1)])
        await asyncio.sleep(0.08)
    await asyncio.sleep(0.1)

    assert speaker.spoken.count(SAVE_PROMPT_TEXT) == 1
    await machine.wait_for_logs()
    machine.reset()


@pytest.mark.asyncio
async def test_known_pass_ends_streak_and_cancels_prompt(db, notifier, enrichment, speaker):
    db.create_known_person("owner-1", "Alice", None, serialize_embedding([0.9, 0.9]))
    machine = EncounterStateMachine(db, notifier, enrichment, owner_id="owner-1", save_prompt_delay=0.2)
    machine.refresh_registry()

    await machine.process("snap", [face(0.1, 0.1)])
    await asyncio.sleep(0.05)
    known = await machine.process("snap", [face(0.9, 0.9)])
    await asyncio.sleep(0.3)

    assert known.name == "Alice"
    assert SAVE_PROMPT_TEXT not in speaker.spoken
    await machine.wait_for_logs()
