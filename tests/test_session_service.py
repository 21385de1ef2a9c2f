import pytest

from models.session_models import MembershipState, SessionStatus
from service.exceptions import SessionNotFoundError, SessionRejectedError, StorageUnavailableError


async def test_create_session_for_active_code(registry, sessions, storage):
    code = await registry.generate_one("Alice")

    session = await sessions.create_session("math", code.lower())

    assert session.room_name == "math"
    assert session.access_code == code
    assert session.status == SessionStatus.ACTIVE
    assert storage.get_session(session.id)["status"] == "active"


@pytest.mark.parametrize("revoke, reason", [(False, "not_found"), (True, "revoked")])
async def test_create_session_rejects_invalid_codes(registry, sessions, storage, revoke, reason):
    code = await registry.generate_one()
    if revoke:
        await registry.revoke(code)
    else:
        code = "NOPE2345"

    with pytest.raises(SessionRejectedError) as exc:
        await sessions.create_session("math", code)

    assert exc.value.reason == reason
    assert storage.list_active_sessions("math") == []


async def test_create_session_rejects_when_validation_is_unreachable(registry, sessions, storage, monkeypatch):
    code = await registry.generate_one()

    def unavailable(code):
        raise StorageUnavailableError("timeout")

    monkeypatch.setattr(storage, "get_code", unavailable)
    with pytest.raises(SessionRejectedError) as exc:
        await sessions.create_session("math", code)
    assert exc.value.reason == "unavailable"


async def test_create_session_rejects_when_session_cannot_be_stored(registry, sessions, storage, monkeypatch):
    code = await registry.generate_one()

    def unavailable(room_name, access_code):
        raise StorageUnavailableError("disk full")

    monkeypatch.setattr(storage, "create_session", unavailable)
    with pytest.raises(SessionRejectedError) as exc:
        await sessions.open_membership("math", code)
    assert exc.value.reason == "unavailable"
    assert sessions.memberships == set()


async def test_open_membership_and_close_all(registry, sessions, engine):
    code = await registry.generate_one()

    membership = await sessions.open_membership("math", code, engine)
    membership.conference_joined("me", "Teacher")
    await membership.settle()

    assert membership.state == MembershipState.ACTIVE
    assert membership in sessions.memberships
    participants = await sessions.list_participants(membership.session.id)
    assert [p.participant_id for p in participants] == ["me"]

    await sessions.close()
    assert membership.is_ended
    assert sessions.memberships == set()
    assert (await sessions.get_session(membership.session.id)).status == SessionStatus.ENDED


async def test_ended_membership_is_forgotten(registry, sessions):
    code = await registry.generate_one()
    membership = await sessions.open_membership("math", code)

    membership.end()
    await membership.settle()

    assert membership not in sessions.memberships


async def test_list_and_end_sessions(registry, sessions):
    code = await registry.generate_one()
    first = await sessions.create_session("math", code)
    second = await sessions.create_session("math", code)
    await sessions.create_session("art", code)

    active = await sessions.list_active_sessions("math")
    assert {s.id for s in active} == {first.id, second.id}

    ended = await sessions.end_session(first.id)
    assert ended.status == SessionStatus.ENDED
    again = await sessions.end_session(first.id)
    assert again.ended_at == ended.ended_at

    assert [s.id for s in await sessions.list_active_sessions("math")] == [second.id]


async def test_unknown_session(sessions):
    with pytest.raises(SessionNotFoundError):
        await sessions.get_session("missing")
    with pytest.raises(SessionNotFoundError):
        await sessions.end_session("missing")
    with pytest.raises(SessionNotFoundError):
        await sessions.add_participant("missing", "p1")


async def test_participant_rows_are_keyed_by_engine_id(registry, sessions):
    code = await registry.generate_one()
    session = await sessions.create_session("math", code)

    await sessions.add_participant(session.id, "p1", "Bob")
    await sessions.add_participant(session.id, "p1", "Robert")
    rows = await sessions.list_participants(session.id)
    assert [(r.participant_id, r.display_name) for r in rows] == [("p1", "Robert")]

    assert await sessions.remove_participant(session.id, "p1") is True
    assert await sessions.remove_participant(session.id, "p1") is False
    assert await sessions.list_participants(session.id) == []
