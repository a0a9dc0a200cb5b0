from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from tracker import crud, models
from tracker.earnings import compute_daily_ranking
from tracker.errors import ConflictError, NotFoundError, ValidationError
from tracker import schemas

DAY = date(2024, 5, 10)


# ---------- Rides ----------

def test_create_ride_freezes_total_earnings(db, make_user, make_ride):
    u = make_user()
    r = make_ride(u.id, platform="99", value=20, bonus=2, multiplier="1.5")
    assert r.total_earnings == 32
    assert r.multiplier == 1.5

    stored = db.get(models.Ride, r.id)
    assert stored.total_earnings == 32


def test_create_ride_rejects_unknown_platform_before_persisting(db, make_user):
    u = make_user()
    with pytest.raises(ValidationError):
        crud.create_ride(db, u.id, schemas.RideCreate(platform="bolt", value=10))
    assert db.query(models.Ride).count() == 0


def test_get_rides_for_day_uses_inclusive_bounds(db, make_user, make_ride):
    u = make_user()
    make_ride(u.id, date=datetime(2024, 5, 10, 0, 0))
    make_ride(u.id, date=datetime(2024, 5, 10, 23, 59, 59))
    make_ride(u.id, date=datetime(2024, 5, 11, 0, 0))
    assert len(crud.get_rides_for_day(db, u.id, DAY)) == 2


# ---------- Expenses ----------

def test_upsert_expense_overwrites_same_day(db, make_user):
    u = make_user()
    first = crud.upsert_expense(db, u.id, DAY, fuel=20, food=15, toll=5, other=0, total=40)
    second = crud.upsert_expense(db, u.id, datetime(2024, 5, 10, 18, 0), fuel=10, food=0, toll=0, other=0, total=10)

    assert second.id == first.id
    assert second.total == 10
    assert second.fuel == 10
    assert db.query(models.Expense).count() == 1


def test_upsert_expense_inserts_per_day(db, make_user):
    u = make_user()
    crud.upsert_expense(db, u.id, DAY, fuel=1, food=0, toll=0, other=0, total=1)
    crud.upsert_expense(db, u.id, DAY + timedelta(days=1), fuel=2, food=0, toll=0, other=0, total=2)
    assert [e.total for e in crud.list_expenses(db, u.id)] == [2, 1]


def test_missing_expense(db, make_user):
    u = make_user()
    assert crud.get_expense(db, u.id, DAY) is None
    with pytest.raises(NotFoundError):
        crud.get_expense_or_raise(db, u.id, DAY)


# ---------- Online sessions ----------

def test_session_duration_is_floored_minutes(db, make_user):
    u = make_user()
    s = crud.start_session(db, u.id, now=datetime(2024, 5, 10, 10, 0))
    ended = crud.end_session(db, s.id, now=datetime(2024, 5, 10, 10, 47, 59))
    assert ended.duration_minutes == 47
    assert ended.end_time == datetime(2024, 5, 10, 10, 47, 59)
    assert crud.get_open_session(db, u.id) is None


def test_only_one_open_session_per_user(db, make_user):
    u = make_user()
    other = make_user("other")
    crud.start_session(db, u.id)
    with pytest.raises(ConflictError):
        crud.start_session(db, u.id)
    # other users are unaffected
    assert crud.start_session(db, other.id).user_id == other.id


def test_store_constraint_blocks_a_second_open_row(db, make_user):
    u = make_user()
    crud.start_session(db, u.id)
    db.add(models.OnlineSession(user_id=u.id, start_time=datetime.now(), is_open=True))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_lost_start_race_is_a_conflict(db, make_user, monkeypatch):
    u = make_user()
    crud.start_session(db, u.id)
    # the pre-check misses a session opened concurrently
    monkeypatch.setattr(crud, "get_open_session", lambda db, user_id: None)
    with pytest.raises(ConflictError):
        crud.start_session(db, u.id)
    assert db.query(models.OnlineSession).filter_by(user_id=u.id).count() == 1


def test_end_before_start_clamps_duration(db, make_user):
    u = make_user()
    s = crud.start_session(db, u.id, now=datetime(2024, 5, 10, 10, 0))
    ended = crud.end_session(db, s.id, now=datetime(2024, 5, 10, 9, 30))
    assert ended.duration_minutes == 0


def test_end_session_is_terminal(db, make_user):
    u = make_user()
    s = crud.start_session(db, u.id, now=datetime(2024, 5, 10, 10, 0))
    crud.end_session(db, s.id, now=datetime(2024, 5, 10, 10, 47))
    with pytest.raises(NotFoundError):
        crud.end_session(db, s.id, now=datetime(2024, 5, 10, 12, 0))
    assert crud.get_session(db, s.id).duration_minutes == 47


def test_end_unknown_session(db):
    with pytest.raises(NotFoundError):
        crud.end_session(db, 999)


def test_new_session_after_closing(db, make_user):
    u = make_user()
    s = crud.start_session(db, u.id, now=datetime(2024, 5, 10, 8, 0))
    crud.end_session(db, s.id, now=datetime(2024, 5, 10, 9, 0))
    s2 = crud.start_session(db, u.id, now=datetime(2024, 5, 10, 10, 0))
    crud.end_session(db, s2.id, now=datetime(2024, 5, 10, 10, 30))
    assert crud.time_online_minutes(db, u.id, DAY) == 90


def test_time_online_counts_open_session(db, make_user):
    u = make_user()
    crud.start_session(db, u.id, now=datetime(2024, 5, 10, 10, 0))
    assert crud.time_online_minutes(db, u.id, DAY, now=datetime(2024, 5, 10, 10, 20)) == 20


# ---------- Ranking ----------

def test_ranking_groups_sorts_and_scopes_by_city(db, make_user, make_ride):
    a = make_user("a", city="Recife")
    b = make_user("b", city="Recife")
    c = make_user("c", city="Olinda")
    make_ride(a.id, value=10)
    make_ride(a.id, value=15)
    make_ride(b.id, value=40)
    make_ride(c.id, value=500)
    make_ride(b.id, value=100, date=datetime(2024, 5, 9, 12, 0))

    ranking = compute_daily_ranking(crud.get_rides_for_city_and_day(db, "Recife", DAY))

    assert [(e.user_id, e.total_earnings, e.rides_count) for e in ranking] == [(b.id, 40, 1), (a.id, 25, 2)]
    assert ranking[0].name == "B"
    assert ranking[0].instagram is None


def test_ranking_tie_break_and_limit(db, make_user, make_ride):
    users = [make_user(f"u{i}") for i in range(12)]
    for u in reversed(users):
        make_ride(u.id, value=10)

    ranking = compute_daily_ranking(crud.get_rides_for_city_and_day(db, "Recife", DAY))

    assert len(ranking) == 10
    assert [e.user_id for e in ranking] == sorted(u.id for u in users)[:10]


def test_ranking_empty():
    assert compute_daily_ranking([]) == []


def test_ranking_carries_instagram(db, make_user, make_ride):
    u = make_user("a")
    crud.update_user(db, u.id, schemas.UserUpdate(instagram="@a_driver"))
    make_ride(u.id, value=10)
    [entry] = compute_daily_ranking(crud.get_rides_for_city_and_day(db, "Recife", DAY))
    assert entry.instagram == "@a_driver"


# ---------- Profile ----------

def test_update_user_changes_only_sent_fields(db, make_user):
    u = make_user("a", city="Recife")
    updated = crud.update_user(db, u.id, schemas.UserUpdate(city=" Olinda ", phone="8199"))
    assert updated.city == "Olinda"
    assert updated.phone == "8199"
    assert updated.name == "A"


def test_update_user_rejects_blank_name(db, make_user):
    u = make_user("a")
    with pytest.raises(ValidationError):
        crud.update_user(db, u.id, schemas.UserUpdate(name="  "))
    with pytest.raises(NotFoundError):
        crud.update_user(db, 999, schemas.UserUpdate(name="X"))


# ---------- Chat ----------

def test_chat_is_scoped_to_city_and_newest_first(db, make_user):
    a = make_user("a", city="Recife")
    b = make_user("b", city="Recife")
    c = make_user("c", city="Natal")
    crud.send_chat_message(db, a, "bom dia", now=datetime(2024, 5, 10, 8, 0))
    crud.send_chat_message(db, b, "  trânsito na BR  ", now=datetime(2024, 5, 10, 9, 0))
    crud.send_chat_message(db, c, "oi", now=datetime(2024, 5, 10, 9, 30))

    rows = crud.get_chat_messages(db, "Recife")
    assert [(m.message, author.name) for m, author in rows] == [("trânsito na BR", "B"), ("bom dia", "A")]
    assert len(crud.get_chat_messages(db, "Recife", limit=1)) == 1


def test_empty_chat_message_rejected(db, make_user):
    with pytest.raises(ValidationError):
        crud.send_chat_message(db, make_user(), "   ")
    assert db.query(models.ChatMessage).count() == 0
