from datetime import datetime, timedelta, timezone

from app.core.clock import UTCDateTime, utcnow


def test_utcnow_is_aware():
    assert utcnow().utcoffset() == timedelta(0)


def test_utc_datetime_normalises_offsets():
    column = UTCDateTime()
    noon = datetime(2024, 1, 1, 12, 0)

    local = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert column.process_bind_param(local, None) == noon
    assert column.process_bind_param(noon, None) == noon
    assert column.process_bind_param(None, None) is None
    assert column.process_result_value(noon, None) == noon.replace(tzinfo=timezone.utc)


async def test_datetimes_round_trip_as_utc(create_user, load_user):
    user = await create_user("a@example.com", last_login=utcnow())

    stored = await load_user(user.id)
    assert stored.created_at.utcoffset() == timedelta(0)
    assert stored.last_login.utcoffset() == timedelta(0)
    assert abs(stored.last_login - user.last_login) < timedelta(seconds=1)
