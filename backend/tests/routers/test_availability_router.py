from datetime import date, timedelta

import pytest
from conftest import FakeStore, build_test_app, future_day
from excursion_booking.config import Settings
from excursion_booking.domain.errors import ValidationError
from excursion_booking.models import TourSession
from excursion_booking.routers.availability import requested_days
from fastapi.testclient import TestClient

pytestmark = pytest.mark.usefixtures("fake_repositories")

TODAY = date(2030, 3, 1)


def test_requested_days_defaults_to_one_week() -> None:
    days = requested_days(day=None, start_date=None, end_date=None, today=TODAY)
    assert days == [TODAY + timedelta(days=i) for i in range(7)]


def test_requested_days_single_date() -> None:
    assert requested_days(day=date(2030, 3, 5), start_date=None, end_date=None, today=TODAY) == [date(2030, 3, 5)]
    with pytest.raises(ValidationError) as excinfo:
        requested_days(day=date(2030, 2, 1), start_date=None, end_date=None, today=TODAY)
    assert "date" in excinfo.value.as_dict()


def test_requested_days_range_skips_past_days() -> None:
    days = requested_days(day=None, start_date=date(2030, 2, 27), end_date=date(2030, 3, 3), today=TODAY)
    assert days == [date(2030, 3, 1), date(2030, 3, 2), date(2030, 3, 3)]


@pytest.mark.parametrize(
    ("start", "end", "field"),
    [
        (date(2030, 3, 5), None, "end_date"),
        (None, date(2030, 3, 5), "start_date"),
        (date(2030, 3, 5), date(2030, 3, 4), "end_date"),
        (date(2030, 3, 1), date(2030, 4, 1), "end_date"),
    ],
)
def test_requested_days_rejects_bad_ranges(start: date | None, end: date | None, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        requested_days(day=None, start_date=start, end_date=end, today=TODAY)
    assert field in excinfo.value.as_dict()


def test_availability_for_one_date(store: FakeStore, settings: Settings) -> None:
    day = future_day()
    customer = store.add_customer("ada@example.com")
    store.add_booking(customer=customer, day=day, session=TourSession.MIDDAY, adults=22)
    store.add_booking(customer=customer, day=day, session=TourSession.AFTERNOON, adults=24)

    with TestClient(build_test_app(store, settings)) as client:
        res = client.get("/availability", params={"date": day.isoformat(), "participants": 3})
    assert res.status_code == 200
    [entry] = res.json()
    assert entry["date"] == day.isoformat()
    assert entry["available"] is True
    sessions = {s["session"]: s for s in entry["sessions"]}
    assert sessions["09:00"]["remaining"] == 24
    assert sessions["12:00"]["remaining"] == 2
    assert sessions["12:00"]["available"] is False
    assert sessions["14:30"]["remaining"] == 0
    assert sessions["14:30"]["label"] == "Afternoon (2:30 PM)"


def test_default_window_lists_seven_days(store: FakeStore, settings: Settings) -> None:
    with TestClient(build_test_app(store, settings)) as client:
        res = client.get("/availability")
    assert res.status_code == 200
    assert len(res.json()) == 7


def test_new_booking_is_visible_in_availability(store: FakeStore, settings: Settings) -> None:
    day = future_day()
    payload = {
        "date": day.isoformat(),
        "session": "09:00",
        "adults": 4,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "pickup_location": "negril",
    }
    with TestClient(build_test_app(store, settings)) as client:
        before = client.get("/availability", params={"date": day.isoformat()}).json()
        assert client.post("/bookings", json=payload).status_code == 201
        after = client.get("/availability", params={"date": day.isoformat()}).json()
    assert before[0]["sessions"][0]["remaining"] == 24
    assert after[0]["sessions"][0]["remaining"] == 20


def test_bad_queries_return_validation_envelope(store: FakeStore, settings: Settings) -> None:
    with TestClient(build_test_app(store, settings)) as client:
        past = client.get("/availability", params={"date": "2000-01-01"})
        too_many = client.get("/availability", params={"participants": 25})
        not_a_date = client.get("/availability", params={"date": "tomorrow"})
    for res in (past, too_many, not_a_date):
        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert too_many.json()["detail"]["field_errors"][0]["field"] == "participants"
    assert not_a_date.json()["detail"]["field_errors"][0]["field"] == "date"
