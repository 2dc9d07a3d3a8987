from datetime import date

from sqlalchemy import select

from create_schedules_with_seats import run
from ridebooking.config import Settings
from ridebooking.database import build_engine, build_session_factory, create_tables
from ridebooking.models import Schedule

from conftest import TRAVEL_DATE, make_route


def test_rolls_routes_forward_from_latest_schedule(tmp_path):
    url = f"sqlite:///{tmp_path / 'script.db'}"
    engine = build_engine(url)
    create_tables(engine)
    session_factory = build_session_factory(engine)
    route_id, _, _ = make_route(session_factory, seats=8, price=350, start_time="07:15")

    created = run(date(2026, 10, 20), days=3, settings=Settings(database_url=url))
    assert created == [(route_id, "Mumbai - Pune", 2)]

    with session_factory() as db:
        schedules = db.scalars(select(Schedule).where(Schedule.route_id == route_id).order_by(Schedule.date)).all()
        assert [s.date for s in schedules] == [TRAVEL_DATE, date(2026, 10, 21), date(2026, 10, 22)]
        assert {s.start_time for s in schedules} == {"07:15"}
        assert [len(s.seats) for s in schedules] == [8, 8, 8]
        assert all(s.available_seats == 8 for s in schedules)
    engine.dispose()
