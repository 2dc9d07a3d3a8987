"""
Create dated schedules (with a fresh A1..An seat layout) for existing routes.

Seat count, start time and price default to the route's most recent schedule,
so a route can be rolled forward without repeating its settings.

Usage:
  python create_schedules_with_seats.py --route-ids 1,2 --start-date 2026-11-01 --days 7
  python create_schedules_with_seats.py --route-ids 3 --days 3 --start-time 09:30 --seats 6 --price 450

Options:
  --route-ids id,id..  : comma-separated routes to schedule (default: all active routes)
  --start-date DATE    : first date to schedule (default: tomorrow)
  --days N             : number of consecutive days (default 7)
  --start-time HH:MM   : departure time (default: from the latest schedule)
  --seats N            : seats per schedule (default: from the latest schedule, else the car's seater)
  --price AMOUNT       : price per seat (default: from the latest schedule)
"""
import argparse
from datetime import date, timedelta

from sqlalchemy import select

from ridebooking.config import Settings
from ridebooking.database import build_engine, build_session_factory, create_tables
from ridebooking.models import ACTIVE, Route, Schedule
from ridebooking.pricing import to_money
from ridebooking.schedule_store import new_schedule


def latest_schedule(db, route_id):
    return db.scalars(
        select(Schedule).where(Schedule.route_id == route_id).order_by(Schedule.date.desc()).limit(1)
    ).first()


def run(start_date: date, days: int = 7, route_ids: list[int] | None = None,
        start_time: str | None = None, seats: int | None = None, price: float | None = None,
        settings: Settings | None = None):
    settings = settings or Settings.from_env()
    engine = build_engine(settings.database_url)
    create_tables(engine)
    SessionLocal = build_session_factory(engine)
    db = SessionLocal()
    created = []
    try:
        q = select(Route).where(Route.status == ACTIVE)
        if route_ids:
            q = q.where(Route.id.in_(route_ids))
        routes = db.scalars(q).unique().all()
        if not routes:
            print("No routes found to schedule.")
            return created

        for route in routes:
            template = latest_schedule(db, route.id)
            r_time = start_time or (template.start_time if template else None)
            r_seats = seats or (template.total_seats if template else (route.car.seater if route.car else None))
            r_price = price if price is not None else (template.price_per_seat if template else None)
            if not (r_time and r_seats and r_price):
                print(f"[skip] route {route.id}: no previous schedule, pass --start-time/--seats/--price")
                continue

            existing = set(db.scalars(select(Schedule.date).where(Schedule.route_id == route.id)).all())
            added = 0
            for offset in range(days):
                d = start_date + timedelta(days=offset)
                if d in existing:
                    continue
                db.add(new_schedule(route.id, d, r_time, r_seats, to_money(r_price)))
                added += 1
            db.commit()
            created.append((route.id, route.name, added))
            print(f"[created] route_id={route.id} name={route.name} schedules_added={added}")
    except Exception as e:
        db.rollback()
        print("Error:", e)
    finally:
        db.close()
        engine.dispose()

    print(f"Done. Scheduled {len(created)} routes.")
    for rid, name, added in created:
        print(f" - {rid} / {name} (+{added} schedules)")
    return created


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--route-ids", type=str, default=None, help="comma-separated route ids (optional)")
    parser.add_argument("--start-date", type=date.fromisoformat, default=date.today() + timedelta(days=1))
    parser.add_argument("--days", type=int, default=7, help="number of consecutive days to schedule")
    parser.add_argument("--start-time", type=str, default=None, help="departure time HH:MM")
    parser.add_argument("--seats", type=int, default=None, help="seats per schedule")
    parser.add_argument("--price", type=float, default=None, help="price per seat")
    args = parser.parse_args()
    ids = None
    if args.route_ids:
        ids = [int(x.strip()) for x in args.route_ids.split(",") if x.strip().isdigit()]
    run(args.start_date, days=args.days, route_ids=ids, start_time=args.start_time,
        seats=args.seats, price=args.price)
