from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Sequence

from pydantic import ValidationError

from hns_sync.common.json_logger import JsonLogger, log_event
from hns_sync.common.kv_store import KeyValueStore

from .constants import (
    CONFLICT_WINDOW_DAYS,
    DEFAULT_START_MINUTES,
    DRIVE_BONUS_THRESHOLD_MINS,
    MAX_JOB_DURATION_MINS,
    METERS_TO_MILES,
    MIN_JOB_DURATION_MINS,
    RESYNC_WINDOW_DAYS,
    TRIP_ID_PREFIX,
    USER_MODIFICATION_BUFFER_SECONDS,
    mileage_key,
    settings_key,
    trip_id_for,
    trip_key,
)
from .context import SyncContext
from .dates import days_before, is_within_days, minutes_to_clock, parse_clock_minutes
from .errors import HardLimitExceeded
from .models import (
    ConflictInfo,
    MileageRecord,
    OrderRecord,
    PayRates,
    StageOutcome,
    SupplyItem,
    TripRecord,
    TripSettings,
    TripStop,
    default_duration_for,
)
from .reconcile import order_service_date
from .router import Router

USER_MODIFICATION_BUFFER = timedelta(seconds=USER_MODIFICATION_BUFFER_SECONDS)


class TripStore:
    """Trips and their mileage logs, keyed per user."""

    def __init__(self, store: KeyValueStore, *, logger: JsonLogger) -> None:
        self.store = store
        self.logger = logger

    async def get(self, user_id: str, trip_id: str) -> TripRecord | None:
        raw = await self.store.get(trip_key(user_id, trip_id))
        if not raw:
            return None
        try:
            return TripRecord.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="Unreadable trip record", trip_id=trip_id, error=str(exc))
            return None

    async def exists(self, user_id: str, trip_id: str) -> bool:
        return bool(await self.store.get(trip_key(user_id, trip_id)))

    async def put(self, trip: TripRecord) -> None:
        await self.store.put(trip_key(trip.user_id, trip.id), json.dumps(trip.to_dict()))

    async def delete(self, user_id: str, trip_id: str) -> None:
        await self.store.delete(trip_key(user_id, trip_id))
        await self.store.delete(mileage_key(user_id, trip_id))

    async def list_ids(self, user_id: str) -> List[str]:
        prefix = trip_key(user_id, "")
        return [key[len(prefix) :] for key in await self.store.list_keys(prefix)]

    async def put_mileage(self, record: MileageRecord) -> None:
        await self.store.put(mileage_key(record.user_id, record.trip_id), json.dumps(record.to_dict()))

    async def get_mileage(self, user_id: str, trip_id: str) -> Dict[str, object] | None:
        raw = await self.store.get(mileage_key(user_id, trip_id))
        return json.loads(raw) if raw else None


class SettingsStore:
    def __init__(self, store: KeyValueStore, *, logger: JsonLogger) -> None:
        self.store = store
        self.logger = logger

    async def load(self, user_id: str) -> TripSettings:
        raw = await self.store.get(settings_key(user_id))
        if not raw:
            return TripSettings()
        try:
            payload = json.loads(raw)
            if isinstance(payload, Mapping) and isinstance(payload.get("settings"), Mapping):
                payload = payload["settings"]
            return TripSettings.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            log_event(logger=self.logger, phase="trips", status="warn", message="Ignoring invalid trip settings", error=str(exc))
            return TripSettings()

    async def save(self, user_id: str, settings: TripSettings) -> None:
        await self.store.put(settings_key(user_id), settings.model_dump_json())


def actual_duration_minutes(order: OrderRecord, arrival: datetime | None, end: datetime | None) -> int:
    """Logged on-site minutes when plausible, else the job type default."""

    if arrival is not None and end is not None:
        minutes = round((end - arrival).total_seconds() / 60)
        if MIN_JOB_DURATION_MINS <= minutes < MAX_JOB_DURATION_MINS:
            return minutes
    return default_duration_for(order.job_type)


@dataclass
class _StopPlan:
    order: OrderRecord
    sort_time: datetime | None
    arrival: datetime | None
    is_paid: bool
    duration: int


def _plan_stop(order: OrderRecord, trip_date: date) -> _StopPlan:
    arrival = order.arrival_ts
    complete = order.departure_complete_ts
    incomplete = order.departure_incomplete_ts
    # An incomplete departure logged on another day belongs to a different visit.
    if incomplete is not None and incomplete.date() != trip_date:
        arrival = complete = incomplete = None

    sort_time: datetime | None = None
    if arrival is not None and arrival.date() == trip_date:
        sort_time = arrival
    else:
        scheduled_minutes = parse_clock_minutes(order.begin_time)
        if scheduled_minutes > 0:
            sort_time = datetime.combine(trip_date, datetime.min.time()) + timedelta(minutes=scheduled_minutes)

    end = incomplete or complete
    return _StopPlan(
        order=order,
        sort_time=sort_time,
        arrival=arrival,
        is_paid=complete is not None or incomplete is None,
        duration=actual_duration_minutes(order, arrival, end),
    )


def group_orders_by_date(orders: Iterable[OrderRecord]) -> Dict[str, List[OrderRecord]]:
    grouped: Dict[str, List[OrderRecord]] = defaultdict(list)
    for order in orders:
        if not order.has_location:
            continue
        service_date = order_service_date(order)
        if service_date is not None:
            grouped[service_date.isoformat()].append(order)
    return dict(sorted(grouped.items()))


def is_user_modified(trip: TripRecord) -> bool:
    if trip.last_modified is None:
        return False
    engine_write = trip.updated_at or trip.created_at
    if engine_write is None:
        return True
    return trip.last_modified > engine_write + USER_MODIFICATION_BUFFER


def _round_money(value: float) -> float:
    return round(value, 2)


@dataclass
class TripPassResult:
    outcome: StageOutcome
    conflicts: List[ConflictInfo] = field(default_factory=list)
    written: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class TripBuilder:
    """Derives one trip per (user, date) and commits it unless a human edited it."""

    def __init__(self, *, router: Router, trips: TripStore, settings: SettingsStore) -> None:
        self.router = router
        self.trips = trips
        self.settings = settings

    async def _resolve(self, ctx: SyncContext, address: str, cache: Dict[str, str]) -> str:
        key = address.strip()
        if not key:
            return key
        if key not in cache:
            try:
                point = await self.router.resolve_address(key)
            except HardLimitExceeded:
                raise
            except Exception as exc:
                log_event(logger=ctx.logger, phase="trips", status="warn", message="Address resolution failed", address=key, error=str(exc))
                point = None
            cache[key] = point.formatted if point is not None and point.formatted else key
        return cache[key]

    async def build_trip(
        self,
        ctx: SyncContext,
        trip_date: str,
        orders: Sequence[OrderRecord],
        pay_rates: PayRates,
        settings: TripSettings,
    ) -> TripRecord | None:
        """Compute the trip for one date; ``None`` when no start can be established.

        Raises :class:`HardLimitExceeded` from router lookups.
        """

        day = date.fromisoformat(trip_date)
        plans = [_plan_stop(order, day) for order in orders]
        plans.sort(key=lambda plan: (plan.sort_time is None, plan.sort_time or datetime.min))
        if not plans:
            return None
        anchor = next((plan for plan in plans if plan.sort_time is not None), plans[0])

        start_address = settings.default_start_address.strip() or anchor.order.full_address()
        end_address = settings.default_end_address.strip() or start_address
        anchor_address = anchor.order.full_address()
        if not start_address or not anchor_address:
            log_event(logger=ctx.logger, phase="trips", status="warn", message="No buildable start address; skipping date", date=trip_date)
            return None

        resolved: Dict[str, str] = {}
        commute_minutes = 0
        if start_address != anchor_address:
            leg = await self.router.get_route_info(start_address, anchor_address)
            if leg is not None:
                commute_minutes = max(0, round(leg.duration_seconds / 60))
            elif await self.router.resolve_address(anchor_address) is None:
                log_event(
                    logger=ctx.logger,
                    phase="trips",
                    status="warn",
                    message="Anchor address and commute both unresolvable; skipping date",
                    date=trip_date,
                    order_id=anchor.order.id,
                )
                return None
        start_address = await self._resolve(ctx, start_address, resolved)
        end_address = await self._resolve(ctx, end_address, resolved)

        if anchor.arrival is not None and anchor.arrival.date() == day:
            start_minutes = anchor.arrival.hour * 60 + anchor.arrival.minute - commute_minutes
        elif parse_clock_minutes(anchor.order.begin_time) > 0:
            start_minutes = parse_clock_minutes(anchor.order.begin_time) - commute_minutes
        else:
            start_minutes = DEFAULT_START_MINUTES
        if not 0 <= start_minutes <= 1440:
            start_minutes = DEFAULT_START_MINUTES

        stop_addresses = [await self._resolve(ctx, plan.order.full_address(), resolved) for plan in plans]
        points = [start_address, *[address for address in stop_addresses if address]]
        if end_address:
            points.append(end_address)

        route_minutes = 0
        route_meters = 0.0
        for origin, destination in zip(points, points[1:]):
            if origin == destination:
                continue
            leg = await self.router.get_route_info(origin, destination)
            if leg is None:
                continue
            route_minutes += max(0, round(leg.duration_seconds / 60))
            route_meters += max(0.0, leg.distance_meters)

        miles = round(route_meters * METERS_TO_MILES, 1)
        job_minutes = sum(plan.duration for plan in plans)
        work_minutes = route_minutes + job_minutes
        fuel_cost = (miles / settings.default_mpg) * settings.default_gas_price if settings.default_mpg > 0 else 0.0
        apply_drive_bonus = route_minutes > DRIVE_BONUS_THRESHOLD_MINS

        trip_id = trip_id_for(ctx.user_id, trip_date)
        stops: List[TripStop] = []
        supplies: Dict[str, float] = {}
        total_earnings = 0.0
        for position, (plan, address) in enumerate(zip(plans, stop_addresses)):
            order = plan.order
            pay = 0.0
            notes = f"HNS #{order.id} ({order.job_type or 'Unknown'})"
            if not plan.is_paid:
                notes += " [INCOMPLETE: $0]"
            else:
                if order.has_pole_mount:
                    pay = pay_rates.install_pay + pay_rates.pole_charge
                    notes += f" [POLE: ${pay_rates.pole_charge:g}]"
                    if pay_rates.pole_cost > 0:
                        supplies["Pole"] = supplies.get("Pole", 0.0) + pay_rates.pole_cost
                    if pay_rates.concrete_cost > 0:
                        supplies["Concrete"] = supplies.get("Concrete", 0.0) + pay_rates.concrete_cost
                elif order.job_type in ("Install", "Re-Install"):
                    pay = pay_rates.install_pay
                elif order.job_type == "Upgrade":
                    pay = pay_rates.upgrade_pay
                else:
                    pay = pay_rates.repair_pay
                if order.has_wifi_extender:
                    pay += pay_rates.wifi_extender_pay
                    notes += f" [WIFI: ${pay_rates.wifi_extender_pay:g}]"
                if order.has_voip:
                    pay += pay_rates.voip_pay
                    notes += f" [VOIP: ${pay_rates.voip_pay:g}]"
                if apply_drive_bonus and pay_rates.drive_time_bonus > 0:
                    pay += pay_rates.drive_time_bonus
                    notes += f" [DRIVE BONUS: ${pay_rates.drive_time_bonus:g}]"
            total_earnings += pay
            stops.append(
                TripStop(
                    id=f"{trip_id}_{order.id}",
                    order_id=order.id,
                    address=address or order.full_address(),
                    order=position,
                    notes=notes,
                    earnings=_round_money(pay),
                    appointment_time=order.begin_time,
                    type=order.job_type,
                    duration=plan.duration,
                )
            )

        supply_items = [
            SupplyItem(id=f"{trip_id}_{kind.lower()}", type=kind, cost=_round_money(cost)) for kind, cost in supplies.items()
        ]
        supplies_cost = sum(item.cost for item in supply_items)
        net_profit = total_earnings - (fuel_cost + supplies_cost)
        return TripRecord(
            id=trip_id,
            user_id=ctx.user_id,
            date=trip_date,
            start_time=minutes_to_clock(start_minutes),
            end_time=minutes_to_clock(start_minutes + work_minutes),
            estimated_time=route_minutes,
            total_time=f"{route_minutes // 60}h {route_minutes % 60}m",
            hours_worked=round(work_minutes / 60, 2),
            start_address=start_address,
            end_address=end_address,
            total_miles=miles,
            mpg=settings.default_mpg,
            gas_price=settings.default_gas_price,
            fuel_cost=_round_money(fuel_cost),
            total_earnings=_round_money(total_earnings),
            net_profit=_round_money(net_profit),
            supplies_cost=_round_money(supplies_cost),
            supply_items=supply_items,
            stops=stops,
        )

    async def commit(self, ctx: SyncContext, trip: TripRecord, existing: TripRecord | None, settings: TripSettings) -> None:
        now = ctx.now()
        trip.created_at = existing.created_at if existing is not None and existing.created_at else now
        trip.updated_at = now
        await self.trips.put(trip)
        if trip.total_miles > 0:
            reimbursement = (
                round(trip.total_miles * settings.mileage_rate, 2) if settings.mileage_rate is not None else None
            )
            await self.trips.put_mileage(
                MileageRecord(
                    id=trip.id,
                    user_id=trip.user_id,
                    trip_id=trip.id,
                    date=trip.date,
                    start_odometer=0,
                    end_odometer=trip.total_miles,
                    miles=trip.total_miles,
                    mileage_rate=settings.mileage_rate,
                    vehicle=settings.vehicle,
                    reimbursement=reimbursement,
                    notes="",
                    created_at=now,
                    updated_at=now,
                )
            )

    @staticmethod
    def _has_payment_update(orders: Sequence[OrderRecord], existing: TripRecord | None) -> bool:
        if existing is None or existing.updated_at is None:
            return False
        return any(
            order.last_payment_update_timestamp is not None and order.last_payment_update_timestamp > existing.updated_at
            for order in orders
        )

    async def build_all(
        self,
        ctx: SyncContext,
        orders: Mapping[str, OrderRecord],
        pay_rates: PayRates,
        *,
        recent_only: bool = False,
        force_dates: Iterable[str] = (),
    ) -> TripPassResult:
        forced = set(force_dates)
        settings = await self.settings.load(ctx.user_id)
        today = ctx.portal_today()
        result = TripPassResult(outcome=StageOutcome.ok())
        for trip_date, day_orders in group_orders_by_date(orders.values()).items():
            if ctx.budget.soft_exhausted:
                log_event(logger=ctx.logger, phase="trips", status="warn", message="Soft request limit reached before trips finished", date=trip_date)
                result.outcome = StageOutcome.soft_limit()
                break
            day = date.fromisoformat(trip_date)
            trip_id = trip_id_for(ctx.user_id, trip_date)
            existing = await self.trips.get(ctx.user_id, trip_id)
            if recent_only and not is_within_days(day, today, RESYNC_WINDOW_DAYS) and trip_date not in forced:
                if not self._has_payment_update(day_orders, existing):
                    continue
                log_event(logger=ctx.logger, phase="trips", message="Payment update; recalculating older trip", date=trip_date)

            if existing is None and trip_date not in forced and await self.trips.exists(ctx.user_id, trip_id):
                result.skipped.append(trip_date)
                log_event(logger=ctx.logger, phase="trips", status="warn", message="Stored trip is unreadable; leaving it untouched", date=trip_date)
                continue

            user_modified = existing is not None and is_user_modified(existing)
            recent = days_before(day, today) <= CONFLICT_WINDOW_DAYS
            if user_modified and trip_date not in forced and not recent:
                result.skipped.append(trip_date)
                log_event(logger=ctx.logger, phase="trips", message="Skipping older trip edited by user", date=trip_date)
                continue

            try:
                trip = await self.build_trip(ctx, trip_date, day_orders, pay_rates, settings)
            except HardLimitExceeded as exc:
                log_event(logger=ctx.logger, phase="trips", status="warn", message="Hard request limit reached while routing", date=trip_date, error=str(exc))
                result.outcome = StageOutcome.hard_limit()
                break
            if trip is None:
                result.skipped.append(trip_date)
                continue

            if user_modified and existing is not None and trip_date not in forced:
                result.conflicts.append(
                    ConflictInfo(
                        date=trip_date,
                        current_earnings=existing.total_earnings,
                        current_stops=len(existing.stops),
                        last_modified=existing.last_modified,
                        would_sync_earnings=trip.total_earnings,
                        would_sync_stops=len(trip.stops),
                        would_sync_address=trip.stops[0].address if trip.stops else trip.start_address,
                    )
                )
                log_event(logger=ctx.logger, phase="trips", status="warn", message="Trip edited by user; reporting conflict", date=trip_date)
                continue

            await self.commit(ctx, trip, existing, settings)
            result.written.append(trip_date)
            log_event(
                logger=ctx.logger,
                phase="trips",
                message="Trip saved",
                date=trip_date,
                stops=len(trip.stops),
                miles=trip.total_miles,
                earnings=trip.total_earnings,
                net_profit=trip.net_profit,
                forced=trip_date in forced,
            )
        return result

    async def clear_engine_trips(self, user_id: str) -> int:
        removed = 0
        for trip_id in await self.trips.list_ids(user_id):
            if trip_id.startswith(TRIP_ID_PREFIX):
                await self.trips.delete(user_id, trip_id)
                removed += 1
        return removed
