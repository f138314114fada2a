"""Records persisted or returned by the sync engine.

Portal timestamps (arrival/departure) are naive datetimes in the portal's
local time. Engine bookkeeping (last sync, payment updates, trip writes) is
aware UTC. Everything serializes to JSON with snake_case keys.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import INSTALL_DEFAULT_DURATION_MINS, INSTALL_JOB_TYPES, REPAIR_DEFAULT_DURATION_MINS


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _parse_utc(value: Any) -> datetime | None:
    parsed = _parse_datetime(value)
    if parsed is not None and parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _known_fields(cls: type, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only the keys the dataclass declares."""

    names = {item.name for item in fields(cls)}
    return {key: value for key, value in payload.items() if key in names}


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def default_duration_for(job_type: str) -> int:
    if job_type in INSTALL_JOB_TYPES:
        return INSTALL_DEFAULT_DURATION_MINS
    return REPAIR_DEFAULT_DURATION_MINS


@dataclass
class OrderRecord:
    id: str
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    scheduled_date: date | None = None
    begin_time: str = ""
    job_type: str = ""
    base_duration_minutes: int = 0
    has_pole_mount: bool = False
    has_wifi_extender: bool = False
    has_voip: bool = False
    arrival_ts: datetime | None = None
    departure_complete_ts: datetime | None = None
    departure_incomplete_ts: datetime | None = None
    status: str | None = None
    sync_status: str | None = None
    needs_resync: bool = False
    last_sync_timestamp: datetime | None = None
    last_payment_update_timestamp: datetime | None = None
    restored_from_archive: bool = False

    @classmethod
    def pending(cls, order_id: str) -> "OrderRecord":
        return cls(id=order_id, status="pending")

    @property
    def has_location(self) -> bool:
        return bool(self.address.strip() or (self.city.strip() and self.state.strip()))

    def full_address(self) -> str:
        parts = [part.strip() for part in (self.address, self.city, self.state, self.zip) if part and part.strip()]
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in (
            "scheduled_date",
            "arrival_ts",
            "departure_complete_ts",
            "departure_incomplete_ts",
            "last_sync_timestamp",
            "last_payment_update_timestamp",
        ):
            payload[key] = _iso(payload[key])
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "OrderRecord":
        if not isinstance(payload, Mapping) or not payload.get("id"):
            raise ValueError("order payload must be a mapping with an id")
        return cls(
            id=str(payload["id"]),
            address=str(payload.get("address") or ""),
            city=str(payload.get("city") or ""),
            state=str(payload.get("state") or ""),
            zip=str(payload.get("zip") or ""),
            scheduled_date=_parse_date(payload.get("scheduled_date")),
            begin_time=str(payload.get("begin_time") or ""),
            job_type=str(payload.get("job_type") or ""),
            base_duration_minutes=int(payload.get("base_duration_minutes") or 0),
            has_pole_mount=bool(payload.get("has_pole_mount")),
            has_wifi_extender=bool(payload.get("has_wifi_extender")),
            has_voip=bool(payload.get("has_voip")),
            arrival_ts=_parse_datetime(payload.get("arrival_ts")),
            departure_complete_ts=_parse_datetime(payload.get("departure_complete_ts")),
            departure_incomplete_ts=_parse_datetime(payload.get("departure_incomplete_ts")),
            status=payload.get("status") or None,
            sync_status=payload.get("sync_status") or None,
            needs_resync=bool(payload.get("needs_resync")),
            last_sync_timestamp=_parse_utc(payload.get("last_sync_timestamp")),
            last_payment_update_timestamp=_parse_utc(payload.get("last_payment_update_timestamp")),
            restored_from_archive=bool(payload.get("restored_from_archive")),
        )


class PayRates(BaseModel):
    """Per-stop pay configuration; every rate must be finite and non-negative."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    install_pay: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    repair_pay: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    upgrade_pay: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    pole_cost: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    concrete_cost: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    pole_charge: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    wifi_extender_pay: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    voip_pay: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    drive_time_bonus: float = Field(default=0.0, ge=0, allow_inf_nan=False)


class TripSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default_start_address: str = ""
    default_end_address: str = ""
    default_mpg: float = Field(default=25.0, gt=0, allow_inf_nan=False)
    default_gas_price: float = Field(default=3.50, ge=0, allow_inf_nan=False)
    mileage_rate: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    vehicle: Optional[str] = None
    pay_rates: PayRates = Field(default_factory=PayRates)


@dataclass
class TripStop:
    id: str
    order_id: str
    address: str
    order: int
    notes: str
    earnings: float
    appointment_time: str
    type: str
    duration: int


@dataclass
class SupplyItem:
    id: str
    type: str
    cost: float


@dataclass
class TripRecord:
    id: str
    user_id: str
    date: str
    start_time: str
    end_time: str
    estimated_time: int
    total_time: str
    hours_worked: float
    start_address: str
    end_address: str
    total_miles: float
    mpg: float
    gas_price: float
    fuel_cost: float
    total_earnings: float
    net_profit: float
    supplies_cost: float
    supply_items: List[SupplyItem] = field(default_factory=list)
    stops: List[TripStop] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    sync_status: str = "synced"
    last_modified: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("created_at", "updated_at", "last_modified"):
            payload[key] = _iso(payload[key])
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TripRecord":
        return cls(
            id=str(payload["id"]),
            user_id=str(payload.get("user_id") or ""),
            date=str(payload.get("date") or ""),
            start_time=str(payload.get("start_time") or ""),
            end_time=str(payload.get("end_time") or ""),
            estimated_time=int(payload.get("estimated_time") or 0),
            total_time=str(payload.get("total_time") or ""),
            hours_worked=float(payload.get("hours_worked") or 0),
            start_address=str(payload.get("start_address") or ""),
            end_address=str(payload.get("end_address") or ""),
            total_miles=float(payload.get("total_miles") or 0),
            mpg=float(payload.get("mpg") or 0),
            gas_price=float(payload.get("gas_price") or 0),
            fuel_cost=float(payload.get("fuel_cost") or 0),
            total_earnings=float(payload.get("total_earnings") or 0),
            net_profit=float(payload.get("net_profit") or 0),
            supplies_cost=float(payload.get("supplies_cost") or 0),
            supply_items=[SupplyItem(**_known_fields(SupplyItem, item)) for item in payload.get("supply_items") or []],
            stops=[TripStop(**_known_fields(TripStop, stop)) for stop in payload.get("stops") or []],
            created_at=_parse_utc(payload.get("created_at")),
            updated_at=_parse_utc(payload.get("updated_at")),
            sync_status=str(payload.get("sync_status") or "synced"),
            last_modified=_parse_utc(payload.get("last_modified")),
        )


@dataclass
class MileageRecord:
    id: str
    user_id: str
    trip_id: str
    date: str
    start_odometer: float
    end_odometer: float
    miles: float
    mileage_rate: float | None
    vehicle: str | None
    reimbursement: float | None
    notes: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = _iso(self.created_at)
        payload["updated_at"] = _iso(self.updated_at)
        return payload


@dataclass(frozen=True)
class ConflictInfo:
    date: str
    current_earnings: float
    current_stops: int
    last_modified: datetime | None
    would_sync_earnings: float
    would_sync_stops: int
    would_sync_address: str

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["last_modified"] = _iso(self.last_modified)
        return payload


@dataclass
class SyncLock:
    lock_id: str
    owner_id: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"lock_id": self.lock_id, "owner_id": self.owner_id, "expires_at": self.expires_at.isoformat()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncLock":
        expires_at = _parse_utc(payload.get("expires_at"))
        if expires_at is None or not payload.get("owner_id"):
            raise ValueError("lock payload missing owner_id/expires_at")
        return cls(
            lock_id=str(payload.get("lock_id") or ""),
            owner_id=str(payload["owner_id"]),
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float
    formatted: str = ""


@dataclass(frozen=True)
class RouteLeg:
    distance_meters: float
    duration_seconds: float


class StageStatus(str, Enum):
    OK = "ok"
    SOFT_LIMIT = "soft_limit"
    HARD_LIMIT = "hard_limit"
    FATAL = "fatal"


@dataclass(frozen=True)
class StageOutcome:
    """Result of one crawl/trip stage.

    ``SOFT_LIMIT`` and ``HARD_LIMIT`` both mean "persisted, resume later";
    ``FATAL`` carries the error that must end the sync.
    """

    status: StageStatus
    error: BaseException | None = None

    @classmethod
    def ok(cls) -> "StageOutcome":
        return cls(StageStatus.OK)

    @classmethod
    def soft_limit(cls) -> "StageOutcome":
        return cls(StageStatus.SOFT_LIMIT)

    @classmethod
    def hard_limit(cls) -> "StageOutcome":
        return cls(StageStatus.HARD_LIMIT)

    @classmethod
    def fatal(cls, error: BaseException) -> "StageOutcome":
        return cls(StageStatus.FATAL, error)

    @property
    def is_ok(self) -> bool:
        return self.status is StageStatus.OK

    @property
    def budget_exhausted(self) -> bool:
        return self.status in (StageStatus.SOFT_LIMIT, StageStatus.HARD_LIMIT)


@dataclass
class SyncResult:
    orders: List[OrderRecord]
    incomplete: bool
    conflicts: List[ConflictInfo] = field(default_factory=list)
    trips_written: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders": [order.to_dict() for order in self.orders],
            "incomplete": self.incomplete,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "trips_written": list(self.trips_written),
        }


@dataclass
class ImportResult:
    imported: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    imported_dates: List[str] = field(default_factory=list)
    truncated: bool = False
