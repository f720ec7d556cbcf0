import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

# Money is carried as Decimal quantized to micro-dollars
MONEY_QUANTUM = Decimal("0.000001")
MICROS_PER_DOLLAR = 1_000_000

# Hash field holding the day total in a realtime aggregate; not usable as a service name
TOTAL_FIELD = "total"

Scalar = Union[str, int, float, bool, None]
MoneyLike = Union[Decimal, int, float, str]


def to_money(value: MoneyLike) -> Decimal:
    """Convert a numeric value to a quantized Decimal amount"""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            # str() first so floats keep their printed value, not binary noise
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid monetary amount: {value!r}") from e
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_micros(amount: MoneyLike) -> int:
    """Dollars -> integer micro-dollars (Redis counter unit)"""
    return int(to_money(amount) * MICROS_PER_DOLLAR)


def from_micros(micros: Union[int, str, bytes]) -> Decimal:
    """Integer micro-dollars -> Decimal dollars"""
    if isinstance(micros, bytes):
        micros = micros.decode()
    return to_money(Decimal(int(micros)) / MICROS_PER_DOLLAR)


def to_cents(amount: MoneyLike) -> Decimal:
    """Dollars -> cents with four fractional digits (ledger column unit)"""
    return (to_money(amount) * 100).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def from_cents(cents: MoneyLike) -> Decimal:
    return to_money(Decimal(str(cents)) / 100)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: Optional[Union[datetime, date]] = None) -> str:
    """ISO calendar day (UTC) used in realtime and alert keys"""
    if moment is None:
        moment = utc_now()
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        moment = moment.date()
    return moment.isoformat()


@dataclass(frozen=True)
class CostEvent:
    """Immutable record of one billable (or estimated) operation"""
    tenant_id: str
    service: str
    operation: str
    amount: Decimal
    units: Optional[Decimal] = None
    metadata: Dict[str, Scalar] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    provisional: bool = False
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def create(
        cls,
        tenant_id: str,
        service: str,
        operation: str,
        amount: MoneyLike,
        units: Optional[MoneyLike] = None,
        metadata: Optional[Dict[str, Any]] = None,
        provisional: bool = False,
        timestamp: Optional[datetime] = None
    ) -> "CostEvent":
        """Build an event with normalized amount, units and metadata"""
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if service == TOTAL_FIELD:
            raise ValueError(f"Service name '{TOTAL_FIELD}' is reserved")

        clean_metadata: Dict[str, Scalar] = {}
        for key, value in (metadata or {}).items():
            if value is None or isinstance(value, (str, int, float, bool)):
                clean_metadata[str(key)] = value
            else:
                clean_metadata[str(key)] = str(value)

        return cls(
            tenant_id=tenant_id,
            service=service,
            operation=operation,
            amount=to_money(amount),
            units=Decimal(str(units)) if units is not None else None,
            metadata=clean_metadata,
            timestamp=timestamp or utc_now(),
            provisional=provisional,
        )

    @property
    def day(self) -> str:
        return day_key(self.timestamp)


@dataclass
class RealtimeAggregate:
    """Cached running spend for one tenant on one calendar day"""
    tenant_id: str
    day: str
    total: Decimal = Decimal("0")
    by_service: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "day": self.day,
            "total": str(self.total),
            "by_service": {service: str(amount) for service, amount in self.by_service.items()},
        }


@dataclass
class CostReport:
    """Spend over a reporting window, grouped by service and operation"""
    tenant_id: str
    start: datetime
    end: datetime
    total: Decimal = Decimal("0")
    by_service: Dict[str, Decimal] = field(default_factory=dict)
    by_operation: Dict[str, Decimal] = field(default_factory=dict)  # "service.operation" -> amount
    event_count: int = 0
    previous_total: Decimal = Decimal("0")
    trend_percentage: Optional[Decimal] = None  # None when the previous window had no spend

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "total": str(self.total),
            "by_service": {k: str(v) for k, v in self.by_service.items()},
            "by_operation": {k: str(v) for k, v in self.by_operation.items()},
            "event_count": self.event_count,
            "previous_total": str(self.previous_total),
            "trend_percentage": str(self.trend_percentage) if self.trend_percentage is not None else None,
        }
