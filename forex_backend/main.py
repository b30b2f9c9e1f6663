import datetime as dt
import logging
import re
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    true,
    update,
)

from forex_backend import settings
from forex_backend.currency_conversion import (
    ForexService,
    RateSnapshot,
    RateUnavailable,
    normalize_currency,
)
from forex_backend.logging_config import setup_logging

setup_logging()
logger = logging.getLogger("forex_backend.api")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
metadata = MetaData()

FOREX_SERVICE = ForexService()

households = Table(
    "households",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("home_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

forex_accounts = Table(
    "forex_accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("household_id", Integer, ForeignKey("households.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("provider", String(255)),
    Column("account_num", String(100)),
    Column("notes", String(500)),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)

forex_transfers = Table(
    "forex_transfers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("household_id", Integer, ForeignKey("households.id", ondelete="CASCADE"), nullable=False, index=True),
    Column(
        "forex_account_id",
        Integer,
        ForeignKey("forex_accounts.id", ondelete="SET NULL"),
        index=True,
    ),
    Column("type", String(10), nullable=False),
    Column("from_currency", String(3), nullable=False),
    Column("to_currency", String(3), nullable=False),
    Column("from_amount", Numeric(14, 2), nullable=False),
    Column("to_amount", Numeric(14, 2), nullable=False),
    Column("exchange_rate", Numeric(14, 6), nullable=False),
    Column("fee", Numeric(14, 2)),
    Column("date", Date, nullable=False, index=True),
    Column("description", String(500)),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class ForexTransferType:
    values = {"BUY", "SELL", "TRANSFER"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid transfer type.")
        return normalized


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class HouseholdPayload(BaseModel):
    name: str
    home_currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "HouseholdPayload") -> "HouseholdPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Household name required.")
        if payload.home_currency:
            payload.home_currency = normalize_currency(payload.home_currency)
        else:
            payload.home_currency = None
        return payload


class HouseholdResponse(BaseModel):
    id: int
    name: str
    home_currency: str
    created_at: datetime | None = None


class HouseholdSettingsPayload(BaseModel):
    home_currency: str


class HouseholdSettingsResponse(BaseModel):
    id: int
    name: str
    home_currency: str


class RatesResponse(BaseModel):
    base: str
    date: str
    rates: dict[str, float]


class ConversionResponse(BaseModel):
    from_currency: str
    to_currency: str
    amount: float
    result: float
    rate: float
    date: str


class HistoryPointResponse(BaseModel):
    date: str
    rate: float


class HistoryResponse(BaseModel):
    base: str
    target: str
    rates: list[HistoryPointResponse]


class ForexAccountPayload(BaseModel):
    name: str
    currency: str
    balance: Decimal | None = None
    provider: str | None = None
    account_num: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ForexAccountPayload") -> "ForexAccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.currency = normalize_currency(payload.currency)
        payload.provider = _strip_or_none(payload.provider)
        payload.account_num = _strip_or_none(payload.account_num)
        payload.notes = _strip_or_none(payload.notes)
        return payload


class ForexAccountUpdatePayload(BaseModel):
    name: str | None = None
    currency: str | None = None
    balance: Decimal | None = None
    provider: str | None = None
    account_num: str | None = None
    notes: str | None = None
    is_active: bool | None = None

    @classmethod
    def to_values(cls, payload: "ForexAccountUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        if "name" in values:
            name = (values["name"] or "").strip()
            if not name:
                raise ValueError("Account name required.")
            values["name"] = name
        if "currency" in values:
            if not values["currency"]:
                raise ValueError("Currency required.")
            values["currency"] = normalize_currency(values["currency"])
        if "balance" in values and values["balance"] is None:
            raise ValueError("Balance cannot be empty.")
        if "is_active" in values and values["is_active"] is None:
            raise ValueError("is_active cannot be empty.")
        for key in ("provider", "account_num", "notes"):
            if key in values:
                values[key] = _strip_or_none(values[key])
        return values


class ForexAccountResponse(BaseModel):
    id: int
    household_id: int
    name: str
    currency: str
    balance: Decimal
    provider: str | None = None
    account_num: str | None = None
    notes: str | None = None
    is_active: bool
    transfer_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AccountBalanceEntry(BaseModel):
    account_id: int
    name: str
    currency: str
    balance: Decimal
    converted_balance: Decimal
    rate: Decimal


class ForexAccountSummaryResponse(BaseModel):
    currency: str
    total: Decimal
    accounts: list[AccountBalanceEntry]
    unconverted: list[str]


class ForexTransferPayload(BaseModel):
    forex_account_id: int | None = None
    type: str
    from_currency: str
    to_currency: str
    from_amount: Decimal
    to_amount: Decimal
    exchange_rate: Decimal
    fee: Decimal | None = None
    date: date
    description: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ForexTransferPayload") -> "ForexTransferPayload":
        payload.type = ForexTransferType.validate(payload.type)
        payload.from_currency = normalize_currency(payload.from_currency)
        payload.to_currency = normalize_currency(payload.to_currency)
        if payload.from_amount <= 0 or payload.to_amount <= 0:
            raise ValueError("Amounts must be greater than zero.")
        if payload.exchange_rate <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        if payload.fee is not None and payload.fee < 0:
            raise ValueError("Fee cannot be negative.")
        payload.description = _strip_or_none(payload.description)
        payload.notes = _strip_or_none(payload.notes)
        return payload


class ForexTransferUpdatePayload(BaseModel):
    forex_account_id: int | None = None
    type: str | None = None
    from_currency: str | None = None
    to_currency: str | None = None
    from_amount: Decimal | None = None
    to_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    fee: Decimal | None = None
    date: dt.date | None = None
    description: str | None = None
    notes: str | None = None

    @classmethod
    def to_values(cls, payload: "ForexTransferUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        required = ("type", "from_currency", "to_currency", "from_amount", "to_amount", "exchange_rate", "date")
        for key in required:
            if key in values and values[key] is None:
                raise ValueError(f"{key} cannot be empty.")
        if "type" in values:
            values["type"] = ForexTransferType.validate(values["type"])
        for key in ("from_currency", "to_currency"):
            if key in values:
                values[key] = normalize_currency(values[key])
        for key in ("from_amount", "to_amount"):
            if key in values and values[key] <= 0:
                raise ValueError("Amounts must be greater than zero.")
        if "exchange_rate" in values and values["exchange_rate"] <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        if values.get("fee") is not None and values["fee"] < 0:
            raise ValueError("Fee cannot be negative.")
        for key in ("description", "notes"):
            if key in values:
                values[key] = _strip_or_none(values[key])
        return values


class TransferAccountRef(BaseModel):
    id: int
    name: str
    currency: str


class ForexTransferResponse(BaseModel):
    id: int
    household_id: int
    forex_account_id: int | None = None
    forex_account: TransferAccountRef | None = None
    type: str
    from_currency: str
    to_currency: str
    from_amount: Decimal
    to_amount: Decimal
    exchange_rate: Decimal
    fee: Decimal | None = None
    date: date
    description: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


def get_household_id(x_household_id: str | None) -> int:
    if not x_household_id:
        raise HTTPException(status_code=401, detail="Missing household identity.")
    try:
        household_id = int(x_household_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid household identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(households.c.id).where(households.c.id == household_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="Household not found.")
    return household_id


def resolve_home_currency(conn, household_id: int) -> str:
    home_currency = conn.execute(
        select(households.c.home_currency).where(households.c.id == household_id)
    ).scalar_one_or_none()
    if home_currency:
        try:
            return normalize_currency(home_currency)
        except ValueError:
            pass
    return settings.HOME_CURRENCY


def parse_currency(value: str) -> str:
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_amount(value: str | None) -> Decimal:
    # Leading numeric prefix only ("12abc" -> 12); anything else is zero.
    match = LEADING_NUMBER.match(value or "")
    if not match:
        return Decimal("0")
    amount = Decimal(match.group(0).strip())
    return amount if amount.is_finite() else Decimal("0")


def snapshot_response(snapshot: RateSnapshot) -> RatesResponse:
    return RatesResponse(
        base=snapshot.base,
        date=snapshot.as_of_date,
        rates={code: float(rate) for code, rate in snapshot.rates.items()},
    )


def account_response(row) -> ForexAccountResponse:
    return ForexAccountResponse(
        id=row["id"],
        household_id=row["household_id"],
        name=row["name"],
        currency=row["currency"],
        balance=row["balance"],
        provider=row["provider"],
        account_num=row["account_num"],
        notes=row["notes"],
        is_active=row["is_active"],
        transfer_count=row.get("transfer_count") or 0,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def transfer_response(row) -> ForexTransferResponse:
    account_ref = None
    if row["account_name"] is not None:
        account_ref = TransferAccountRef(
            id=row["forex_account_id"],
            name=row["account_name"],
            currency=row["account_currency"],
        )
    return ForexTransferResponse(
        id=row["id"],
        household_id=row["household_id"],
        forex_account_id=row["forex_account_id"],
        forex_account=account_ref,
        type=row["type"],
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        from_amount=row["from_amount"],
        to_amount=row["to_amount"],
        exchange_rate=row["exchange_rate"],
        fee=row["fee"],
        date=row["date"],
        description=row["description"],
        notes=row["notes"],
        created_at=row["created_at"],
    )


def account_select():
    transfer_count = (
        select(func.count(forex_transfers.c.id))
        .where(forex_transfers.c.forex_account_id == forex_accounts.c.id)
        .scalar_subquery()
        .label("transfer_count")
    )
    return select(forex_accounts, transfer_count)


def transfer_select():
    return select(
        forex_transfers,
        forex_accounts.c.name.label("account_name"),
        forex_accounts.c.currency.label("account_currency"),
    ).select_from(
        forex_transfers.outerjoin(
            forex_accounts, forex_transfers.c.forex_account_id == forex_accounts.c.id
        )
    )


def fetch_account(conn, household_id: int, account_id: int):
    return conn.execute(
        account_select().where(
            forex_accounts.c.id == account_id,
            forex_accounts.c.household_id == household_id,
        )
    ).mappings().first()


def fetch_transfer(conn, household_id: int, transfer_id: int):
    return conn.execute(
        transfer_select().where(
            forex_transfers.c.id == transfer_id,
            forex_transfers.c.household_id == household_id,
        )
    ).mappings().first()


def ensure_account_owned(conn, household_id: int, account_id: int | None) -> None:
    if account_id is None:
        return
    owned = conn.execute(
        select(forex_accounts.c.id).where(
            forex_accounts.c.id == account_id,
            forex_accounts.c.household_id == household_id,
        )
    ).first()
    if not owned:
        raise HTTPException(status_code=404, detail="Forex account not found.")


def transfer_balance_delta(payload: ForexTransferPayload) -> Decimal:
    if payload.type == "SELL":
        return -payload.from_amount
    return payload.to_amount


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/households", response_model=HouseholdResponse)
def create_household(payload: HouseholdPayload) -> HouseholdResponse:
    try:
        payload = HouseholdPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(households)
        .values(name=payload.name, home_currency=payload.home_currency or settings.HOME_CURRENCY)
        .returning(
            households.c.id,
            households.c.name,
            households.c.home_currency,
            households.c.created_at,
        )
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create household.")
    logger.info("Created household %s", row["id"])
    return HouseholdResponse(
        id=row["id"],
        name=row["name"],
        home_currency=row["home_currency"],
        created_at=row["created_at"],
    )


@app.get("/households/me/settings", response_model=HouseholdSettingsResponse)
def get_household_settings(
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> HouseholdSettingsResponse:
    household_id = get_household_id(x_household_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(households.c.id, households.c.name).where(households.c.id == household_id)
        ).mappings().first()
        home_currency = resolve_home_currency(conn, household_id)
    if not row:
        raise HTTPException(status_code=404, detail="Household not found.")
    return HouseholdSettingsResponse(id=row["id"], name=row["name"], home_currency=home_currency)


@app.put("/households/me/settings", response_model=HouseholdSettingsResponse)
def update_household_settings(
    payload: HouseholdSettingsPayload,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> HouseholdSettingsResponse:
    household_id = get_household_id(x_household_id)
    home_currency = parse_currency(payload.home_currency)
    with engine.begin() as conn:
        row = conn.execute(
            update(households)
            .where(households.c.id == household_id)
            .values(home_currency=home_currency)
            .returning(households.c.id, households.c.name, households.c.home_currency)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Household not found.")
    return HouseholdSettingsResponse(
        id=row["id"], name=row["name"], home_currency=row["home_currency"]
    )


@app.get("/api/forex/rates", response_model=RatesResponse)
def get_rates(base: str | None = Query(None)) -> RatesResponse:
    base_currency = parse_currency(base) if base else settings.HOME_CURRENCY
    return snapshot_response(FOREX_SERVICE.get_rates(base_currency))


@app.get("/api/forex/convert", response_model=ConversionResponse)
def convert(
    amount: str | None = Query(None),
    from_currency: str | None = Query(None, alias="from"),
    to_currency: str | None = Query(None, alias="to"),
) -> ConversionResponse:
    value = parse_amount(amount)
    source = parse_currency(from_currency) if from_currency else settings.HOME_CURRENCY
    target = parse_currency(to_currency) if to_currency else "USD"
    try:
        result = FOREX_SERVICE.convert(value, source, target)
    except RateUnavailable as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConversionResponse(
        from_currency=result.from_currency,
        to_currency=result.to_currency,
        amount=float(result.amount),
        result=float(result.result),
        rate=float(result.rate),
        date=result.date,
    )


@app.get("/api/forex/history", response_model=HistoryResponse)
def get_history(
    from_currency: str | None = Query(None, alias="from"),
    to_currency: str | None = Query(None, alias="to"),
    start: str | None = Query(None),
    end: str | None = Query(None),
) -> HistoryResponse:
    source = parse_currency(from_currency) if from_currency else settings.HOME_CURRENCY
    target = parse_currency(to_currency) if to_currency else "USD"
    try:
        points = FOREX_SERVICE.get_history(source, target, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return HistoryResponse(
        base=source,
        target=target,
        rates=[HistoryPointResponse(date=point.date, rate=float(point.rate)) for point in points],
    )


@app.get("/api/forex/currencies")
def get_currencies() -> dict[str, str]:
    return FOREX_SERVICE.get_currencies()


@app.post("/api/forex/accounts", response_model=ForexAccountResponse)
def create_forex_account(
    payload: ForexAccountPayload,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexAccountResponse:
    household_id = get_household_id(x_household_id)
    try:
        payload = ForexAccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        account_id = conn.execute(
            insert(forex_accounts)
            .values(
                household_id=household_id,
                name=payload.name,
                currency=payload.currency,
                balance=payload.balance if payload.balance is not None else Decimal("0"),
                provider=payload.provider,
                account_num=payload.account_num,
                notes=payload.notes,
            )
            .returning(forex_accounts.c.id)
        ).scalar_one_or_none()
        row = fetch_account(conn, household_id, account_id) if account_id else None

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create forex account.")
    return account_response(row)


@app.get("/api/forex/accounts", response_model=list[ForexAccountResponse])
def list_forex_accounts(
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> list[ForexAccountResponse]:
    household_id = get_household_id(x_household_id)
    with engine.begin() as conn:
        rows = conn.execute(
            account_select()
            .where(
                forex_accounts.c.household_id == household_id,
                forex_accounts.c.is_active.is_(True),
            )
            .order_by(forex_accounts.c.created_at.desc(), forex_accounts.c.id.desc())
        ).mappings().all()
    return [account_response(row) for row in rows]


@app.get("/api/forex/accounts/summary", response_model=ForexAccountSummaryResponse)
def forex_accounts_summary(
    currency: str | None = Query(None),
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexAccountSummaryResponse:
    household_id = get_household_id(x_household_id)
    with engine.begin() as conn:
        target = parse_currency(currency) if currency else resolve_home_currency(conn, household_id)
        rows = conn.execute(
            select(
                forex_accounts.c.id,
                forex_accounts.c.name,
                forex_accounts.c.currency,
                forex_accounts.c.balance,
            )
            .where(
                forex_accounts.c.household_id == household_id,
                forex_accounts.c.is_active.is_(True),
            )
            .order_by(forex_accounts.c.id.asc())
        ).mappings().all()

    total = Decimal("0")
    entries: list[AccountBalanceEntry] = []
    unconverted: set[str] = set()
    for row in rows:
        try:
            converted = FOREX_SERVICE.convert(row["balance"], row["currency"], target)
        except (RateUnavailable, ValueError) as exc:
            logger.warning("Cannot convert account %s balance: %s", row["id"], exc)
            unconverted.add(row["currency"])
            continue
        total += converted.result
        entries.append(
            AccountBalanceEntry(
                account_id=row["id"],
                name=row["name"],
                currency=row["currency"],
                balance=row["balance"],
                converted_balance=converted.result,
                rate=converted.rate,
            )
        )
    return ForexAccountSummaryResponse(
        currency=target,
        total=total,
        accounts=entries,
        unconverted=sorted(unconverted),
    )


@app.get("/api/forex/accounts/{account_id}", response_model=ForexAccountResponse)
def get_forex_account(
    account_id: int,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexAccountResponse:
    household_id = get_household_id(x_household_id)
    with engine.begin() as conn:
        row = fetch_account(conn, household_id, account_id)
    if not row:
        raise HTTPException(status_code=404, detail="Forex account not found.")
    return account_response(row)


@app.put("/api/forex/accounts/{account_id}", response_model=ForexAccountResponse)
def update_forex_account(
    account_id: int,
    payload: ForexAccountUpdatePayload,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexAccountResponse:
    household_id = get_household_id(x_household_id)
    try:
        values = ForexAccountUpdatePayload.to_values(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if values:
            result = conn.execute(
                update(forex_accounts)
                .where(
                    forex_accounts.c.id == account_id,
                    forex_accounts.c.household_id == household_id,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                raise HTTPException(status_code=404, detail="Forex account not found.")
        row = fetch_account(conn, household_id, account_id)

    if not row:
        raise HTTPException(status_code=404, detail="Forex account not found.")
    return account_response(row)


@app.delete("/api/forex/accounts/{account_id}")
def delete_forex_account(
    account_id: int,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> dict:
    household_id = get_household_id(x_household_id)
    with engine.begin() as conn:
        ensure_account_owned(conn, household_id, account_id)
        conn.execute(
            update(forex_transfers)
            .where(forex_transfers.c.forex_account_id == account_id)
            .values(forex_account_id=None)
        )
        conn.execute(
            forex_accounts.delete().where(
                forex_accounts.c.id == account_id,
                forex_accounts.c.household_id == household_id,
            )
        )
    return {"status": "deleted"}


@app.post("/api/forex/transfers", response_model=ForexTransferResponse)
def create_forex_transfer(
    payload: ForexTransferPayload,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexTransferResponse:
    household_id = get_household_id(x_household_id)
    try:
        payload = ForexTransferPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_account_owned(conn, household_id, payload.forex_account_id)
        transfer_id = conn.execute(
            insert(forex_transfers)
            .values(
                household_id=household_id,
                forex_account_id=payload.forex_account_id,
                type=payload.type,
                from_currency=payload.from_currency,
                to_currency=payload.to_currency,
                from_amount=payload.from_amount,
                to_amount=payload.to_amount,
                exchange_rate=payload.exchange_rate,
                fee=payload.fee,
                date=payload.date,
                description=payload.description,
                notes=payload.notes,
            )
            .returning(forex_transfers.c.id)
        ).scalar_one_or_none()
        if payload.forex_account_id is not None:
            conn.execute(
                update(forex_accounts)
                .where(forex_accounts.c.id == payload.forex_account_id)
                .values(balance=forex_accounts.c.balance + transfer_balance_delta(payload))
            )
        row = fetch_transfer(conn, household_id, transfer_id) if transfer_id else None

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create forex transfer.")
    return transfer_response(row)


@app.get("/api/forex/transfers", response_model=list[ForexTransferResponse])
def list_forex_transfers(
    account_id: int | None = Query(None),
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> list[ForexTransferResponse]:
    household_id = get_household_id(x_household_id)
    stmt = transfer_select().where(forex_transfers.c.household_id == household_id)
    if account_id is not None:
        stmt = stmt.where(forex_transfers.c.forex_account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            stmt.order_by(forex_transfers.c.date.desc(), forex_transfers.c.id.desc())
        ).mappings().all()
    return [transfer_response(row) for row in rows]


@app.put("/api/forex/transfers/{transfer_id}", response_model=ForexTransferResponse)
def update_forex_transfer(
    transfer_id: int,
    payload: ForexTransferUpdatePayload,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> ForexTransferResponse:
    household_id = get_household_id(x_household_id)
    try:
        values = ForexTransferUpdatePayload.to_values(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_account_owned(conn, household_id, values.get("forex_account_id"))
        if values:
            result = conn.execute(
                update(forex_transfers)
                .where(
                    forex_transfers.c.id == transfer_id,
                    forex_transfers.c.household_id == household_id,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                raise HTTPException(status_code=404, detail="Forex transfer not found.")
        row = fetch_transfer(conn, household_id, transfer_id)

    if not row:
        raise HTTPException(status_code=404, detail="Forex transfer not found.")
    return transfer_response(row)


@app.delete("/api/forex/transfers/{transfer_id}")
def delete_forex_transfer(
    transfer_id: int,
    x_household_id: str | None = Header(None, alias="x-household-id"),
) -> dict:
    household_id = get_household_id(x_household_id)
    stmt = forex_transfers.delete().where(
        forex_transfers.c.id == transfer_id,
        forex_transfers.c.household_id == household_id,
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Forex transfer not found.")
    return {"status": "deleted"}
