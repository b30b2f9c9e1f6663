from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from http.client import HTTPException
import json
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from forex_backend import settings

logger = logging.getLogger("forex_backend.rates")

ONE = Decimal("1")
CENT = Decimal("0.01")


class UpstreamUnavailable(RuntimeError):
    """Raised when the rate provider cannot be reached or answers badly."""


class RateUnavailable(LookupError):
    """Raised when no rate can be found for a currency pair in either direction."""

    def __init__(self, from_currency: str, to_currency: str) -> None:
        super().__init__(f"No rate found for {from_currency} -> {to_currency}")
        self.from_currency = from_currency
        self.to_currency = to_currency


@dataclass(frozen=True)
class RateSnapshot:
    """Rates for one base currency, as published on ``as_of_date``.

    ``rates`` maps a currency code to the amount of that currency bought by
    one unit of ``base``. The base itself may or may not be listed.
    ``fetched_at`` is the epoch time in milliseconds at which the snapshot
    was stored in the cache; fallback snapshots leave it unset.
    """

    base: str
    as_of_date: str
    rates: Mapping[str, Decimal]
    fetched_at: int | None = None


@dataclass(frozen=True)
class ConversionResult:
    from_currency: str
    to_currency: str
    amount: Decimal
    result: Decimal
    rate: Decimal
    date: str


@dataclass(frozen=True)
class HistoryPoint:
    date: str
    rate: Decimal


@dataclass(frozen=True)
class FallbackTables:
    """Static approximate rates used when neither live nor cached data exists.

    ``rates`` are expressed per one unit of ``anchor``; tables for any other
    listed currency are derived as cross rates.
    """

    version: str
    anchor: str
    rates: Mapping[str, Decimal]
    currencies: Mapping[str, str]

    def rates_for(self, base: str) -> dict[str, Decimal]:
        if base == self.anchor:
            return dict(self.rates)
        base_in_anchor = self.rates.get(base)
        if not base_in_anchor:
            return {}
        derived = {self.anchor: ONE / base_in_anchor}
        for code, rate in self.rates.items():
            if code != base:
                derived[code] = rate / base_in_anchor
        return derived


def load_fallback_tables(path: Path | str | None = None) -> FallbackTables:
    source = Path(path) if path is not None else settings.FX_FALLBACK_RATES_PATH
    with source.open(encoding="utf-8") as handle:
        payload = json.load(handle)

    anchor = normalize_currency(payload["anchor"])
    rates = _parse_rates(payload.get("rates"))
    currencies = {
        normalize_currency(code): str(name)
        for code, name in (payload.get("currencies") or {}).items()
    }
    return FallbackTables(
        version=str(payload.get("version", "unversioned")),
        anchor=anchor,
        rates=rates,
        currencies=currencies,
    )


@dataclass
class FrankfurterClient:
    """Thin JSON client for the frankfurter.app rate API.

    Every failure (network error, timeout, non-2xx status, unexpected body)
    is raised as :class:`UpstreamUnavailable`.
    """

    base_url: str = settings.FRANKFURTER_BASE_URL
    timeout: float = settings.FX_REQUEST_TIMEOUT_SECONDS
    opener: Callable[..., Any] = urlopen

    def latest(self, base: str) -> RateSnapshot:
        payload = self._get_json("latest", {"from": base})
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("Frankfurter response is not an object")
        as_of_date = payload.get("date")
        if not isinstance(as_of_date, str):
            raise UpstreamUnavailable("Frankfurter response missing date")
        try:
            return RateSnapshot(
                base=normalize_currency(str(payload.get("base") or base)),
                as_of_date=as_of_date,
                rates=_parse_rates(payload.get("rates")),
            )
        except ValueError as exc:
            raise UpstreamUnavailable(f"Malformed Frankfurter response: {exc}") from exc

    def history(
        self, base: str, target: str, start: str, end: str
    ) -> dict[str, dict[str, Decimal]]:
        payload = self._get_json(f"{start}..{end}", {"from": base, "to": target})
        if not isinstance(payload, dict) or not isinstance(payload.get("rates"), dict):
            raise UpstreamUnavailable("Frankfurter history response missing rates")
        try:
            return {day: _parse_rates(rates) for day, rates in payload["rates"].items()}
        except ValueError as exc:
            raise UpstreamUnavailable(f"Malformed Frankfurter history: {exc}") from exc

    def currencies(self) -> dict[str, str]:
        payload = self._get_json("currencies")
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("Frankfurter currencies response is not an object")
        return {str(code): str(name) for code, name in payload.items()}

    def _get_json(self, path: str, params: Mapping[str, str] | None = None) -> Any:
        url = f"{self.base_url.rstrip('/')}/{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        try:
            with self.opener(url, timeout=self.timeout) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise UpstreamUnavailable(f"Frankfurter API error: {status}")
                return json.load(response)
        except (HTTPError, URLError, HTTPException, OSError, ValueError) as exc:
            raise UpstreamUnavailable(f"Frankfurter API unavailable: {exc}") from exc


class RateCache:
    """Latest :class:`RateSnapshot` per base currency.

    A snapshot is fresh for ``ttl_seconds`` after it was stored. Older
    snapshots are kept and only handed out when a refresh fails; nothing is
    ever evicted. ``clock`` returns seconds since the epoch and can be
    replaced in tests.
    """

    def __init__(
        self,
        ttl_seconds: float = settings.FX_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, RateSnapshot] = {}
        self._in_flight: dict[str, PendingRefresh] = {}
        self._guard = threading.Lock()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, base: str) -> RateSnapshot | None:
        return self._entries.get(base)

    def get_fresh(self, base: str) -> RateSnapshot | None:
        snapshot = self._entries.get(base)
        if snapshot is None or snapshot.fetched_at is None:
            return None
        if self.now_ms() - snapshot.fetched_at < self.ttl_seconds * 1000:
            return snapshot
        return None

    def store(self, base: str, snapshot: RateSnapshot) -> RateSnapshot:
        stamped = replace(snapshot, fetched_at=self.now_ms())
        self._entries[base] = stamped
        return stamped

    def begin_refresh(self, base: str) -> tuple[PendingRefresh, bool]:
        """Join the in-flight refresh for ``base`` or start a new one.

        Returns the pending refresh and whether the caller owns it. Only the
        owner talks to the provider; everyone else waits for its outcome.
        """
        with self._guard:
            pending = self._in_flight.get(base)
            if pending is not None:
                return pending, False
            pending = PendingRefresh()
            self._in_flight[base] = pending
            return pending, True

    def finish_refresh(
        self, base: str, pending: PendingRefresh, snapshot: RateSnapshot | None
    ) -> None:
        pending.snapshot = snapshot
        with self._guard:
            if self._in_flight.get(base) is pending:
                del self._in_flight[base]
        pending.done.set()


class PendingRefresh:
    """Outcome of one refresh, shared with every caller that waited on it.

    ``snapshot`` is whatever the owner ended up serving (live, stale or
    fallback); it stays ``None`` only if the owner failed unexpectedly.
    """

    def __init__(self) -> None:
        self.done = threading.Event()
        self.snapshot: RateSnapshot | None = None


@dataclass
class ForexService:
    """Exchange rates, conversions and rate history with graceful degradation.

    Provider failures never reach the caller: ``get_rates`` falls back to a
    stale cached snapshot and then to the static fallback tables,
    ``get_history`` returns an empty series and ``get_currencies`` the static
    currency list. Only :meth:`convert` raises, with :class:`RateUnavailable`,
    when a pair cannot be resolved in either direction.
    """

    client: FrankfurterClient = field(default_factory=FrankfurterClient)
    cache: RateCache = field(default_factory=RateCache)
    fallback: FallbackTables = field(default_factory=load_fallback_tables)
    home_currency: str = settings.HOME_CURRENCY
    history_days: int = settings.FX_HISTORY_DAYS
    today: Callable[[], date] = date.today

    def get_rates(self, base: str | None = None) -> RateSnapshot:
        normalized = normalize_currency(base or self.home_currency)
        cached = self.cache.get_fresh(normalized)
        if cached is not None:
            logger.debug("Rate cache hit for %s", normalized)
            return cached

        pending, owner = self.cache.begin_refresh(normalized)
        if not owner:
            pending.done.wait()
            if pending.snapshot is not None:
                return pending.snapshot
            return self._degraded_snapshot(normalized)

        served: RateSnapshot | None = None
        try:
            served = self._refresh(normalized)
        finally:
            self.cache.finish_refresh(normalized, pending, served)
        return served

    def _refresh(self, base: str) -> RateSnapshot:
        cached = self.cache.get_fresh(base)
        if cached is not None:
            return cached

        try:
            snapshot = self.client.latest(base)
        except UpstreamUnavailable as exc:
            logger.warning("Failed to fetch rates for %s: %s", base, exc)
            return self._degraded_snapshot(base)

        stored = self.cache.store(base, snapshot)
        logger.info(
            "Fetched %d rates for %s (as of %s)",
            len(stored.rates),
            base,
            stored.as_of_date,
        )
        return stored

    def _degraded_snapshot(self, base: str) -> RateSnapshot:
        stale = self.cache.get(base)
        if stale is not None:
            return stale
        return self._fallback_snapshot(base)

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> ConversionResult:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        coerced_amount = _coerce_amount(amount)

        if source == target:
            return ConversionResult(
                from_currency=source,
                to_currency=target,
                amount=coerced_amount,
                result=coerced_amount,
                rate=ONE,
                date=self.today().isoformat(),
            )

        forward = self.get_rates(source)
        rate = _usable_rate(forward.rates, target)
        as_of_date = forward.as_of_date
        if rate is None:
            reverse = self.get_rates(target)
            reverse_rate = _usable_rate(reverse.rates, source)
            if reverse_rate is None:
                raise RateUnavailable(source, target)
            rate = ONE / reverse_rate
            as_of_date = reverse.as_of_date

        return ConversionResult(
            from_currency=source,
            to_currency=target,
            amount=coerced_amount,
            result=round_money(coerced_amount * rate),
            rate=rate,
            date=as_of_date,
        )

    def get_history(
        self,
        from_currency: str,
        to_currency: str,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
    ) -> list[HistoryPoint]:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        today = self.today()
        end_key = _normalize_rate_date(end_date) or today.isoformat()
        start_key = (
            _normalize_rate_date(start_date)
            or (today - timedelta(days=self.history_days)).isoformat()
        )
        if start_key > end_key:
            raise ValueError("start_date must be on or before end_date.")

        try:
            rates_by_date = self.client.history(source, target, start_key, end_key)
        except UpstreamUnavailable as exc:
            logger.warning("Failed to fetch history for %s -> %s: %s", source, target, exc)
            return []

        points = [
            HistoryPoint(date=day, rate=rates[target])
            for day, rates in rates_by_date.items()
            if rates.get(target) is not None
        ]
        points.sort(key=lambda point: point.date)
        return points

    def get_currencies(self) -> dict[str, str]:
        try:
            return self.client.currencies()
        except UpstreamUnavailable as exc:
            logger.warning("Failed to fetch currencies: %s", exc)
            currencies = dict(self.fallback.currencies)
            currencies.setdefault(self.home_currency, self.home_currency)
            return currencies

    def _fallback_snapshot(self, base: str) -> RateSnapshot:
        rates = self.fallback.rates_for(base)
        if not rates:
            logger.warning(
                "No fallback rates for %s (table %s); returning empty rates",
                base,
                self.fallback.version,
            )
        else:
            logger.info("Serving fallback rates for %s (table %s)", base, self.fallback.version)
        return RateSnapshot(base=base, as_of_date=self.today().isoformat(), rates=rates)


def round_money(value: Decimal) -> Decimal:
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError("Amount is too large to convert.") from exc


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _usable_rate(rates: Mapping[str, Decimal], currency: str) -> Decimal | None:
    rate = rates.get(currency)
    if rate is None or rate == 0:
        return None
    return rate


def _parse_rates(rates: Any) -> dict[str, Decimal]:
    if not isinstance(rates, dict):
        raise ValueError("Rate table missing or not an object.")
    parsed: dict[str, Decimal] = {}
    for code, value in rates.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"Invalid rate for {code}: {value!r}")
        try:
            parsed[str(code).strip().upper()] = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid rate for {code}: {value!r}") from exc
    return parsed


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()
