"""Сервис курса валют USD -> MNT."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.config import settings
from esim_app.models.currency_rate import CurrencyRate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateQuote:
    """Курс и его происхождение: api / manual (из БД), stale (устаревший), fallback (константа)."""

    rate: Decimal
    source: str
    last_updated: datetime | None = None

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


class RateService:
    """
    Сервис для получения курса валют.

    Всегда возвращает какой-то курс: свежий из БД, свежий из API,
    последний известный или захардкоженный fallback.
    """

    def __init__(self, db: AsyncSession, transport: httpx.AsyncBaseTransport | None = None):
        self.db = db
        self._transport = transport

    async def get_rate(self, from_currency: str | None = None, to_currency: str | None = None) -> Decimal:
        """Получить курс для пары валют."""
        quote = await self.get_quote(from_currency, to_currency)
        return quote.rate

    async def get_quote(self, from_currency: str | None = None, to_currency: str | None = None) -> RateQuote:
        """Получить курс вместе с источником."""
        from_currency = (from_currency or settings.base_currency).upper()
        to_currency = (to_currency or settings.local_currency).upper()

        latest = await self.get_latest(from_currency, to_currency)
        if latest and datetime.utcnow() - latest.last_updated < timedelta(hours=settings.exchange_rate_ttl_hours):
            return RateQuote(rate=latest.rate, source=latest.source, last_updated=latest.last_updated)

        try:
            fresh_rate = await self.fetch_rate_from_api(from_currency, to_currency)
        except ValueError as e:
            if latest:
                logger.warning(
                    f"Exchange rate API unavailable ({e}), using last known {from_currency}->{to_currency} "
                    f"rate {latest.rate} from {latest.last_updated}"
                )
                return RateQuote(rate=latest.rate, source="stale", last_updated=latest.last_updated)
            logger.warning(
                f"Exchange rate API unavailable ({e}) and no stored rate, "
                f"using fallback {settings.fallback_exchange_rate}"
            )
            return RateQuote(rate=settings.fallback_exchange_rate, source="fallback")

        record = await self._append(from_currency, to_currency, fresh_rate, source="api")
        return RateQuote(rate=record.rate, source=record.source, last_updated=record.last_updated)

    async def get_latest(self, from_currency: str, to_currency: str) -> CurrencyRate | None:
        """Последняя сохраненная строка для пары валют."""
        stmt = (
            select(CurrencyRate)
            .where(
                CurrencyRate.from_currency == from_currency,
                CurrencyRate.to_currency == to_currency,
            )
            .order_by(CurrencyRate.last_updated.desc(), CurrencyRate.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def set_manual_rate(
        self,
        rate: Decimal,
        from_currency: str | None = None,
        to_currency: str | None = None,
    ) -> CurrencyRate:
        """Ручная установка курса администратором. Просто новая строка с source=manual."""
        if rate <= 0:
            raise ValueError("Exchange rate must be greater than 0")
        from_currency = (from_currency or settings.base_currency).upper()
        to_currency = (to_currency or settings.local_currency).upper()
        logger.info(f"Manual exchange rate set: {from_currency}->{to_currency} = {rate}")
        return await self._append(from_currency, to_currency, rate, source="manual")

    async def fetch_rate_from_api(self, from_currency: str, to_currency: str) -> Decimal:
        """
        Получить курс из внешнего API.

        Raises:
            ValueError: Если API недоступен или курса нет в ответе
        """
        url = f"{settings.exchange_rate_api_url}/{from_currency}"
        try:
            async with httpx.AsyncClient(timeout=settings.exchange_rate_timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise ValueError(f"Exchange rate API request error: {e}")

        if response.status_code != 200:
            raise ValueError(f"Exchange rate API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ValueError("Exchange rate API returned invalid JSON")

        if not isinstance(data, dict):
            raise ValueError("Exchange rate API returned unexpected body")

        # exchangerate-api отдает "rates" (v4) или "conversion_rates" (v6)
        rates = data.get("conversion_rates") or data.get("rates") or {}
        if not isinstance(rates, dict):
            raise ValueError("Exchange rate API returned malformed rates")
        value = rates.get(to_currency)
        if value is None:
            raise ValueError(f"{to_currency} rate not found in API response")

        try:
            rate = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid {to_currency} rate in API response: {value!r}")
        if rate <= 0:
            raise ValueError(f"Non-positive {to_currency} rate in API response: {rate}")

        logger.info(f"Fetched exchange rate {from_currency}->{to_currency}: {rate}")
        return rate

    async def _append(self, from_currency: str, to_currency: str, rate: Decimal, source: str) -> CurrencyRate:
        record = CurrencyRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            source=source,
            last_updated=datetime.utcnow(),
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)
        return record
