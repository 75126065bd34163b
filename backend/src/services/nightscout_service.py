"""
Nightscout API Service
Live TimeSeriesSource backed by a Nightscout site's entries and treatments.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import httpx

from models.schemas import Dose, DoseKind, Sample, SignalKind

logger = logging.getLogger(__name__)


MAX_COUNT = 1000


class NightscoutService:
    """Nightscout client exposing glucose (sgv) and insulin/carb treatments."""

    SUPPORTED_SIGNALS = {SignalKind.GLUCOSE, SignalKind.INSULIN, SignalKind.CARBS}

    def __init__(
        self,
        base_url: str,
        api_secret: str = "",
        api_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Nightscout service.

        Args:
            base_url: Nightscout URL (e.g., https://example.herokuapp.com)
            api_secret: Plain text API secret (will be SHA1 hashed)
            api_token: Access token, sent as a query parameter
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used for tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Accept": "application/json"}
        if api_secret:
            # Nightscout expects the SHA1 of the secret
            self.headers["API-SECRET"] = hashlib.sha1(api_secret.encode('utf-8')).hexdigest()
        self.params = {"token": api_token} if api_token else {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            params=self.params,
            timeout=self.timeout,
            transport=self.transport
        )

    def supports(self, signal: SignalKind) -> bool:
        return signal in self.SUPPORTED_SIGNALS

    async def test_connection(self) -> Tuple[bool, str]:
        """
        Test the connection to Nightscout.

        Returns:
            Tuple of (success, message)
        """
        try:
            async with self._client() as client:
                response = await client.get("/api/v1/entries.json", params={"count": 1})
            if response.status_code == 200:
                return True, "Connection successful"
            elif response.status_code == 401:
                return False, "Invalid API secret or token"
            return False, f"Error: HTTP {response.status_code}"
        except httpx.TimeoutException:
            return False, "Connection timeout"
        except httpx.HTTPError as e:
            return False, f"Connection error: {e}"

    async def _get(self, path: str, params: dict) -> list:
        async with self._client() as client:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json() or []

    async def fetch_range(
        self,
        signal: SignalKind,
        start: datetime,
        end: datetime,
        limit: int = MAX_COUNT
    ) -> List[Sample]:
        """
        Fetch CGM entries within [start, end].

        Raises:
            httpx.HTTPError: On transport or HTTP status errors
        """
        if signal != SignalKind.GLUCOSE:
            return []
        entries = await self._get("/api/v1/entries/sgv.json", {
            "count": min(limit, MAX_COUNT),
            "find[date][$gte]": int(start.timestamp() * 1000),
            "find[date][$lte]": int(end.timestamp() * 1000),
        })

        samples = []
        for entry in entries:
            sample = self._parse_glucose_entry(entry)
            if sample is not None:
                samples.append(sample)
        logger.debug(f"Fetched {len(samples)} glucose entries from Nightscout")
        return samples

    async def fetch_latest(self, signal: SignalKind, as_of: datetime) -> Optional[Sample]:
        if signal != SignalKind.GLUCOSE:
            return None
        entries = await self._get("/api/v1/entries/sgv.json", {
            "count": 1,
            "find[date][$lte]": int(as_of.timestamp() * 1000),
        })
        samples = [s for s in (self._parse_glucose_entry(e) for e in entries) if s is not None]
        return max(samples, key=lambda s: s.timestamp) if samples else None

    async def fetch_doses(self, kind: DoseKind, start: datetime, end: datetime) -> List[Dose]:
        """Fetch insulin or carb treatments within [start, end]."""
        field = "insulin" if kind == DoseKind.INSULIN else "carbs"
        entries = await self._get("/api/v1/treatments.json", {
            "count": MAX_COUNT,
            "find[created_at][$gte]": start.astimezone(timezone.utc).isoformat(),
            "find[created_at][$lte]": end.astimezone(timezone.utc).isoformat(),
            f"find[{field}][$gt]": 0,
        })

        doses = []
        for entry in entries:
            dose = self._parse_treatment_entry(entry, kind)
            if dose is not None:
                doses.append(dose)
        logger.debug(f"Fetched {len(doses)} {kind.value} treatments from Nightscout")
        return doses

    @staticmethod
    def _parse_timestamp(entry: dict) -> Optional[datetime]:
        date_ms = entry.get('date') or entry.get('mills')
        if date_ms:
            return datetime.fromtimestamp(float(date_ms) / 1000, tz=timezone.utc)
        date_string = entry.get('dateString') or entry.get('created_at')
        if date_string:
            try:
                parsed = datetime.fromisoformat(date_string.replace('Z', '+00:00'))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return None

    def _parse_glucose_entry(self, entry: dict) -> Optional[Sample]:
        """Parse a raw Nightscout sgv entry. Range validation is the adapter's job."""
        sgv = entry.get('sgv')
        timestamp = self._parse_timestamp(entry)
        if sgv is None or timestamp is None:
            return None
        try:
            value = float(sgv)
        except (TypeError, ValueError):
            logger.warning(f"Unparseable sgv value: {sgv!r}")
            return None
        return Sample(timestamp=timestamp, value=value, signal=SignalKind.GLUCOSE)

    def _parse_treatment_entry(self, entry: dict, kind: DoseKind) -> Optional[Dose]:
        """Parse a raw Nightscout treatment into a Dose of the requested kind."""
        raw = entry.get('insulin' if kind == DoseKind.INSULIN else 'carbs')
        timestamp = self._parse_timestamp(entry)
        if raw is None or timestamp is None:
            return None
        try:
            amount = float(raw)
        except (TypeError, ValueError):
            logger.warning(f"Unparseable {kind.value} amount: {raw!r}")
            return None
        if amount <= 0:
            return None
        return Dose(timestamp=timestamp, amount=amount, kind=kind)
