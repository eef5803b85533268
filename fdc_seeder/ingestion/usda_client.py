"""Rate-limited client for the USDA FoodData Central search API.

API Reference: https://fdc.nal.usda.gov/api-guide.html

DESIGN DECISIONS:
- One call shape: page N of one data type ("partition"), sorted by fdcId
- Every call waits on a shared RateLimiter, retries included
- HTTP 429, 5xx, timeouts, connection errors and bad JSON are retried with
  exponential backoff, then surface as TransientFetchError
- Any other 4xx is a FatalFetchError straight away
- The client never touches the checkpoint
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from fdc_seeder.data_layer.models import ExternalFoodRecord
from fdc_seeder.ingestion.ingestion_errors import FatalFetchError, TransientFetchError
from fdc_seeder.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEMO_API_KEY = "DEMO_KEY"
DEMO_REQUESTS_PER_HOUR = 25
KEYED_REQUESTS_PER_HOUR = 3500
MAX_PAGE_SIZE = 200


class DataType(Enum):
    """FoodData Central data types, in default crawl order."""
    FOUNDATION = "Foundation"
    SR_LEGACY = "SR Legacy"
    SURVEY = "Survey (FNDDS)"
    BRANDED = "Branded"

    @classmethod
    def default_partitions(cls) -> List[str]:
        return [dt.value for dt in cls]


@dataclass
class FoodPage:
    """One page of search results for a partition.

    Attributes:
        partition: Data type filter used for the request
        page_number: 1-based page number
        records: Parsed food records, in API order
        total_hits: Total matches for the partition (API metadata)
        malformed: Raw items skipped because they had no usable fdcId
    """
    partition: str
    page_number: int
    records: List[ExternalFoodRecord]
    total_hits: int
    malformed: List[str] = field(default_factory=list)


def _retry_after_seconds(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class RateLimitedClient:
    """Client for paging through FoodData Central by data type.

    Usage:
        client = RateLimitedClient(api_key="your_key")
        # or
        client = RateLimitedClient.from_env()  # reads USDA_API_KEY, falls back to DEMO_KEY

        page = client.fetch_page("Foundation", 1)
        for record in page.records:
            ...
    """

    BASE_URL = "https://api.nal.usda.gov/fdc/v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
        requests_per_hour: Optional[int] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        max_retry_delay: float = 2 * 60 * 60,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize the client.

        Args:
            api_key: FDC API key; empty or None falls back to the low-quota DEMO_KEY
            base_url: API root (default: public FDC v1 endpoint)
            page_size: Items per page (1-200)
            requests_per_hour: Published rate limit; derived from the key when None
            timeout: Per-request timeout in seconds
            max_retries: Attempts per call before giving up
            backoff_base: First backoff delay in seconds, doubled per attempt
            max_retry_delay: Longest Retry-After the client is willing to honour
            session: requests.Session to use (a new one by default)
            limiter: Shared RateLimiter (built from requests_per_hour by default)
            sleep: Sleep function used for backoff
        """
        key = (api_key or "").strip()
        if not key:
            logger.warning("FDC_CLIENT no API key configured, using %s", DEMO_API_KEY)
            key = DEMO_API_KEY
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")

        self.api_key = key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.page_size = page_size
        self.requests_per_hour = requests_per_hour or (
            DEMO_REQUESTS_PER_HOUR if key == DEMO_API_KEY else KEYED_REQUESTS_PER_HOUR
        )
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_retry_delay = max_retry_delay
        self.session = session or requests.Session()
        self.limiter = limiter or RateLimiter.per_hour(self.requests_per_hour)
        self._sleep = sleep

    @classmethod
    def from_env(cls, env_var: str = "USDA_API_KEY", **kwargs) -> "RateLimitedClient":
        return cls(api_key=os.environ.get(env_var), **kwargs)

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimitedClient":
        """Build a client from a SeederConfig."""
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            page_size=config.page_size,
            requests_per_hour=config.requests_per_hour,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            max_retry_delay=config.max_retry_delay,
            **kwargs
        )

    @property
    def masked_key(self) -> str:
        return f"{self.api_key[:8]}..."

    def fetch_page(
        self,
        partition: str,
        page_number: int,
        page_size: Optional[int] = None
    ) -> FoodPage:
        """Fetch one page of a data-type partition.

        Args:
            partition: Data type filter (e.g. "Foundation")
            page_number: 1-based page number
            page_size: Override the client's page size for this call

        Returns:
            FoodPage with parsed records and the partition's total hit count

        Raises:
            TransientFetchError: Retryable failure persisted through all attempts
            FatalFetchError: The API rejected the request
        """
        size = page_size or self.page_size
        payload = self._request(partition, page_number, size)

        records: List[ExternalFoodRecord] = []
        malformed: List[str] = []
        for food in payload.get("foods") or []:
            try:
                records.append(ExternalFoodRecord.from_api(food))
            except (ValueError, TypeError, AttributeError) as e:
                malformed.append(str(e))

        try:
            total_hits = int(payload.get("totalHits") or 0)
        except (TypeError, ValueError):
            raise TransientFetchError(
                partition, page_number,
                f"unexpected response: totalHits={payload.get('totalHits')!r}",
                status_code=200,
            )
        logger.debug(
            "FDC_FETCH ok partition=%s page=%s items=%s total_hits=%s",
            partition, page_number, len(records), total_hits,
        )
        return FoodPage(
            partition=partition,
            page_number=page_number,
            records=records,
            total_hits=total_hits,
            malformed=malformed,
        )

    def count_partition(self, partition: str) -> int:
        """Total hits for a partition, read from a one-item page."""
        return self.fetch_page(partition, 1, page_size=1).total_hits

    def _request(self, partition: str, page_number: int, page_size: int) -> Dict[str, Any]:
        url = f"{self.base_url}/foods/search"
        params = {
            "api_key": self.api_key,
            "dataType": partition,
            "pageSize": page_size,
            "pageNumber": page_number,
            "sortBy": "fdcId",
            "sortOrder": "asc",
        }

        reason = "no attempt made"
        status_code: Optional[int] = None
        for attempt in range(1, self.max_retries + 1):
            self.limiter.wait()
            retry_after: Optional[float] = None
            status_code = None
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.exceptions.Timeout:
                reason = f"request timed out after {self.timeout}s"
            except requests.exceptions.ConnectionError as e:
                reason = f"connection failed: {e}"
            except requests.exceptions.RequestException as e:
                reason = f"request failed: {e}"
            else:
                status_code = response.status_code
                if status_code == 200:
                    try:
                        data = response.json()
                    except ValueError:
                        reason = "response body is not valid JSON"
                    else:
                        if isinstance(data, dict):
                            return data
                        reason = f"unexpected response type {type(data).__name__}"
                elif status_code == 429:
                    retry_after = _retry_after_seconds(response)
                    reason = "rate limited (HTTP 429)"
                    if retry_after is not None and retry_after > self.max_retry_delay:
                        logger.error(
                            "FDC_FETCH rate limit wait too long partition=%s page=%s retry_after=%.0fs",
                            partition, page_number, retry_after,
                        )
                        raise TransientFetchError(
                            partition, page_number,
                            f"rate limited for {retry_after / 3600:.1f}h",
                            status_code=status_code, attempts=attempt,
                        )
                elif status_code >= 500:
                    reason = f"server error (HTTP {status_code})"
                else:
                    raise FatalFetchError(
                        partition, page_number,
                        f"HTTP {status_code}: {response.text[:200]}",
                        status_code=status_code,
                    )

            logger.warning(
                "FDC_FETCH retry attempt=%s/%s partition=%s page=%s error=%s",
                attempt, self.max_retries, partition, page_number, reason,
            )
            if attempt < self.max_retries:
                delay = retry_after if retry_after is not None else self.backoff_base * (2 ** (attempt - 1))
                logger.info("FDC_FETCH backoff %.1fs before retry", delay)
                self._sleep(delay)

        raise TransientFetchError(
            partition, page_number, reason,
            status_code=status_code, attempts=self.max_retries,
        )
