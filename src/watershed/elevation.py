"""
Elevation enrichment through a batched point-elevation web service.

The service accepts up to ``ELEVATION_BATCH_SIZE`` points per request and
answers with one elevation per point, in request order. Large collections are
split into fixed-size batches, each batch is retried on transient failures
with exponential backoff, and the results are stitched back together in the
original point order.

Service contract::

    POST <url>
    {"points": [[lon, lat], ...], "spatialReference": {"wkid": 4326}}

    200 OK
    {"elevations": [{"value": 183.2, "unit": "Meters"}, ...]}

Usage::

    from src.watershed.elevation import ElevationClient

    client = ElevationClient(url="https://...", max_workers=2)
    try:
        enriched = client.enrich(tagged_points)
    except ElevationServiceError as e:
        # e.offset is the first batch that gave up; resume later
        enriched = client.enrich(tagged_points, resume=e.partial)
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import requests
from tqdm.auto import tqdm

from src import config
from src.watershed.models import Point

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=Point)

# HTTP statuses worth another attempt besides 5xx
RETRYABLE_STATUS = {408, 429}


@dataclass(frozen=True)
class Batch:
    """A contiguous slice of the input, identified by its starting offset."""

    offset: int
    items: Tuple[Any, ...]

    def __len__(self) -> int:
        return len(self.items)


def iter_batches(items: Sequence[Any], batch_size: int) -> Iterator[Batch]:
    """
    Yield fixed-size batches over ``items``; the last batch may be shorter.

    Examples:
        >>> [(b.offset, len(b)) for b in iter_batches(range(12), 5)]
        [(0, 5), (5, 5), (10, 2)]
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    for offset in range(0, len(items), batch_size):
        yield Batch(offset=offset, items=tuple(items[offset:offset + batch_size]))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts per batch, including the first
        backoff_base: Delay before the second attempt (seconds)
        backoff_factor: Multiplier applied to the delay after each failure
        max_backoff: Upper bound for a single delay (seconds)
    """

    max_attempts: int = config.ELEVATION_MAX_ATTEMPTS
    backoff_base: float = config.ELEVATION_BACKOFF_BASE
    backoff_factor: float = config.ELEVATION_BACKOFF_FACTOR
    max_backoff: float = config.ELEVATION_MAX_BACKOFF

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def delay(self, failures: int) -> float:
        """Seconds to wait after ``failures`` consecutive failed attempts."""
        return min(self.backoff_base * self.backoff_factor ** (failures - 1), self.max_backoff)


@dataclass(frozen=True)
class ElevationValue:
    value: Optional[float]
    unit: Optional[str]


@dataclass
class PartialEnrichment:
    """
    Progress of an enrichment run that did not finish.

    ``completed`` maps batch offsets to their elevation values; hand the
    object back to ``ElevationClient.enrich(resume=...)`` to fetch only the
    missing batches.
    """

    total: int
    batch_size: int
    completed: Dict[int, Tuple[ElevationValue, ...]] = field(default_factory=dict)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def first_failed_offset(self) -> Optional[int]:
        return min(self.failed) if self.failed else None

    @property
    def enriched_count(self) -> int:
        return sum(len(v) for v in self.completed.values())

    @property
    def pending_offsets(self) -> List[int]:
        return [o for o in range(0, self.total, self.batch_size) if o not in self.completed]


class ElevationServiceError(RuntimeError):
    """
    An elevation batch failed for good.

    Attributes:
        offset: Starting offset of the failing batch (first failing batch
            when several failed)
        attempts: Attempts spent on that batch
        partial: PartialEnrichment with every batch that did succeed (set
            by ``ElevationClient.enrich``)
    """

    def __init__(
        self,
        message: str,
        offset: int,
        attempts: int,
        partial: Optional[PartialEnrichment] = None,
    ):
        super().__init__(f"{message} (batch offset {offset}, {attempts} attempt(s))")
        self.reason = message
        self.offset = offset
        self.attempts = attempts
        self.partial = partial


class _TransientError(Exception):
    """Failure that another attempt may fix (network error, 5xx, throttling)."""


class ElevationClient:
    """
    Batched, retrying client for the point-elevation service.

    Args:
        url: Service endpoint
        batch_size: Points per request
        timeout: Per-attempt request timeout in seconds
        retry: RetryPolicy applied to each batch independently
        max_workers: Number of batches in flight at once
        min_interval: Minimum seconds between two requests (rate limit)
        session: requests.Session to use (one is created if None)
        wkid: Spatial reference id sent with every request
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        url: str = config.ELEVATION_SERVICE_URL,
        *,
        batch_size: int = config.ELEVATION_BATCH_SIZE,
        timeout: float = config.ELEVATION_TIMEOUT,
        retry: Optional[RetryPolicy] = None,
        max_workers: int = config.ELEVATION_MAX_WORKERS,
        min_interval: float = config.ELEVATION_MIN_INTERVAL,
        session: Optional[requests.Session] = None,
        wkid: int = config.TARGET_WKID,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.url = url
        self.batch_size = batch_size
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.max_workers = max_workers
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self.wkid = wkid
        self._sleep = sleep

        self._throttle_lock = threading.Lock()
        self._last_request = 0.0

    def _throttle(self) -> None:
        if self.min_interval <= 0:
            return
        with self._throttle_lock:
            wait = self._last_request + self.min_interval - time.monotonic()
            if wait > 0:
                self._sleep(wait)
            self._last_request = time.monotonic()

    def _parse(self, payload: Any, batch: Batch) -> Tuple[ElevationValue, ...]:
        try:
            rows = payload["elevations"]
        except (KeyError, TypeError):
            raise ElevationServiceError(
                "Malformed elevation response: missing 'elevations'", batch.offset, 1
            )
        if not isinstance(rows, (list, tuple)):
            raise ElevationServiceError(
                f"Malformed elevation response: 'elevations' is {type(rows).__name__}, not a list",
                batch.offset,
                1,
            )
        if len(rows) != len(batch):
            raise ElevationServiceError(
                f"Elevation response has {len(rows)} values for {len(batch)} points",
                batch.offset,
                1,
            )

        values = []
        for row in rows:
            raw = row.get("value") if isinstance(row, dict) else None
            unit = row.get("unit") if isinstance(row, dict) else None
            try:
                value = None if raw is None else float(raw)
            except (TypeError, ValueError):
                raise ElevationServiceError(
                    f"Non-numeric elevation value {raw!r}", batch.offset, 1
                )
            values.append(ElevationValue(value, unit))
        return tuple(values)

    def fetch_batch(self, batch: Batch) -> Tuple[ElevationValue, ...]:
        """
        Single request for one batch.

        Raises:
            _TransientError: On any requests network error, 5xx or throttling
            ElevationServiceError: On any other HTTP error or a malformed body
        """
        payload = {
            "points": [[p.lon, p.lat] for p in batch.items],
            "spatialReference": {"wkid": self.wkid},
        }
        self._throttle()
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            # Timeouts, refused connections and bodies cut off mid-stream
            raise _TransientError(f"{type(e).__name__}: {e}") from e

        status = resp.status_code
        if status >= 500 or status in RETRYABLE_STATUS:
            raise _TransientError(f"HTTP {status}")
        if status >= 400:
            raise ElevationServiceError(f"Elevation service rejected batch: HTTP {status}", batch.offset, 1)

        try:
            body = resp.json()
        except ValueError as e:
            raise ElevationServiceError(f"Elevation response is not JSON: {e}", batch.offset, 1)
        return self._parse(body, batch)

    def fetch_with_retry(self, batch: Batch) -> Tuple[ElevationValue, ...]:
        """Fetch one batch, retrying transient failures per the retry policy."""
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                return self.fetch_batch(batch)
            except _TransientError as e:
                if attempt == self.retry.max_attempts:
                    logger.error(
                        f"Batch at offset {batch.offset} failed after {attempt} attempts: {e}"
                    )
                    raise ElevationServiceError(
                        f"Elevation service unavailable: {e}", batch.offset, attempt
                    ) from e
                delay = self.retry.delay(attempt)
                logger.warning(
                    f"Batch at offset {batch.offset} attempt {attempt} failed ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
            except ElevationServiceError as e:
                if attempt == 1:
                    raise
                raise ElevationServiceError(e.reason, batch.offset, attempt) from e
        raise AssertionError("unreachable")

    def enrich(
        self,
        points: Sequence[P],
        resume: Optional[PartialEnrichment] = None,
        progress: bool = True,
    ) -> List[P]:
        """
        Attach elevation and unit to every point.

        Args:
            points: Watershed-tagged points
            resume: PartialEnrichment from an earlier failed run over the
                same points; its completed batches are not re-requested
            progress: Show a tqdm progress bar

        Returns:
            New point objects, same count and order as ``points``

        Raises:
            ElevationServiceError: A batch exhausted its retries or was
                rejected; ``partial`` holds every batch that succeeded
        """
        points = list(points)
        state = PartialEnrichment(total=len(points), batch_size=self.batch_size)
        if resume is not None:
            if resume.total != len(points) or resume.batch_size != self.batch_size:
                raise ValueError(
                    f"Cannot resume: partial run covered {resume.total} points in batches of "
                    f"{resume.batch_size}, got {len(points)} points in batches of {self.batch_size}"
                )
            state.completed.update(resume.completed)

        todo = [b for b in iter_batches(points, self.batch_size) if b.offset not in state.completed]
        logger.info(
            f"Fetching elevations for {len(points)} points: {len(todo)} batches of "
            f"<= {self.batch_size} ({len(state.completed)} already done)"
        )

        errors: Dict[int, ElevationServiceError] = {}
        with tqdm(total=len(todo), desc="Fetching elevations", disable=not progress) as pbar:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {executor.submit(self.fetch_with_retry, b): b for b in todo}
                for future in as_completed(futures):
                    batch = futures[future]
                    try:
                        state.completed[batch.offset] = future.result()
                    except ElevationServiceError as e:
                        errors[batch.offset] = e
                        state.failed[batch.offset] = str(e)
                    finally:
                        pbar.update(1)

        if errors:
            first = errors[min(errors)]
            logger.error(
                f"Elevation enrichment incomplete: {state.enriched_count}/{len(points)} points "
                f"enriched, first failing batch at offset {first.offset}"
            )
            raise ElevationServiceError(
                "Elevation enrichment failed", first.offset, first.attempts, partial=state
            ) from first

        enriched: List[P] = []
        for batch in iter_batches(points, self.batch_size):
            for p, ev in zip(batch.items, state.completed[batch.offset]):
                enriched.append(p.with_elevation(ev.value, ev.unit))

        missing = sum(1 for p in enriched if p.elevation is None)
        if missing:
            logger.warning(f"Elevation service returned no value for {missing} points")
        logger.info(f"Enriched {len(enriched)} points with elevation")
        return enriched
