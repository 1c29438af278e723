"""
Flippa listings API client - yields one re-loadable unit per results page.
"""
import logging
import threading
from typing import Any, Iterator, Optional

import requests

from ..config import SourceConfig
from ..errors import FetchError, RateLimitedError
from ..models.content import JobDescriptor, PendingUnit, RawContentUnit, SourceKind


logger = logging.getLogger(__name__)


DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "application/json",
}


class FlippaApiSource:
    """
    Paginated JSON listings source.

    Pages are fetched lazily, when the orchestrator loads a unit, so a
    failed page can be re-fetched by the retry controller. Pagination stops
    once ``meta.pagination.total_pages`` has been seen, an empty page has
    come back, or ``max_pages`` pages have been handed out.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        config: Optional[SourceConfig] = None,
        max_pages: int = 500,
    ):
        self.config = config or SourceConfig()
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.max_pages = max_pages
        self._lock = threading.Lock()
        self._total_pages: Optional[int] = None
        self._exhausted = False
        logger.info(f"FlippaApiSource initialized ({self.config.api_url})")

    @property
    def total_pages(self) -> Optional[int]:
        with self._lock:
            return self._total_pages

    def units(self, job: JobDescriptor) -> Iterator[PendingUnit]:
        """One PendingUnit per page of results for ``job``."""
        with self._lock:
            self._total_pages = None
            self._exhausted = False

        page = job.start_page
        handed_out = 0
        while handed_out < self.max_pages:
            if job.end_page is not None and page > job.end_page:
                break
            with self._lock:
                if self._exhausted:
                    break
                if self._total_pages is not None and page > self._total_pages:
                    break
            yield PendingUnit(
                sequence=page,
                load=lambda page=page: self.fetch_page(job, page),
                url=self.config.api_url,
            )
            page += 1
            handed_out += 1

        logger.info(f"Handed out {handed_out} pages for job {job.label or job.category or 'all'}")

    def build_params(self, job: JobDescriptor, page: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "filter[status]": "open",
            "page[number]": page,
            "page[size]": job.page_size or self.config.page_size,
        }
        if job.property_type:
            params["filter[property_type][]"] = job.property_type
        if job.category:
            params["filter[category]"] = job.category
        return params

    def fetch_page(self, job: JobDescriptor, page: int) -> RawContentUnit:
        """
        Fetch one page of results.

        Raises:
            RateLimitedError: HTTP 429
            FetchError: other HTTP errors, timeouts and connection failures
        """
        logger.info(f"Fetching page {page}...")
        try:
            response = self.session.get(
                self.config.api_url,
                params=self.build_params(job, page),
                timeout=self.config.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise FetchError(f"Page {page}: {e}", transient=True) from e
        except requests.RequestException as e:
            raise FetchError(f"Page {page}: {e}", transient=False) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"Page {page}: rate limited",
                retry_after=_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500 or status == 408:
            raise FetchError(f"Page {page}: HTTP {status}", status_code=status, transient=True)
        if status >= 400:
            raise FetchError(f"Page {page}: HTTP {status}", status_code=status, transient=False)

        try:
            payload = response.json()
        except ValueError as e:
            # Served HTML instead of JSON; let the splitter inspect it
            logger.warning(f"Page {page}: response was not JSON ({e})")
            payload = response.text

        expects_data = True
        if isinstance(payload, dict):
            pagination = (payload.get("meta") or {}).get("pagination") or {}
            total = pagination.get("total_pages")
            if isinstance(total, int):
                with self._lock:
                    self._total_pages = total
                expects_data = page <= total
            data = payload.get("data")
            if isinstance(data, list) and not data:
                with self._lock:
                    self._exhausted = True
                expects_data = False

        return RawContentUnit(
            source_kind=SourceKind.API,
            payload=payload,
            sequence=page,
            url=response.url,
            status_code=status,
            expects_data=expects_data,
        )


def _retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (HTTP-date form is ignored)."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
