"""
HTTP retrieval of calendar feeds.
"""

import base64
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

import requests

from ics_calendar_sync.models import AuthenticationRequiredError
from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import FetchError
from ics_calendar_sync.models import FeedNotFoundError
from ics_calendar_sync.models import InvalidResponseError
from ics_calendar_sync.models import ParseError
from ics_calendar_sync.parser import ICSParser
from ics_calendar_sync.parser import ParseDiagnostic

logger = logging.getLogger(__name__)

ACCEPT = "text/calendar, text/plain;q=0.9, */*;q=0.8"
USER_AGENT = "ics-calendar-sync/1.0"


def bearer_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def basic_auth_headers(username: str, password: str) -> dict[str, str]:
    encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {encoded}"}


def headers_from_environment(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Authorization header from ICS_AUTH_TOKEN or ICS_USERNAME/ICS_PASSWORD.

    Basic credentials win when both are set.
    """
    env = os.environ if environ is None else environ
    headers: dict[str, str] = {}
    if env.get("ICS_AUTH_TOKEN"):
        headers.update(bearer_headers(env["ICS_AUTH_TOKEN"]))
    if env.get("ICS_USERNAME") and env.get("ICS_PASSWORD"):
        headers.update(basic_auth_headers(env["ICS_USERNAME"], env["ICS_PASSWORD"]))
    return headers


def normalize_feed_url(url: str) -> str:
    """webcal:// feeds are fetched over HTTPS."""
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://") :]
    return url


def decode_body(content: bytes) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("ICS content was not UTF-8, decoded as Latin-1")
        return content.decode("latin-1")


@dataclass
class ValidationResult:
    is_valid: bool
    event_count: int = 0
    sample_events: list[CalendarEvent] = field(default_factory=list)
    earliest: datetime | None = None
    latest: datetime | None = None
    diagnostics: list[ParseDiagnostic] = field(default_factory=list)
    error: str | None = None


class FeedFetcher:
    """GETs a feed with retries and exponential backoff.

    Every failure is retried; the last error is raised once ``max_retries``
    attempts have been made.
    """

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        headers: dict[str, str] | None = None,
        verify_ssl: bool = True,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.headers = dict(headers or {})
        self.verify_ssl = verify_ssl
        self.session = session or requests.Session()
        self._sleep = sleep

    def _request_headers(self) -> dict[str, str]:
        headers = {key: os.path.expandvars(value) for key, value in self.headers.items()}
        headers["Accept"] = ACCEPT
        headers["User-Agent"] = USER_AGENT
        return headers

    def _fetch_once(self, url: str) -> str:
        try:
            response = self.session.get(
                url,
                headers=self._request_headers(),
                timeout=self.timeout,
                verify=self.verify_ssl,
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise FetchError(f"Timed out after {self.timeout}s fetching {url}") from e
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationRequiredError(url)
        if status == 404:
            raise FeedNotFoundError(url)
        if not 200 <= status < 300:
            raise InvalidResponseError(status)
        return decode_body(response.content)

    def fetch(self, url: str) -> str:
        url = normalize_feed_url(url)
        delay = self.retry_delay
        last_error: FetchError | None = None
        for attempt in range(1, self.max_retries + 1):
            logger.debug(f"Fetching ICS from {url} (attempt {attempt}/{self.max_retries})")
            try:
                content = self._fetch_once(url)
            except FetchError as e:
                last_error = e
                logger.warning(f"Fetch attempt {attempt} failed: {e}")
                if attempt < self.max_retries:
                    self._sleep(delay)
                    delay *= 2
                continue
            logger.debug(f"Fetched {len(content)} characters from {url}")
            return content
        raise last_error

    def validate(self, url: str, parser: ICSParser | None = None) -> ValidationResult:
        """Fetch and parse ``url`` without touching any calendar.

        Fetch failures propagate; a body that is not a calendar yields an
        invalid result.
        """
        content = self.fetch(url)
        parser = parser or ICSParser()
        try:
            events = parser.parse(content)
        except ParseError as e:
            return ValidationResult(is_valid=False, error=str(e))

        return ValidationResult(
            is_valid=True,
            event_count=len(events),
            sample_events=events[:5],
            earliest=min((e.start for e in events), default=None),
            latest=max((e.end for e in events), default=None),
            diagnostics=list(parser.diagnostics),
        )
