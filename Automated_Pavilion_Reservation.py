from selenium import webdriver
from selenium.webdriver.support.ui import WebDriverWait
from selenium.webdriver.support import expected_conditions as EC
from selenium.common.exceptions import TimeoutException, WebDriverException

import schedule
import asyncio
import aiohttp
import contextlib
import dataclasses
import logging
import random
import time
import json
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Dict, Optional, Tuple, Union
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import sys

from reservation_window import (
    ScanResult,
    SnapshotFormatError,
    TimeWindow,
    current_minutes,
    scan,
    today_in,
)


DEFAULT_BASE_URL = "https://ticket.expo2025.or.jp"
UNKNOWN_EVENT_NAME = "Unknown Event"
OUT_OF_STOCK_ERROR = "schedule_out_of_stock"


class ReservationError(Exception):
    """Base class for errors raised while talking to the ticket service"""


class ConfigError(ReservationError, ValueError):
    """Raised when the reservation configuration is missing or invalid"""


class TransportError(ReservationError):
    """Request could not be completed"""


class ParseError(ReservationError):
    """Response body was not valid for the expected schema"""


def _valid_run_time(run_time: Any) -> bool:
    if not isinstance(run_time, str) or len(run_time) not in (5, 8):
        return False
    try:
        datetime.strptime(run_time, "%H:%M:%S" if len(run_time) == 8 else "%H:%M")
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class ReservationConfig:
    """Immutable configuration shared by every reservation component"""
    ticket_ids: Tuple[str, ...]
    event_codes: Tuple[str, ...]
    entrance_date: Optional[str] = None  # YYYYMMDD, defaults to today in `timezone`
    channel: str = "5"
    reservation_window_hours: float = 2
    retry_delay_seconds: float = 5
    retry_jitter_seconds: float = 0.0
    timezone: str = "Asia/Tokyo"
    base_url: str = DEFAULT_BASE_URL
    request_timeout_seconds: float = 10
    session_refresh_minutes: float = 15
    cookies: Dict[str, str] = field(default_factory=dict)
    # Browser session settings
    use_browser: bool = False
    login_wait_seconds: float = 300
    login_url_fragment: str = "/myticket"
    # Daily start for --schedule, local machine time
    run_time: str = "08:59:50"
    log_file: Optional[str] = "pavilion_reservation.log"

    def __post_init__(self):
        if isinstance(self.ticket_ids, str) or isinstance(self.event_codes, str):
            raise ConfigError("ticket_ids and event_codes must be lists")
        object.__setattr__(self, 'ticket_ids', tuple(str(t) for t in self.ticket_ids))
        object.__setattr__(self, 'event_codes', tuple(str(c) for c in self.event_codes))
        object.__setattr__(self, 'channel', str(self.channel))
        object.__setattr__(self, 'cookies', dict(self.cookies or {}))

        if not self.ticket_ids or not all(self.ticket_ids):
            raise ConfigError("ticket_ids must be a non-empty list of ticket ids")
        if not self.event_codes or not all(self.event_codes):
            raise ConfigError("event_codes must be a non-empty list of event codes")

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone {self.timezone!r}") from e

        if self.entrance_date is None:
            object.__setattr__(self, 'entrance_date', today_in(self.timezone))
        try:
            datetime.strptime(str(self.entrance_date), "%Y%m%d")
        except ValueError as e:
            raise ConfigError(f"entrance_date must be YYYYMMDD, got {self.entrance_date!r}") from e
        object.__setattr__(self, 'entrance_date', str(self.entrance_date))

        for name in ('reservation_window_hours', 'retry_delay_seconds',
                     'request_timeout_seconds', 'session_refresh_minutes'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.retry_jitter_seconds < 0:
            raise ConfigError(f"retry_jitter_seconds must not be negative, got {self.retry_jitter_seconds}")

        # Same formats schedule accepts for daily jobs
        if not _valid_run_time(self.run_time):
            raise ConfigError(f"run_time must be HH:MM or HH:MM:SS, got {self.run_time!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReservationConfig":
        """Build a config from a parsed JSON object, ignoring unknown keys"""
        known = {f.name for f in dataclasses.fields(cls)}
        try:
            return cls(**{k: v for k, v in data.items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def targets(self) -> List["ReservationTarget"]:
        return [
            ReservationTarget(
                event_code=event_code,
                entrance_date=self.entrance_date,
                ticket_ids=self.ticket_ids,
                channel=self.channel,
            )
            for event_code in self.event_codes
        ]


def load_config(config_file: str = "config.json") -> ReservationConfig:
    """Load the reservation configuration from a JSON file"""
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file {config_file} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {config_file}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"{config_file} must contain a JSON object")
    return ReservationConfig.from_dict(config_data)


@dataclass(frozen=True)
class ReservationTarget:
    """One reservation goal: an event on the entrance date"""
    event_code: str
    entrance_date: str
    ticket_ids: Tuple[str, ...]
    channel: str

    def availability_params(self) -> List[Tuple[str, str]]:
        return [
            ("ticket_ids[]", self.ticket_ids[0]),
            ("entrance_date", self.entrance_date),
            ("channel", self.channel),
        ]

    def reservation_payload(self, start_time: str) -> Dict[str, Any]:
        return {
            "ticket_ids": list(self.ticket_ids),
            "entrance_date": self.entrance_date,
            "start_time": start_time,
            "event_code": self.event_code,
            "registered_channel": self.channel,
        }


class OutcomeKind(Enum):
    SUCCESS = "success"
    OUT_OF_STOCK = "out_of_stock"
    OTHER_FAILURE = "other_failure"
    TRANSPORT_ERROR = "transport_error"
    PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of a single booking attempt"""
    kind: OutcomeKind
    detail: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass
class EventAvailability:
    """Parsed body of the event availability endpoint"""
    event_name: Optional[str]
    schedules: Any


def _decode_body(body: Union[bytes, str]) -> str:
    if isinstance(body, bytes):
        return body.decode('utf-8')
    return body


def parse_availability_response(status: int, body: Union[bytes, str]) -> EventAvailability:
    """Turn a raw availability response into an EventAvailability"""
    if status != 200:
        raise TransportError(f"HTTP {status}: {body[:200]!r}")
    try:
        data = json.loads(_decode_body(body))
    except UnicodeDecodeError as e:
        raise ParseError(f"Event response is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in event response: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")

    return EventAvailability(
        event_name=data.get('event_name') or None,
        schedules=data.get('event_schedules'),
    )


def interpret_reservation_response(status: int, body: Union[bytes, str]) -> AttemptOutcome:
    """Classify a raw reservation response into an AttemptOutcome"""
    try:
        result = json.loads(_decode_body(body))
    except UnicodeDecodeError as e:
        return AttemptOutcome(OutcomeKind.PARSE_ERROR, f"HTTP {status}: body is not valid UTF-8 ({e})")
    except json.JSONDecodeError as e:
        return AttemptOutcome(OutcomeKind.PARSE_ERROR, f"HTTP {status}: {e}")
    if not isinstance(result, dict):
        return AttemptOutcome(OutcomeKind.PARSE_ERROR, f"HTTP {status}: unexpected body {body[:200]!r}")

    if not result:
        return AttemptOutcome(OutcomeKind.SUCCESS)

    error = result.get('error')
    if isinstance(error, dict) and error.get('name') == OUT_OF_STOCK_ERROR:
        return AttemptOutcome(OutcomeKind.OUT_OF_STOCK, OUT_OF_STOCK_ERROR)
    return AttemptOutcome(OutcomeKind.OTHER_FAILURE, json.dumps(result, ensure_ascii=False))


class ReservationLogger:
    """Logging with millisecond precision and reservation-specific helpers"""

    def __init__(self, log_level=logging.INFO, log_file: Optional[str] = 'pavilion_reservation.log'):
        self.logger = logging.getLogger('PavilionReservation')
        self.logger.setLevel(log_level)

        # Handlers are shared by every instance
        if self.logger.handlers:
            return

        # Create formatter with millisecond precision
        formatter = logging.Formatter(
            '%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def log_scan(self, event_code: str, event_name: str, result: ScanResult, window_hours: float):
        """Log the outcome of a scan, including out-of-window candidates"""
        if result.malformed:
            self.logger.warning(
                f"Skipped malformed timeslots for {event_name} ({event_code}): {result.malformed}"
            )

        if result.out_of_window:
            self.logger.info(
                f"Available timeslots for {event_name} ({event_code}) outside "
                f"{window_hours:g}-hour window: {result.out_of_window}"
            )

        if result.earliest:
            self.logger.info(
                f"Found available timeslot for {event_name} ({event_code}) "
                f"within {window_hours:g} hours: {result.earliest}"
            )
        else:
            self.logger.info(
                f"No available timeslots found for {event_name} ({event_code}) within {window_hours:g} hours"
            )

    def log_outcome(self, event_code: str, event_name: str, start_time: str, outcome: AttemptOutcome):
        """Log a booking attempt outcome"""
        label = f"{event_name} ({event_code})"
        if outcome.kind is OutcomeKind.SUCCESS:
            self.logger.info(f"Reservation successful for {label} at timeslot {start_time}")
        elif outcome.kind is OutcomeKind.OUT_OF_STOCK:
            self.logger.info(f"Out of stock for {label} at timeslot {start_time}")
        elif outcome.kind is OutcomeKind.OTHER_FAILURE:
            self.logger.warning(
                f"Reservation failed for {label} at timeslot {start_time} with error: {outcome.detail}"
            )
        elif outcome.kind is OutcomeKind.PARSE_ERROR:
            self.logger.error(f"Error parsing reservation response for {label}: {outcome.detail}")
        else:
            self.logger.error(f"Reservation request failed for {label}: {outcome.detail}")

    def log_retry(self, event_code: str, event_name: str, retry_delay: float, retry_number: int):
        """Log a scheduled rescan; retries are unbounded, so the count is included"""
        self.logger.info(
            f"Retrying {event_name} ({event_code}) in {retry_delay:g} seconds... (retry #{retry_number})"
        )


class ExpoTicketClient:
    """aiohttp client for the event availability and reservation endpoints"""

    def __init__(self, config: ReservationConfig):
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def open(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                cookies=self.config.cookies,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            )

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("ExpoTicketClient is not open")
        return self._session

    def update_cookies(self, cookies: Dict[str, str]):
        self.session.cookie_jar.update_cookies(cookies)

    def event_url(self, event_code: str) -> str:
        return f"{self.config.base_url}/api/d/events/{event_code}"

    @property
    def reservation_url(self) -> str:
        return f"{self.config.base_url}/api/d/user_event_reservations"

    async def fetch_event(self, target: ReservationTarget) -> EventAvailability:
        """Fetch the current availability snapshot for an event"""
        try:
            async with self.session.get(
                self.event_url(target.event_code),
                params=target.availability_params(),
            ) as response:
                body = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

        return parse_availability_response(status, body)

    async def reserve(self, target: ReservationTarget, start_time: str) -> AttemptOutcome:
        """Submit a reservation for one timeslot"""
        try:
            async with self.session.post(
                self.reservation_url,
                json=target.reservation_payload(start_time),
            ) as response:
                body = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return AttemptOutcome(OutcomeKind.TRANSPORT_ERROR, str(e) or type(e).__name__)

        return interpret_reservation_response(status, body)

    async def ping(self) -> int:
        """Touch the site root so the server-side session stays active"""
        try:
            async with self.session.get(self.config.base_url) as response:
                await response.read()
                return response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(str(e) or type(e).__name__) from e


class RetryScheduler:
    """Runs an action once after the fixed retry delay"""

    def __init__(self, delay_seconds: float, jitter_seconds: float = 0.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.delay_seconds = delay_seconds
        self.jitter_seconds = jitter_seconds
        self._sleep = sleep
        self.retries = 0

    def next_delay(self) -> float:
        if self.jitter_seconds > 0:
            return self.delay_seconds + random.uniform(0, self.jitter_seconds)
        return self.delay_seconds

    async def after(self, action: Callable[[], Union[Any, Awaitable[Any]]],
                    delay_seconds: Optional[float] = None) -> Any:
        """Wait at least the retry delay, then run `action` once and return its result"""
        delay = self.next_delay() if delay_seconds is None else delay_seconds
        self.retries += 1
        await self._sleep(delay)

        result = action()
        if asyncio.iscoroutine(result):
            result = await result
        return result


class ReservationState(Enum):
    SCANNING = "scanning"
    ATTEMPTING = "attempting"
    SETTLED = "settled"


class ReservationController:
    """
    Drives one event through scan and attempt cycles until a booking succeeds.

    Each call to step() performs exactly one transition, so a scan and an
    attempt for the same event never overlap. Every failure is logged and
    followed by a delayed rescan; there is no retry limit.
    """

    def __init__(self, target: ReservationTarget, config: ReservationConfig,
                 client: ExpoTicketClient, logger: ReservationLogger,
                 retry: Optional[RetryScheduler] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.target = target
        self.config = config
        self.client = client
        self.logger = logger
        self.retry = retry or RetryScheduler(config.retry_delay_seconds, config.retry_jitter_seconds)
        self._clock = clock

        self.state = ReservationState.SCANNING
        self.event_name = UNKNOWN_EVENT_NAME
        self.chosen_slot: Optional[str] = None
        self.last_scan: Optional[ScanResult] = None
        self.last_outcome: Optional[AttemptOutcome] = None
        self.attempts = 0

    @property
    def label(self) -> str:
        return f"{self.event_name} ({self.target.event_code})"

    def current_window(self) -> TimeWindow:
        now = self._clock() if self._clock else None
        now_minutes = current_minutes(self.config.timezone, self.target.entrance_date, now)
        return TimeWindow.from_now(now_minutes, self.config.reservation_window_hours)

    async def resolve_event_name(self) -> str:
        """Look up the event name for log lines; falls back to a placeholder"""
        try:
            availability = await self.client.fetch_event(self.target)
        except ReservationError as e:
            self.logger.logger.error(f"Error fetching event name for {self.target.event_code}: {e}")
            self.event_name = UNKNOWN_EVENT_NAME
        else:
            self.event_name = availability.event_name or UNKNOWN_EVENT_NAME

        self.logger.logger.info(f"Processing event: {self.label}")
        return self.event_name

    async def run(self) -> AttemptOutcome:
        """Scan and attempt until the reservation is settled"""
        await self.resolve_event_name()
        while self.state is not ReservationState.SETTLED:
            await self.step()
        return self.last_outcome

    async def step(self) -> ReservationState:
        if self.state is ReservationState.SCANNING:
            await self._scan_step()
        elif self.state is ReservationState.ATTEMPTING:
            await self._attempt_step()
        return self.state

    def _rescan(self):
        self.chosen_slot = None
        self.state = ReservationState.SCANNING

    async def _retry_later(self):
        delay = self.retry.next_delay()
        self.logger.log_retry(self.target.event_code, self.event_name, delay, self.retry.retries + 1)
        await self.retry.after(self._rescan, delay_seconds=delay)

    async def _scan_step(self):
        try:
            availability = await self.client.fetch_event(self.target)
            result = scan(availability.schedules, self.current_window())
        except TransportError as e:
            self.logger.logger.error(f"Failed to fetch event data for {self.label}: {e}")
            await self._retry_later()
            return
        except (ParseError, SnapshotFormatError) as e:
            self.logger.logger.error(f"Error parsing event API response for {self.label}: {e}")
            await self._retry_later()
            return

        if availability.event_name:
            self.event_name = availability.event_name
        self.last_scan = result
        self.logger.log_scan(
            self.target.event_code, self.event_name, result, self.config.reservation_window_hours,
        )

        if result.earliest is None:
            await self._retry_later()
            return

        self.chosen_slot = result.earliest
        self.state = ReservationState.ATTEMPTING

    async def _attempt_step(self):
        start_time = self.chosen_slot
        self.attempts += 1
        try:
            outcome = await self.client.reserve(self.target, start_time)
        except ReservationError as e:
            outcome = AttemptOutcome(OutcomeKind.TRANSPORT_ERROR, str(e))

        self.last_outcome = outcome
        self.logger.log_outcome(self.target.event_code, self.event_name, start_time, outcome)

        if outcome.success:
            self.state = ReservationState.SETTLED
            return

        await self._retry_later()


class BrowserSession:
    """Chrome window the user signs into; supplies cookies and keeps the session alive"""

    def __init__(self, config: ReservationConfig, logger: ReservationLogger):
        self.config = config
        self.logger = logger
        self.driver = None

    def open(self) -> Dict[str, str]:
        """Launch Chrome and wait for the user to finish signing in"""
        options = webdriver.ChromeOptions()
        options.add_argument("--disable-extensions")
        options.add_argument("--disable-dev-shm-usage")

        self.driver = webdriver.Chrome(options=options)

        try:
            self.driver.get(self.config.base_url)
            self.logger.logger.info(
                f"Sign in to {self.config.base_url} in the browser window "
                f"(waiting up to {self.config.login_wait_seconds:g} seconds)..."
            )
            WebDriverWait(self.driver, self.config.login_wait_seconds).until(
                EC.url_contains(self.config.login_url_fragment)
            )
            self.logger.logger.info("Browser session ready")
            return self.cookies()

        except (TimeoutException, WebDriverException) as e:
            self.logger.logger.error(f"Failed to initialize browser session: {e}")
            self.cleanup()
            raise

    def cookies(self) -> Dict[str, str]:
        return {cookie['name']: cookie['value'] for cookie in self.driver.get_cookies()}

    def refresh(self) -> Dict[str, str]:
        """Reload the page and return the refreshed cookies"""
        self.driver.refresh()
        return self.cookies()

    def cleanup(self):
        """Clean up resources"""
        if self.driver:
            self.driver.quit()
            self.driver = None


class SessionKeepAlive:
    """Periodic session refresh, independent of every reservation state machine"""

    def __init__(self, client: ExpoTicketClient, interval_seconds: float, logger: ReservationLogger,
                 browser: Optional[BrowserSession] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.client = client
        self.interval_seconds = interval_seconds
        self.logger = logger
        self.browser = browser
        self._sleep = sleep
        self.last_refresh = time.time()
        self.refresh_count = 0

    def is_live(self, max_age_seconds: Optional[float] = None) -> bool:
        """True while the last successful refresh is recent enough"""
        max_age = max_age_seconds if max_age_seconds is not None else self.interval_seconds * 2
        return time.time() - self.last_refresh <= max_age

    async def refresh_once(self):
        self.logger.logger.info("Refreshing session to keep it alive")
        if self.browser is not None:
            cookies = await asyncio.to_thread(self.browser.refresh)
            self.client.update_cookies(cookies)
        else:
            await self.client.ping()
        self.last_refresh = time.time()
        self.refresh_count += 1

    async def run(self):
        while True:
            await self._sleep(self.interval_seconds)
            try:
                await self.refresh_once()
            except (ReservationError, WebDriverException) as e:
                self.logger.logger.warning(f"Session refresh failed: {e}")
            except Exception as e:
                # e.g. urllib3 errors once chromedriver has gone away
                self.logger.logger.exception(f"Unexpected session refresh failure: {e!r}")


async def run_reservations(config_file: str = "config.json",
                           config: Optional[ReservationConfig] = None) -> Dict[str, AttemptOutcome]:
    """Main function: reserve every configured event until each one succeeds"""
    config = config or load_config(config_file)
    logger = ReservationLogger(log_file=config.log_file)

    logger.logger.info(f"Starting event reservation process for entrance_date: {config.entrance_date}")

    browser = None
    if config.use_browser:
        browser = BrowserSession(config, logger)
        cookies = await asyncio.to_thread(browser.open)

    try:
        async with ExpoTicketClient(config) as client:
            if browser is not None:
                client.update_cookies(cookies)

            keep_alive = SessionKeepAlive(client, config.session_refresh_minutes * 60, logger, browser)
            keep_alive_task = asyncio.create_task(keep_alive.run())

            controllers = [ReservationController(target, config, client, logger) for target in config.targets()]
            try:
                results = await asyncio.gather(*(c.run() for c in controllers), return_exceptions=True)
            finally:
                keep_alive_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keep_alive_task

        outcomes = {}
        for controller, result in zip(controllers, results):
            if isinstance(result, Exception):
                logger.logger.error(f"Reservation loop for {controller.label} stopped: {result!r}")
                continue
            outcomes[controller.target.event_code] = result

        logger.logger.info(f"Reserved {len(outcomes)}/{len(controllers)} event(s)")
        return outcomes

    finally:
        if browser is not None:
            browser.cleanup()


def reserve_pavilions_automated(config_file: str = "config.json"):
    """Synchronous wrapper used by the daily scheduler"""
    try:
        return asyncio.run(run_reservations(config_file))
    except Exception as e:
        print(f"Reservation run failed: {e}")
        return None


def schedule_reservations(config_file: str = "config.json") -> schedule.Job:
    """Schedule the reservation run to start daily at the configured run_time"""
    config = load_config(config_file)

    job = schedule.every().day.at(config.run_time).do(reserve_pavilions_automated, config_file)

    print("Pavilion reservation scheduled")
    print(f"Run time: {config.run_time} daily")
    return job


# Main execution
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Automated Expo pavilion / event reservation")
    parser.add_argument("--schedule", action="store_true", help="Start the reservation run daily at run_time")
    parser.add_argument("--config", type=str, default="config.json", help="Path to custom configuration file")

    args = parser.parse_args()

    try:
        if args.schedule:
            schedule_reservations(args.config)

            print("Scheduler started. Press Ctrl+C to exit.")
            while True:
                schedule.run_pending()
                time.sleep(1)
        else:
            asyncio.run(run_reservations(args.config))
    except ConfigError as e:
        parser.exit(1, f"Configuration error: {e}\n")
    except KeyboardInterrupt:
        print("\nStopped.")
