# Standard library imports and third-party dependencies
# Using asyncio for concurrent probes and aiohttp for non-blocking HTTP requests
import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

import aiohttp
import yaml

log = logging.getLogger("endpoint_monitor")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class ConfigurationError(MonitorError):
    """The endpoint file or the runtime settings cannot be used."""


class DomainResolutionError(MonitorError, ValueError):
    """A target address has no usable hostname."""


class UnregisteredDomainError(MonitorError, KeyError):
    """An outcome was recorded for a domain the ledger never registered."""


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """
    Runtime knobs for the monitor, read from the environment.

    The defaults are the standard checking policy: a pass every 15 seconds,
    5 second request timeout and a 500ms latency ceiling for a healthy probe.
    """
    interval_seconds: float = field(
        default_factory=lambda: _env_number("MONITOR_INTERVAL_SECONDS", 15.0, float)
    )
    request_timeout_seconds: float = field(
        default_factory=lambda: _env_number("MONITOR_REQUEST_TIMEOUT_SECONDS", 5.0, float)
    )
    latency_threshold_ms: float = field(
        default_factory=lambda: _env_number("MONITOR_LATENCY_THRESHOLD_MS", 500.0, float)
    )
    # 0 means one concurrent probe per endpoint
    max_concurrency: int = field(
        default_factory=lambda: _env_number("MONITOR_MAX_CONCURRENCY", 0, int)
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("MONITOR_LOG_LEVEL", "INFO")
    )

    def __post_init__(self):
        if self.interval_seconds < 0:
            raise ConfigurationError("interval_seconds must not be negative")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be positive")
        if self.latency_threshold_ms <= 0:
            raise ConfigurationError("latency_threshold_ms must be positive")
        if self.max_concurrency < 0:
            raise ConfigurationError("max_concurrency must not be negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")


def resolve_domain(url: str) -> str:
    """
    Returns the hostname of a target address, which is the aggregation key.

    Ports and credentials are dropped and the name is lower-cased, so
    https://API.example.com:8443/health -> api.example.com
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError as e:
        raise DomainResolutionError(f"Cannot parse URL {url!r}: {e}") from e
    if not hostname:
        raise DomainResolutionError(f"URL {url!r} has no hostname")
    return hostname


@dataclass(frozen=True)
class EndpointConfig:
    """
    Represents the configuration for a single HTTP endpoint.

    Instances are built once by ConfigurationParser and only read afterwards.
    An empty body means the request is sent without one.
    """
    name: str
    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    def get_domain(self) -> str:
        return resolve_domain(self.url)


class ConfigurationParser:
    """
    Handles the parsing of YAML configuration files into endpoint configs.

    Anything wrong with the file is raised as ConfigurationError; the monitor
    never starts with a partial or empty endpoint list.
    """
    def __init__(self, config_path: str):
        self.config_path = config_path

    def parse_config(self) -> List[EndpointConfig]:
        """
        Parses the YAML configuration file into EndpointConfig objects.

        yaml.safe_load is used so a configuration file cannot construct
        arbitrary Python objects. The file must hold a non-empty list; the
        first invalid record aborts loading with ConfigurationError.
        """
        try:
            with open(self.config_path, "r") as file:
                config_data = yaml.safe_load(file)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read configuration file {self.config_path}: {e}"
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file {self.config_path}: {e}") from e

        if not isinstance(config_data, list):
            raise ConfigurationError("Configuration must be a YAML list of endpoints")
        if not config_data:
            raise ConfigurationError("Configuration does not define any endpoints")

        endpoints = [self._parse_endpoint(index, item) for index, item in enumerate(config_data)]
        log.info("Loaded %d endpoint(s) from %s", len(endpoints), self.config_path)
        return endpoints

    @staticmethod
    def _parse_endpoint(index: int, item) -> EndpointConfig:
        if not isinstance(item, dict):
            raise ConfigurationError(f"Endpoint #{index} must be a mapping")

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError(f"Endpoint #{index} is missing a name")

        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ConfigurationError(f"Endpoint #{index} ({name}) is missing a url")

        method = item.get("method") or "GET"
        if not isinstance(method, str):
            raise ConfigurationError(f"Endpoint #{index} ({name}) has a non-string method")

        headers = item.get("headers") or {}
        if not isinstance(headers, dict):
            raise ConfigurationError(f"Endpoint #{index} ({name}) headers must be a mapping")
        for key, value in headers.items():
            if value is None:
                raise ConfigurationError(f"Endpoint #{index} ({name}) header {key!r} has no value")

        body = item.get("body")
        if body is None:
            body = ""
        elif not isinstance(body, str):
            raise ConfigurationError(f"Endpoint #{index} ({name}) body must be a string")

        return EndpointConfig(
            name=name,
            url=url.strip(),
            method=method.strip().upper() or "GET",
            headers={str(key): str(value) for key, value in headers.items()},
            body=body,
        )


@dataclass(frozen=True)
class ProbeOutcome:
    """
    Result of a single probe.

    domain is None when the target address could not be resolved, latency is
    None when the request never completed. reason explains both cases.
    """
    endpoint_name: str
    domain: Optional[str]
    healthy: bool
    latency: Optional[float] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None

    @property
    def latency_ms(self) -> Optional[float]:
        if self.latency is None:
            return None
        return self.latency * 1000


class Prober:
    """
    Issues one HTTP request per endpoint and classifies the result.

    A probe is healthy only when the response status is 2xx and the response
    headers arrived in strictly less than the latency threshold. Transport
    failures are unhealthy and carry no latency.
    """
    def __init__(self, session: aiohttp.ClientSession,
                 timeout_seconds: float = 5.0,
                 latency_threshold_ms: float = 500.0,
                 clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.latency_threshold = latency_threshold_ms / 1000
        self.clock = clock

    def classify(self, status_code: int, latency: float) -> bool:
        """UP means a 2xx status received in under the latency threshold."""
        return 200 <= status_code < 300 and latency < self.latency_threshold

    async def probe(self, endpoint: EndpointConfig) -> ProbeOutcome:
        """
        Checks a single endpoint and returns exactly one outcome.

        Latency runs from dispatch until the response headers arrive; the
        body is never read. Timeouts, connection failures and requests that
        cannot be built come back as DOWN outcomes instead of raising.
        """
        try:
            domain = endpoint.get_domain()
        except DomainResolutionError as e:
            return ProbeOutcome(endpoint_name=endpoint.name, domain=None,
                                healthy=False, reason=str(e))

        start_time = self.clock()
        try:
            async with self.session.request(
                method=endpoint.method or "GET",
                url=endpoint.url,
                headers=dict(endpoint.headers) or None,
                data=endpoint.body.encode("utf-8") if endpoint.body else None,
                timeout=self.timeout,
            ) as response:
                # The context is entered once the response headers are in
                latency = self.clock() - start_time
                status_code = response.status
        except asyncio.TimeoutError:
            return self._failed(endpoint, domain, f"timed out after {self.timeout.total:g}s")
        except (aiohttp.ClientError, ValueError, OSError) as e:
            return self._failed(endpoint, domain, f"{type(e).__name__}: {e}")

        healthy = self.classify(status_code, latency)
        log.debug("%s (%s) -> %d in %.0fms: %s", endpoint.name, domain, status_code,
                  latency * 1000, "UP" if healthy else "DOWN")
        return ProbeOutcome(endpoint_name=endpoint.name, domain=domain, healthy=healthy,
                            latency=latency, status_code=status_code)

    @staticmethod
    def _failed(endpoint: EndpointConfig, domain: str, reason: str) -> ProbeOutcome:
        log.warning("Error checking endpoint %s: %s", endpoint.name, reason)
        return ProbeOutcome(endpoint_name=endpoint.name, domain=domain,
                            healthy=False, reason=reason)


@dataclass
class DomainCounters:
    up: int = 0
    down: int = 0

    @property
    def total(self) -> int:
        return self.up + self.down

    def availability(self) -> Optional[int]:
        """Whole-number availability percentage, or None before any probe."""
        if self.total == 0:
            return None
        return round(self.up / self.total * 100)


class AvailabilityLedger:
    """
    Cumulative up/down counters per domain for the lifetime of the process.

    Domains are registered up front and never removed. record() and
    snapshot() may be called from concurrent probes and threads.
    """
    def __init__(self, domains: Sequence[str] = ()):
        self._counters: Dict[str, DomainCounters] = {}
        self._lock = threading.Lock()
        for domain in domains:
            self.register(domain)

    @classmethod
    def from_endpoints(cls, endpoints: Sequence[EndpointConfig]) -> "AvailabilityLedger":
        ledger = cls()
        for endpoint in endpoints:
            try:
                ledger.register(endpoint.get_domain())
            except DomainResolutionError as e:
                log.error("Endpoint %s will not be aggregated: %s", endpoint.name, e)
        return ledger

    @property
    def domains(self) -> List[str]:
        with self._lock:
            return list(self._counters)

    def register(self, domain: str) -> None:
        """Adds a domain with zero counters. Registering twice is a no-op."""
        with self._lock:
            self._counters.setdefault(domain, DomainCounters())

    def record(self, domain: str, healthy: bool) -> None:
        """
        Counts one completed probe against a domain.

        Raises UnregisteredDomainError for a domain that was never registered,
        which means the endpoint set and the ledger disagree.
        """
        with self._lock:
            counters = self._counters.get(domain)
            if counters is None:
                raise UnregisteredDomainError(domain)
            if healthy:
                counters.up += 1
            else:
                counters.down += 1

    def counters(self) -> Dict[str, DomainCounters]:
        with self._lock:
            return {domain: DomainCounters(c.up, c.down) for domain, c in self._counters.items()}

    def snapshot(self) -> Dict[str, int]:
        """Availability percentage for every domain with at least one outcome."""
        with self._lock:
            stats = {}
            for domain, counters in self._counters.items():
                availability = counters.availability()
                if availability is not None:
                    stats[domain] = availability
            return stats


def print_availability(snapshot: Mapping[str, int]) -> None:
    for domain, availability in snapshot.items():
        print(f"{domain} has {availability}% availability")


class SchedulerState(Enum):
    POLLING = "polling"
    REPORTING = "reporting"
    IDLE = "idle"
    STOPPED = "stopped"


class Scheduler:
    """
    Drives repeated passes over the endpoint list.

    Each pass probes every endpoint exactly once (concurrently), feeds the
    outcomes into the ledger and then hands a ledger snapshot to the reporter.
    Between passes it idles for interval_seconds. Setting the shutdown event
    aborts the idle wait and cancels probes that are still in flight.
    """
    def __init__(self, endpoints: Sequence[EndpointConfig],
                 ledger: AvailabilityLedger,
                 prober,
                 reporter: Callable[[Dict[str, int]], None] = print_availability,
                 interval_seconds: float = 15.0,
                 max_concurrency: int = 0):
        self.endpoints = tuple(endpoints)
        self.ledger = ledger
        self.prober = prober
        self.reporter = reporter
        self.interval_seconds = interval_seconds
        self.max_concurrency = max_concurrency
        self.passes_completed = 0
        self.state = SchedulerState.IDLE

    async def run_pass(self) -> List[ProbeOutcome]:
        """
        Probes every endpoint once and records the outcomes in the ledger.

        A probe that raises, or is cancelled on its own, is counted as DOWN
        so that one endpoint can never abort the pass. Cancelling the pass
        itself cancels all of its probes and records nothing.
        """
        self.state = SchedulerState.POLLING
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def probe_one(endpoint: EndpointConfig) -> ProbeOutcome:
            if semaphore is None:
                return await self.prober.probe(endpoint)
            async with semaphore:
                return await self.prober.probe(endpoint)

        results = await asyncio.gather(
            *(probe_one(endpoint) for endpoint in self.endpoints),
            return_exceptions=True,
        )

        outcomes = []
        for endpoint, result in zip(self.endpoints, results):
            if isinstance(result, asyncio.CancelledError):
                log.error("Probe for %s was cancelled", endpoint.name)
                result = self._unexpected_failure(endpoint, result)
            elif isinstance(result, Exception):
                log.error("Probe for %s raised unexpectedly", endpoint.name, exc_info=result)
                result = self._unexpected_failure(endpoint, result)
            elif isinstance(result, BaseException):
                raise result
            self._record(result)
            outcomes.append(result)

        self.passes_completed += 1
        healthy = sum(1 for outcome in outcomes if outcome.healthy)
        unresolved = sum(1 for outcome in outcomes if outcome.domain is None)
        log.info("Pass %d finished: %d probe(s), %d up, %d down, %d unresolved",
                 self.passes_completed, len(outcomes), healthy,
                 len(outcomes) - healthy - unresolved, unresolved)
        return outcomes

    def report(self) -> Dict[str, int]:
        """Hands the current snapshot to the reporter and returns it."""
        self.state = SchedulerState.REPORTING
        snapshot = self.ledger.snapshot()
        try:
            self.reporter(snapshot)
        except Exception:
            log.exception("Reporter failed to render availability snapshot")
        return snapshot

    async def run(self, shutdown: Optional[asyncio.Event] = None) -> None:
        """
        Polls and reports forever, or until shutdown is set.

        Only the shutdown event ends the loop. Probe and reporter failures
        are logged and the next pass starts on schedule.
        """
        if shutdown is None:
            shutdown = asyncio.Event()
        log.info("Monitoring %d endpoint(s) across %d domain(s), every %gs",
                 len(self.endpoints), len(self.ledger.domains), self.interval_seconds)

        while not shutdown.is_set():
            if not await self._until_shutdown(self.run_pass(), shutdown):
                log.info("Shutdown requested during pass; in-flight probes cancelled")
                break
            self.report()

            self.state = SchedulerState.IDLE
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        self.state = SchedulerState.STOPPED
        log.info("Scheduler stopped after %d pass(es)", self.passes_completed)

    @staticmethod
    async def _until_shutdown(coro, shutdown: asyncio.Event) -> bool:
        """Runs coro unless shutdown fires first. Returns False if it was cancelled."""
        work = asyncio.ensure_future(coro)
        stop = asyncio.ensure_future(shutdown.wait())
        try:
            done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
        if work not in done:
            await asyncio.gather(work, return_exceptions=True)
            return False
        work.result()
        return True

    def _record(self, outcome: ProbeOutcome) -> None:
        if outcome.domain is None:
            log.error("Resolution error for endpoint %s: %s", outcome.endpoint_name, outcome.reason)
            return
        try:
            self.ledger.record(outcome.domain, outcome.healthy)
        except UnregisteredDomainError:
            log.error("Ledger has no entry for domain %s (endpoint %s); outcome dropped",
                      outcome.domain, outcome.endpoint_name, exc_info=True)

    @staticmethod
    def _unexpected_failure(endpoint: EndpointConfig, error: BaseException) -> ProbeOutcome:
        try:
            domain = endpoint.get_domain()
        except DomainResolutionError as e:
            return ProbeOutcome(endpoint_name=endpoint.name, domain=None,
                                healthy=False, reason=str(e))
        return ProbeOutcome(endpoint_name=endpoint.name, domain=domain, healthy=False,
                            reason=f"{type(error).__name__}: {error}".rstrip(": "))


class MonitoringService:
    """
    Orchestrates the overall monitoring process.

    Loads the endpoints, builds the ledger and runs the scheduler with a
    single HTTP session until stop() is called.
    """
    def __init__(self, config_path: str, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        parser = ConfigurationParser(config_path)
        self.endpoints = parser.parse_config()
        self.ledger = AvailabilityLedger.from_endpoints(self.endpoints)
        # Created in run() so the event belongs to the loop that waits on it
        self.shutdown: Optional[asyncio.Event] = None
        self._stop_requested = False
        self.scheduler: Optional[Scheduler] = None

    def create_session(self) -> aiohttp.ClientSession:
        """
        Opens the HTTP session shared by every probe.

        The connector pool is unbounded, or sized to max_concurrency, so a
        probe never queues for a connection slot after its clock started.
        """
        connector = aiohttp.TCPConnector(limit=self.settings.max_concurrency)
        return aiohttp.ClientSession(connector=connector)

    async def run(self):
        """Runs the scheduler until stop() is called."""
        self.shutdown = asyncio.Event()
        if self._stop_requested:
            self.shutdown.set()
        async with self.create_session() as session:
            prober = Prober(
                session,
                timeout_seconds=self.settings.request_timeout_seconds,
                latency_threshold_ms=self.settings.latency_threshold_ms,
            )
            self.scheduler = Scheduler(
                self.endpoints,
                self.ledger,
                prober,
                interval_seconds=self.settings.interval_seconds,
                max_concurrency=self.settings.max_concurrency,
            )
            await self.scheduler.run(self.shutdown)

    def stop(self):
        """
        Requests a prompt shutdown: the idle wait ends and in-flight probes
        are cancelled. Safe to call before run() has started.
        """
        log.info("Shutdown signal received")
        self._stop_requested = True
        if self.shutdown is not None:
            self.shutdown.set()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="endpoint-monitor",
        description="Probe HTTP endpoints and report per-domain availability.",
    )
    parser.add_argument("config", help="path to the YAML endpoint list")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="overrides MONITOR_LOG_LEVEL",
    )
    return parser.parse_args(argv)


async def _serve(service: MonitoringService):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            log.debug("Signal handlers are not supported on this platform")
    await service.run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Application entry point. Returns the process exit status.
    """
    args = parse_args(argv)
    try:
        settings = Settings()
    except ConfigurationError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        service = MonitoringService(args.config, settings)
    except ConfigurationError as e:
        log.error("%s", e)
        return 1

    try:
        asyncio.run(_serve(service))
    except KeyboardInterrupt:
        log.info("Stopping monitoring service...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
