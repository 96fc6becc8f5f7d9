"""Job health monitor with metrics and HTTP endpoints.

This module tracks the outcome of every scheduled job run, flags jobs
that keep failing or have not succeeded for too long, and exposes
Prometheus metrics plus health/readiness/liveness endpoints.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aiohttp import web
from prometheus_client import Counter, Gauge, Histogram, generate_latest

from aptos_nft_sync.jobs import JobResult

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_STALE_FACTOR = 3.0  # No success for 3 intervals = stale
DEFAULT_HTTP_PORT = 8080


class HealthStatus(Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class JobStatus(Enum):
    """Status of an individual job."""

    PENDING = "pending"
    OK = "ok"
    FAILING = "failing"
    STALE = "stale"


@dataclass
class JobHealth:
    """Health status for an individual job."""

    name: str
    interval_seconds: float | None = None
    status: JobStatus = JobStatus.PENDING
    runs: int = 0
    consecutive_failures: int = 0
    last_run_time: float | None = None
    last_success_time: float | None = None
    last_duration_seconds: float = 0.0
    last_processed: int = 0
    last_failed: int = 0
    last_error: str | None = None


@dataclass
class HealthReport:
    """Health report covering every registered job."""

    status: HealthStatus
    jobs: dict[str, JobHealth] = field(default_factory=dict)
    total_runs: int = 0
    uptime_seconds: float = 0.0
    timestamp: float = field(default_factory=time.time)


# Prometheus metrics
JOB_RUNS_TOTAL = Counter(
    "aptos_sync_job_runs_total",
    "Total number of job runs",
    ["job", "outcome"],
)

JOB_DURATION = Histogram(
    "aptos_sync_job_duration_seconds",
    "Job run duration in seconds",
    ["job"],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

COLLECTIONS_PROCESSED = Counter(
    "aptos_sync_collections_processed_total",
    "Collections processed successfully",
    ["job"],
)

COLLECTIONS_FAILED = Counter(
    "aptos_sync_collections_failed_total",
    "Collections that failed and were skipped",
    ["job"],
)

LAST_SUCCESS_TIMESTAMP = Gauge(
    "aptos_sync_last_success_timestamp",
    "Unix timestamp of the last successful run",
    ["job"],
)

JOB_STATUS = Gauge(
    "aptos_sync_job_status",
    "Job status (1=ok, 0.5=stale or pending, 0=failing)",
    ["job"],
)

HEALTH_STATUS = Gauge(
    "aptos_sync_health_status",
    "Overall health status (1=healthy, 0.5=degraded, 0=unhealthy)",
)


class JobHealthMonitor:
    """Record job runs and expose health over HTTP.

    Example:
        ```python
        monitor = JobHealthMonitor()
        monitor.register_job("listings", interval_seconds=600)
        await monitor.start_http_server(port=8080)

        result = await run_listings_sync_job(context)
        monitor.record_run("listings", result)

        report = monitor.get_health_report()
        ```
    """

    def __init__(self, *, stale_factor: float = DEFAULT_STALE_FACTOR) -> None:
        """Initialize the health monitor.

        Args:
            stale_factor: Intervals without a success before a job is stale.
        """
        self._stale_factor = stale_factor
        self._jobs: dict[str, JobHealth] = {}
        self._start_time = time.time()

        # HTTP server
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def register_job(self, name: str, *, interval_seconds: float | None = None) -> None:
        """Register a job for monitoring.

        Args:
            name: Job name.
            interval_seconds: Expected time between runs, enables staleness.
        """
        if name not in self._jobs:
            self._jobs[name] = JobHealth(name=name, interval_seconds=interval_seconds)
            JOB_STATUS.labels(job=name).set(0.5)
            logger.info("Registered job for monitoring: %s", name)
        elif interval_seconds is not None:
            self._jobs[name].interval_seconds = interval_seconds

    def record_run(self, name: str, result: JobResult) -> None:
        """Record the outcome of one job run.

        Args:
            name: Job name.
            result: The run's JobResult.
        """
        self.register_job(name)
        now = time.time()
        job = self._jobs[name]
        job.runs += 1
        job.last_run_time = now
        job.last_duration_seconds = result.duration_seconds
        job.last_processed = result.collections_processed
        job.last_failed = result.collections_failed

        outcome = "success" if result.success else "failure"
        JOB_RUNS_TOTAL.labels(job=name, outcome=outcome).inc()
        JOB_DURATION.labels(job=name).observe(result.duration_seconds)
        COLLECTIONS_PROCESSED.labels(job=name).inc(result.collections_processed)
        COLLECTIONS_FAILED.labels(job=name).inc(result.collections_failed)

        if result.success:
            job.status = JobStatus.OK
            job.consecutive_failures = 0
            job.last_success_time = now
            job.last_error = None
            LAST_SUCCESS_TIMESTAMP.labels(job=name).set(now)
            JOB_STATUS.labels(job=name).set(1.0)
        else:
            job.status = JobStatus.FAILING
            job.consecutive_failures += 1
            job.last_error = result.error
            JOB_STATUS.labels(job=name).set(0.0)
            logger.warning(
                "Job %s failed (%d in a row): %s",
                name,
                job.consecutive_failures,
                result.error,
            )

    def _check_staleness(self) -> None:
        """Mark jobs without a recent success as stale."""
        now = time.time()
        for name, job in self._jobs.items():
            if job.status != JobStatus.OK or job.interval_seconds is None:
                continue
            if job.last_success_time is None:
                continue
            if now - job.last_success_time > job.interval_seconds * self._stale_factor:
                job.status = JobStatus.STALE
                JOB_STATUS.labels(job=name).set(0.5)

    def _determine_overall_status(self) -> HealthStatus:
        """Determine overall health status based on job states."""
        if not self._jobs:
            return HealthStatus.HEALTHY

        statuses = [j.status for j in self._jobs.values()]
        ran = [s for s in statuses if s != JobStatus.PENDING]

        if ran and all(s == JobStatus.FAILING for s in ran):
            return HealthStatus.UNHEALTHY

        if any(s in (JobStatus.FAILING, JobStatus.STALE) for s in statuses):
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY

    def get_health_report(self) -> HealthReport:
        """Generate a health report.

        Returns:
            HealthReport with the current status of all jobs.
        """
        self._check_staleness()
        overall_status = self._determine_overall_status()
        HEALTH_STATUS.set(
            1.0 if overall_status == HealthStatus.HEALTHY
            else 0.5 if overall_status == HealthStatus.DEGRADED
            else 0.0
        )

        jobs_copy = {name: copy.copy(job) for name, job in self._jobs.items()}
        return HealthReport(
            status=overall_status,
            jobs=jobs_copy,
            total_runs=sum(j.runs for j in self._jobs.values()),
            uptime_seconds=time.time() - self._start_time,
        )

    # HTTP Server methods

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        report = self.get_health_report()
        status_code = 200 if report.status == HealthStatus.HEALTHY else 503

        body: dict[str, Any] = {
            "status": report.status.value,
            "uptime_seconds": report.uptime_seconds,
            "total_runs": report.total_runs,
            "jobs": {},
        }
        for name, job in report.jobs.items():
            body["jobs"][name] = {
                "status": job.status.value,
                "runs": job.runs,
                "consecutive_failures": job.consecutive_failures,
                "last_run_time": job.last_run_time,
                "last_success_time": job.last_success_time,
                "last_duration_seconds": round(job.last_duration_seconds, 3),
                "last_processed": job.last_processed,
                "last_failed": job.last_failed,
                "last_error": job.last_error,
            }

        return web.json_response(body, status=status_code)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint (Prometheus format)."""
        self.get_health_report()
        return web.Response(
            body=generate_latest(),
            content_type="text/plain",
            charset="utf-8",
        )

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint for k8s readiness checks."""
        report = self.get_health_report()
        if report.status == HealthStatus.UNHEALTHY:
            return web.json_response({"ready": False, "reason": "unhealthy"}, status=503)
        return web.json_response({"ready": True}, status=200)

    async def _handle_live(self, _request: web.Request) -> web.Response:
        """Handle /live endpoint for k8s liveness checks."""
        return web.json_response({"live": True}, status=200)

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/live", self._handle_live)
        return app

    async def start_http_server(self, port: int = DEFAULT_HTTP_PORT) -> None:
        """Start the HTTP server for health and metrics endpoints.

        Args:
            port: Port to listen on.
        """
        if self._runner:
            logger.warning("HTTP server already running")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()
        logger.info("Health HTTP server started on port %d", port)

    async def stop_http_server(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            logger.info("Health HTTP server stopped")
