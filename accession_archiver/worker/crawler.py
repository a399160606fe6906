"""
Crawl service clients.

BrowsertrixCrawlClient talks to a Browsertrix instance over HTTP.
InMemoryCrawlClient is a deterministic stand-in for local runs and tests.

Every failure is raised as either TransientExternalError (retry later) or
PermanentExternalError (do not retry); the orchestrator's retry ceiling
depends on that distinction.
"""
from __future__ import annotations

import asyncio
import io
import logging
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

import httpx

from ..config import Settings
from ..errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger(__name__)

SERVICE_NAME = "browsertrix"

# Downloads larger than this spill from memory to a temporary file
ARTIFACT_SPOOL_BYTES = 16 * 1024 * 1024

# lastCrawlState values that end a crawl without a usable archive
FAILED_CRAWL_STATES = frozenset(
    {
        "failed",
        "canceled",
        "stopped_by_user",
        "stopped_quota_reached",
        "stopped_storage_quota_reached",
        "stopped_time_quota_reached",
        "skipped_quota_reached",
        "skipped_storage_quota_reached",
        "skipped_time_quota_reached",
    }
)
COMPLETE_CRAWL_STATE = "complete"


class CrawlState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CrawlJobStatus:
    """The crawl service's view of a capture job."""

    state: CrawlState
    locator: Optional[str] = None  # where the artifact can be fetched (succeeded only)
    reason: Optional[str] = None  # remote failure detail (failed only)
    remote_state: Optional[str] = None

    @classmethod
    def running(cls, remote_state: Optional[str] = None) -> "CrawlJobStatus":
        return cls(CrawlState.RUNNING, remote_state=remote_state)

    @classmethod
    def succeeded(cls, locator: str, remote_state: Optional[str] = None) -> "CrawlJobStatus":
        return cls(CrawlState.SUCCEEDED, locator=locator, remote_state=remote_state)

    @classmethod
    def failed(cls, reason: str, remote_state: Optional[str] = None) -> "CrawlJobStatus":
        return cls(CrawlState.FAILED, reason=reason, remote_state=remote_state)


class CrawlClient(ABC):
    """Abstract base class for crawl service clients."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Client name for logging and identification."""
        pass

    @abstractmethod
    async def submit_job(self, url: str, profile_id: Optional[str] = None) -> str:
        """Start a capture of ``url`` and return the crawl job id."""
        pass

    @abstractmethod
    async def get_status(self, job_id: str) -> CrawlJobStatus:
        """Return the current status of a crawl job."""
        pass

    @abstractmethod
    async def fetch_artifact(self, locator: str) -> BinaryIO:
        """Download the artifact produced by a finished crawl.

        Returns a readable binary file positioned at the start. The caller
        closes it.
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None


def build_crawl_config(url: str, profile_id: Optional[str] = None) -> Dict[str, Any]:
    """Browsertrix crawl config for a single-page capture that runs immediately."""
    return {
        "jobType": "custom",
        "name": "",
        "description": None,
        "scale": 1,
        "profileid": profile_id or "",
        "runNow": True,
        "schedule": "",
        "crawlTimeout": 0,
        "maxCrawlSize": 1000000000,
        "tags": [],
        "autoAddCollections": [],
        "config": {
            "seeds": [{"url": url, "scopeType": "page"}],
            "scopeType": "page",
            "extraHops": 0,
            "useSitemap": False,
            "failOnFailedSeed": False,
            "behaviorTimeout": None,
            "pageLoadTimeout": None,
            "pageExtraDelay": None,
            "postLoadDelay": 120,
            "userAgent": None,
            "limit": None,
            "lang": "en",
            "exclude": [],
            "behaviors": "autoscroll,autoplay,autofetch,siteSpecific",
        },
        "crawlerChannel": "default",
        "proxyId": None,
    }


def _is_transient_status(status_code: int) -> bool:
    return status_code in (408, 425, 429) or status_code >= 500


def _raise_for_status(response: httpx.Response, action: str) -> None:
    """Translate an HTTP error response into the transient/permanent taxonomy."""
    if response.status_code < 400:
        return
    message = f"{action} failed with HTTP {response.status_code}"
    if _is_transient_status(response.status_code):
        raise TransientExternalError(message, service=SERVICE_NAME, status_code=response.status_code)
    raise PermanentExternalError(message, service=SERVICE_NAME, status_code=response.status_code)


def _json(response: httpx.Response, action: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise PermanentExternalError(
            f"{action} returned a non-JSON body: {e}", service=SERVICE_NAME
        ) from e
    if not isinstance(data, dict):
        raise PermanentExternalError(f"{action} returned unexpected JSON", service=SERVICE_NAME)
    return data


class BrowsertrixCrawlClient(CrawlClient):
    """Crawl client for the Browsertrix REST API.

    Authenticates with username/password for a JWT and replays a request
    once with a fresh token when the service answers 401.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        org_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.org_id = org_id
        self.login_url = f"{self.base_url}/auth/jwt/login"
        self.org_url = f"{self.base_url}/orgs/{org_id}"
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._access_token: Optional[str] = None
        self._auth_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "BrowsertrixCrawlClient":
        return cls(
            base_url=settings.browsertrix_base_url,
            username=settings.browsertrix_username,
            password=settings.browsertrix_password,
            org_id=settings.browsertrix_org_id,
            timeout=settings.browsertrix_request_timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "browsertrix"

    async def aclose(self) -> None:
        await self.client.aclose()

    async def authenticate(self) -> str:
        """Log in and return a fresh access token."""
        try:
            response = await self.client.post(
                self.login_url,
                data={"username": self.username, "password": self.password},
            )
        except httpx.HTTPError as e:
            raise TransientExternalError(f"login failed: {e}", service=SERVICE_NAME) from e
        _raise_for_status(response, "login")
        token = _json(response, "login").get("access_token")
        if not token:
            raise PermanentExternalError("login response had no access_token", service=SERVICE_NAME)
        return token

    async def _refresh_token(self, stale_token: Optional[str]) -> str:
        async with self._auth_lock:
            # Another coroutine may have refreshed while we waited
            if self._access_token is None or self._access_token == stale_token:
                logger.info("Authenticating with Browsertrix")
                self._access_token = await self.authenticate()
            return self._access_token

    async def _send(
        self, method: str, url: str, token: str, stream: bool, **kwargs: Any
    ) -> httpx.Response:
        request = self.client.build_request(
            method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
        )
        return await self.client.send(request, stream=stream)

    async def _request(
        self, method: str, url: str, action: str, stream: bool = False, **kwargs: Any
    ) -> httpx.Response:
        """Send an authenticated request.

        With ``stream=True`` the body of a successful response is left
        unread and the caller must close the response.
        """
        token = self._access_token or await self._refresh_token(None)
        try:
            response = await self._send(method, url, token, stream, **kwargs)
            if response.status_code == 401:
                await response.aclose()
                logger.info(f"Got 401 from Browsertrix during {action}, reauthenticating")
                token = await self._refresh_token(token)
                response = await self._send(method, url, token, stream, **kwargs)
            if stream and response.is_error:
                await response.aclose()
        except httpx.HTTPError as e:
            # Transport failures and undecodable bodies alike
            raise TransientExternalError(f"{action} failed: {e}", service=SERVICE_NAME) from e
        _raise_for_status(response, action)
        return response

    async def submit_job(self, url: str, profile_id: Optional[str] = None) -> str:
        response = await self._request(
            "POST",
            f"{self.org_url}/crawlconfigs/",
            "create crawl",
            json=build_crawl_config(url, profile_id),
        )
        data = _json(response, "create crawl")
        job_id = data.get("id")
        if not job_id:
            raise PermanentExternalError("create crawl response had no id", service=SERVICE_NAME)
        logger.info(f"Launched crawl {job_id} for url {url} (run {data.get('run_now_job')})")
        return str(job_id)

    async def get_status(self, job_id: str) -> CrawlJobStatus:
        response = await self._request(
            "GET", f"{self.org_url}/crawlconfigs/{job_id}", "get crawl status"
        )
        data = _json(response, "get crawl status")
        state = data.get("lastCrawlState") or ""

        if state == COMPLETE_CRAWL_STATE:
            locator = data.get("lastCrawlId")
            if not locator:
                return CrawlJobStatus.failed(
                    "crawl completed without a crawl id", remote_state=state
                )
            return CrawlJobStatus.succeeded(str(locator), remote_state=state)
        if state in FAILED_CRAWL_STATES:
            return CrawlJobStatus.failed(f"crawl ended in state {state!r}", remote_state=state)
        return CrawlJobStatus.running(remote_state=state or None)

    async def fetch_artifact(self, locator: str) -> BinaryIO:
        """Stream the crawl's WACZ into a spooled temporary file."""
        response = await self._request(
            "GET",
            f"{self.org_url}/crawls/{locator}/download",
            "download wacz",
            stream=True,
            params={"prefer_single_wacz": "true"},
        )
        body = tempfile.SpooledTemporaryFile(max_size=ARTIFACT_SPOOL_BYTES)
        try:
            async for chunk in response.aiter_bytes():
                body.write(chunk)
        except httpx.HTTPError as e:
            body.close()
            raise TransientExternalError(
                f"download wacz failed: {e}", service=SERVICE_NAME
            ) from e
        finally:
            await response.aclose()
        body.seek(0)
        return body

    async def replay_url(self, locator: str) -> str:
        """URL of the WACZ as published by Browsertrix for replay."""
        response = await self._request(
            "GET", f"{self.org_url}/crawls/{locator}/replay.json", "get wacz url"
        )
        resources = _json(response, "get wacz url").get("resources") or []
        if not resources or not resources[0].get("path"):
            raise PermanentExternalError(
                f"crawl {locator} has no replay resources", service=SERVICE_NAME
            )
        return resources[0]["path"]


@dataclass
class _FakeJob:
    job_id: str
    url: str
    locator: str
    polls_remaining: int
    profile_id: Optional[str] = None
    outcome: str = "succeeded"  # succeeded | failed | hold
    reason: Optional[str] = None


@dataclass
class InMemoryCrawlClient(CrawlClient):
    """In-process crawl service.

    Jobs are numbered ``job-1``, ``job-2``... with locators ``loc-1``,
    ``loc-2``... A job reports running for ``polls_until_complete`` status
    checks and then succeeds, unless told otherwise with ``fail_job`` or
    ``hold_job``. Exceptions queued in the ``*_errors`` lists are raised, in
    order, by the next matching call.
    """

    polls_until_complete: int = 0
    jobs: Dict[str, _FakeJob] = field(default_factory=dict)
    artifacts: Dict[str, bytes] = field(default_factory=dict)
    submit_errors: List[Exception] = field(default_factory=list)
    status_errors: List[Exception] = field(default_factory=list)
    fetch_errors: List[Exception] = field(default_factory=list)
    calls: List[Tuple[str, str]] = field(default_factory=list)
    _counter: int = 0

    @property
    def name(self) -> str:
        return "memory"

    async def submit_job(self, url: str, profile_id: Optional[str] = None) -> str:
        self.calls.append(("submit_job", url))
        await asyncio.sleep(0)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self._counter += 1
        job = _FakeJob(
            job_id=f"job-{self._counter}",
            url=url,
            locator=f"loc-{self._counter}",
            polls_remaining=self.polls_until_complete,
            profile_id=profile_id,
        )
        self.jobs[job.job_id] = job
        self.artifacts.setdefault(job.locator, self._render_artifact(job))
        return job.job_id

    async def get_status(self, job_id: str) -> CrawlJobStatus:
        self.calls.append(("get_status", job_id))
        await asyncio.sleep(0)
        if self.status_errors:
            raise self.status_errors.pop(0)
        job = self.jobs.get(job_id)
        if job is None:
            raise PermanentExternalError(f"unknown crawl job {job_id}", service="memory", status_code=404)
        if job.outcome == "failed":
            return CrawlJobStatus.failed(job.reason or "crawl failed", remote_state="failed")
        if job.outcome == "hold" or job.polls_remaining > 0:
            job.polls_remaining = max(job.polls_remaining - 1, 0)
            return CrawlJobStatus.running(remote_state="running")
        return CrawlJobStatus.succeeded(job.locator, remote_state=COMPLETE_CRAWL_STATE)

    async def fetch_artifact(self, locator: str) -> BinaryIO:
        self.calls.append(("fetch_artifact", locator))
        await asyncio.sleep(0)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if locator not in self.artifacts:
            raise PermanentExternalError(f"no artifact at {locator}", service="memory", status_code=404)
        return io.BytesIO(self.artifacts[locator])

    def fail_job(self, job_id: str, reason: str = "crawl failed") -> None:
        self.jobs[job_id].outcome = "failed"
        self.jobs[job_id].reason = reason

    def hold_job(self, job_id: str) -> None:
        """Keep a job running forever."""
        self.jobs[job_id].outcome = "hold"

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    @staticmethod
    def _render_artifact(job: _FakeJob) -> bytes:
        return f"WACZ capture of {job.url} ({job.job_id})".encode("utf-8")


def create_crawl_client(settings: Settings, backend: str = "browsertrix") -> CrawlClient:
    """Factory function to get a crawl client by backend name.

    Args:
        settings: Application settings
        backend: "browsertrix" or "memory"

    Raises:
        ValueError: If the backend is not supported
    """
    if backend == "browsertrix":
        return BrowsertrixCrawlClient.from_settings(settings)
    elif backend == "memory":
        return InMemoryCrawlClient()
    else:
        raise ValueError(
            f"Unsupported crawl backend: {backend}. "
            f"Supported: browsertrix, memory"
        )
