from __future__ import annotations

import enum
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from .config import RetryPolicy


INBOX_ADD_URL = "https://dynalist.io/api/v1/inbox/add"
CODE_OK = "Ok"
CODE_RATE_LIMITED = "TooManyRequests"

logger = logging.getLogger(__name__)


class DynalistApiError(RuntimeError):
    """Raised when a delivery is abandoned after retries or a terminal error."""

    def __init__(self, message: str, *, code: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.code = code
        self.attempts = attempts


class Decision(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass
class CallStatistics:
    '''Cumulative delivery counters for one migration run'''

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    retries: int = 0
    requests_sent: int = 0
    last_error: str = ""
    last_status: str = ""

    def summary(self) -> str:
        return f"{self.successful_calls} ok, {self.failed_calls} fail, {self.retries} retry"


@dataclass
class DynalistResponse:
    code: str
    message: str = ""
    file_id: Optional[str] = None
    node_id: Optional[str] = None
    index: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: Any) -> "DynalistResponse":
        if not isinstance(data, dict):
            raise ValueError(f"unexpected response body: {data!r}")
        return cls(
            code=str(data.get("_code", "")),
            message=str(data.get("_msg") or ""),
            file_id=data.get("file_id"),
            node_id=data.get("node_id"),
            index=data.get("index"),
            raw=data,
        )

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    @property
    def rate_limited(self) -> bool:
        return self.code == CODE_RATE_LIMITED

    def error_message(self) -> str:
        return f"dynalist API error: {self.message or self.code or 'empty response code'}"


@dataclass
class Attempt:
    '''Outcome of a single POST: either a decoded response or a transport/decode error'''

    response: Optional[DynalistResponse] = None
    error: Optional[str] = None


def classify(attempt: Attempt, retries_so_far: int, policy: RetryPolicy) -> Decision:
    """Decide what the delivery loop does after one attempt.

    Transport and decode failures and rate-limit responses are always
    retryable. Other API errors are only retried inside the first
    ``policy.api_error_retry_window`` retries.
    """

    if attempt.response is None:
        return Decision.RETRY
    if attempt.response.ok:
        return Decision.SUCCESS
    if attempt.response.rate_limited:
        return Decision.RETRY
    if retries_so_far < policy.api_error_retry_window:
        return Decision.RETRY
    return Decision.TERMINAL


def calculate_backoff(retry: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """Exponential backoff in seconds with a 0.5x-1.5x jitter, capped at policy.max_delay."""

    rng = rng or random
    backoff = policy.base_delay * (2 ** retry)
    jitter = 0.5 + rng.random()
    return min(backoff * jitter, policy.max_delay)


class DynalistClient:
    def __init__(
        self
        ,policy: Optional[RetryPolicy] = None
        ,*
        ,stats: Optional[CallStatistics] = None
        ,session: Optional[requests.Session] = None
        ,sleep: Callable[[float], None] = time.sleep
        ,rng: Optional[random.Random] = None
        ,url: str = INBOX_ADD_URL
        ,debug_logger: Optional[logging.Logger] = None
    ) -> None:
        """Initialize a JSON session for the inbox endpoint."""

        self.policy = policy or RetryPolicy()
        self.stats = stats if stats is not None else CallStatistics()
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.url = url
        self.debug_logger = debug_logger

    def pause(self) -> float:
        """Random pause taken before every attempt to avoid bursting the endpoint."""

        delay = self.rng.uniform(self.policy.min_pause, self.policy.max_pause)
        self.sleep(delay)
        return delay

    def _post(self, payload: Dict[str, Any]) -> Attempt:
        self.stats.requests_sent += 1
        try:
            response = self.session.post(self.url, json=payload, timeout=self.policy.timeout)
        except requests.RequestException as exc:
            return Attempt(error=f"failed to send request: {exc}")

        try:
            body = response.json()
            parsed = DynalistResponse.from_json(body)
        except ValueError as exc:
            return Attempt(error=f"failed to decode response (HTTP {response.status_code}): {exc}")

        if self.debug_logger:
            self.debug_logger.info("Dynalist response (HTTP %s): %s", response.status_code, body)
        return Attempt(response=parsed)

    def add_to_inbox(self, token: str, content: str, note: str = "") -> DynalistResponse:
        """Add one item to the Dynalist inbox, retrying transient failures.

        Raises DynalistApiError with the last observed error once retries are
        exhausted or the endpoint keeps rejecting the request.
        """

        if not token:
            raise ValueError("a Dynalist token is required")

        payload: Dict[str, Any] = {"token": token, "content": content}
        if note:
            payload["note"] = note

        self.stats.total_calls += 1
        retries = 0
        last_code: Optional[str] = None

        while True:
            self.pause()
            attempt = self._post(payload)
            decision = classify(attempt, retries, self.policy)

            if decision is Decision.SUCCESS:
                self.stats.successful_calls += 1
                self.stats.last_status = "Success"
                return attempt.response

            if attempt.response is not None:
                last_code = attempt.response.code
                self.stats.last_error = attempt.response.error_message()
            else:
                last_code = None
                self.stats.last_error = attempt.error or "unknown error"

            if decision is Decision.TERMINAL or retries >= self.policy.max_retries:
                break

            retries += 1
            self.stats.retries += 1
            delay = calculate_backoff(retries, self.policy, self.rng)
            logger.warning(
                "Dynalist attempt %d failed (%s); retrying in %.1fs",
                retries, self.stats.last_error, delay,
            )
            self.sleep(delay)

        self.stats.failed_calls += 1
        self.stats.last_status = "Failed"
        raise DynalistApiError(self.stats.last_error, code=last_code, attempts=retries + 1)
