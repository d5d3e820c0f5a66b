"""
Shared HTTP sessions for the stock-footage, TTS and music providers

One pooled session per thread: job threads and request threads never share
a connection pool.
"""

import threading

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backend.config import get_settings

USER_AGENT = "story-shorts/1.0"
RETRY_STATUSES = (429, 500, 502, 503, 504)

_thread_local = threading.local()


class TimeoutSession(requests.Session):
    """Session that applies a default timeout when a call gives none"""

    def __init__(self, timeout: float):
        super().__init__()
        self.default_timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault('timeout', self.default_timeout)
        return super().request(method, url, **kwargs)


def build_session(timeout: float, pool_size: int = 10) -> TimeoutSession:
    # Provider rate limits send Retry-After; honour it before retrying
    retry_strategy = Retry(
        total=3,
        connect=2,
        read=2,
        backoff_factor=0.5,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=["GET", "POST"],
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=pool_size,
                          pool_maxsize=pool_size)

    session = TimeoutSession(timeout)
    session.headers['User-Agent'] = USER_AGENT
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def get_http_session() -> requests.Session:
    """Thread-local pooled session, timeout taken from HTTP_TIMEOUT"""
    session = getattr(_thread_local, "session", None)
    if session is None:
        settings = get_settings()
        session = build_session(settings.http_timeout, pool_size=max(4, settings.job_workers * 2))
        _thread_local.session = session
    return session


def reset_http_session():
    """Drop this thread's session (settings changed, or after a fork)"""
    session = getattr(_thread_local, "session", None)
    if session is not None:
        session.close()
        _thread_local.session = None
