import logging
import random
import threading
import time
from typing import Callable, TypeVar

from langchain_google_vertexai import VertexAI

T = TypeVar("T")

logger = logging.getLogger("headstone_backend")


class MaxRetryErrorsException(Exception):
    pass


def _is_throttled(e: Exception) -> bool:
    """429 RESOURCE_EXHAUSTED or a timeout: both mean the service wants us to slow down."""
    msg = str(e)
    if "429" in msg and ("RESOURCE_EXHAUSTED" in msg or "Too Many Requests" in msg):
        return True
    return isinstance(e, TimeoutError) or "timed out" in msg.lower()


class _SharedBackoff:
    """
    Process-wide pause shared by every LlmClient. A throttled call pushes the
    pause out (doubling up to max_seconds); a success halves it again.
    """

    def __init__(self, base_seconds: float = 30.0, max_seconds: float = 600.0):
        self._lock = threading.Lock()
        self._resume_at = 0.0
        self._seconds = base_seconds
        self._max_seconds = max_seconds

    def wait(self) -> None:
        with self._lock:
            remaining = self._resume_at - time.monotonic()
        if remaining > 0:
            time.sleep(remaining)

    def throttled(self) -> float:
        with self._lock:
            delay = random.uniform(self._seconds, self._seconds * 1.3)
            self._seconds = min(self._seconds * 2, self._max_seconds)
            self._resume_at = max(self._resume_at, time.monotonic() + delay)
            return delay

    def succeeded(self) -> None:
        with self._lock:
            self._seconds = max(1.0, self._seconds * 0.5)


_backoff = _SharedBackoff()


def call_with_retries(fn: Callable[[], T], *, retries: int = 3) -> T:
    last_exception: Exception | None = None
    for attempt in range(1, retries + 1):
        _backoff.wait()
        try:
            result = fn()
        except Exception as e:
            last_exception = e
            if _is_throttled(e):
                logger.warning(f"[LLM-RETRY] attempt {attempt}/{retries} throttled, pausing ~{_backoff.throttled():.1f}s: {e}")
            else:
                logger.warning(f"[LLM-RETRY] attempt {attempt}/{retries} failed: {e}")
            continue
        _backoff.succeeded()
        return result

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class LlmClient:
    """
    Completion-style Vertex AI client used for biographies:

        text = llm.invoke("some prompt")
    """

    def __init__(self, model_name: str, *, vertex_project: str, vertex_region: str, retries: int = 3):
        self.model_name = model_name
        self.retries = retries
        self._vertex = VertexAI(project=vertex_project, location=vertex_region, model_name=model_name)

    def _invoke_once(self, prompt: str) -> str:
        resp = self._vertex.invoke(prompt)
        # VertexAI returns a str; chat-style models return a message with .content
        return str(getattr(resp, "content", resp)).strip()

    def invoke(self, prompt: str) -> str:
        return call_with_retries(lambda: self._invoke_once(prompt), retries=self.retries)
