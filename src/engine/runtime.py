# src/engine/runtime.py
"""
Ephemeral per-job runtime state: live progress and cancellation tokens.

Entries exist only while a job is running. Readers get 0 / not-cancelled for
ids that have no entry, since a status poll may land before the runner
starts or after it cleaned up.
"""
import json
import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from engine.models import utcnow


def _clamp(value) -> int:
    return max(0, min(100, int(value)))


class CancellationToken:
    def __init__(self, job_id: str, created_at=None):
        self.job_id = job_id
        self.created_at = created_at or utcnow()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True


class JobRuntimeRegistry(ABC):
    @abstractmethod
    def register(self, job_id: str) -> CancellationToken:
        pass

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Set the token for job_id. Returns False when no token is registered."""

    @abstractmethod
    def is_cancelled(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def get_progress(self, job_id: str) -> int:
        pass

    @abstractmethod
    def set_progress(self, job_id: str, value: int) -> int:
        pass

    @abstractmethod
    def clear(self, job_id: str):
        pass

    @abstractmethod
    def active_ids(self) -> List[str]:
        pass


class InMemoryJobRuntimeRegistry(JobRuntimeRegistry):
    def __init__(self):
        self.progress: Dict[str, int] = {}
        self.tokens: Dict[str, CancellationToken] = {}
        self.lock = threading.Lock()

    def register(self, job_id):
        token = CancellationToken(job_id)
        with self.lock:
            self.tokens[job_id] = token
            self.progress[job_id] = 0
        return token

    def cancel(self, job_id):
        with self.lock:
            token = self.tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_cancelled(self, job_id):
        with self.lock:
            token = self.tokens.get(job_id)
        return token.cancelled if token else False

    def get_progress(self, job_id):
        with self.lock:
            return self.progress.get(job_id, 0)

    def set_progress(self, job_id, value):
        value = _clamp(value)
        with self.lock:
            # never move backwards
            current = self.progress.get(job_id, 0)
            self.progress[job_id] = max(current, value)
            return self.progress[job_id]

    def clear(self, job_id):
        with self.lock:
            self.progress.pop(job_id, None)
            self.tokens.pop(job_id, None)

    def active_ids(self):
        with self.lock:
            return sorted(set(self.tokens) | set(self.progress))


class RedisCancellationToken(CancellationToken):
    """Token whose flag lives in redis so any instance can cancel the job."""

    def __init__(self, registry: "RedisJobRuntimeRegistry", job_id: str, created_at=None):
        super().__init__(job_id, created_at)
        self.registry = registry

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.registry.is_cancelled(self.job_id)

    def cancel(self):
        self._cancelled = True
        self.registry.cancel(self.job_id)


class RedisJobRuntimeRegistry(JobRuntimeRegistry):
    def __init__(self, client=None, url: str = None, prefix: str = "ctem:", ttl_seconds: int = 86400):
        if client is None:
            import redis  # lazy import
            if not url:
                raise RuntimeError("REDIS_URL is required for the redis runtime backend")
            client = redis.from_url(url, decode_responses=True)
        self.client = client
        self.prefix = prefix
        # keys expire ttl_seconds after the last write for the job
        self.ttl_seconds = ttl_seconds

    def _progress_key(self, job_id):
        return f"{self.prefix}progress:{job_id}"

    def _token_key(self, job_id):
        return f"{self.prefix}cancel:{job_id}"

    def register(self, job_id):
        token = RedisCancellationToken(self, job_id)
        self.client.set(self._token_key(job_id), json.dumps({
            "cancelled": False,
            "created_at": token.created_at.isoformat(),
        }), ex=self.ttl_seconds)
        self.client.set(self._progress_key(job_id), 0, ex=self.ttl_seconds)
        return token

    def cancel(self, job_id):
        raw = self.client.get(self._token_key(job_id))
        if not raw:
            return False
        data = json.loads(raw)
        data["cancelled"] = True
        self.client.set(self._token_key(job_id), json.dumps(data), ex=self.ttl_seconds)
        self.client.expire(self._progress_key(job_id), self.ttl_seconds)
        return True

    def is_cancelled(self, job_id):
        raw = self.client.get(self._token_key(job_id))
        return bool(json.loads(raw).get("cancelled")) if raw else False

    def get_progress(self, job_id):
        raw = self.client.get(self._progress_key(job_id))
        return int(raw) if raw is not None else 0

    def set_progress(self, job_id, value):
        # single writer per job id, so read-then-write is enough
        value = max(self.get_progress(job_id), _clamp(value))
        self.client.set(self._progress_key(job_id), value, ex=self.ttl_seconds)
        self.client.expire(self._token_key(job_id), self.ttl_seconds)
        return value

    def clear(self, job_id):
        self.client.delete(self._progress_key(job_id), self._token_key(job_id))

    def active_ids(self):
        ids = set()
        for pattern in (self._progress_key("*"), self._token_key("*")):
            for key in self.client.scan_iter(match=pattern):
                ids.add(key.rsplit(":", 1)[-1])
        return sorted(ids)


def build_registry(settings) -> JobRuntimeRegistry:
    if settings.runtime_backend == "redis":
        return RedisJobRuntimeRegistry(
            url=settings.redis_url, prefix=settings.redis_prefix, ttl_seconds=settings.redis_ttl_seconds,
        )
    return InMemoryJobRuntimeRegistry()
