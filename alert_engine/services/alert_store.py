"""
ClinicalSentry - Alert State Store
Keeps each patient's reconciled alert set between scans (in-memory or Redis)
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Any

import redis
from redis import Redis, RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from alert_engine.config import settings
from alert_engine.exceptions import AlertStoreError
from alert_engine.schemas import Alert

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


# =============================================================================
# Store Interface
# =============================================================================

class AlertStore:
    """Storage for alert state; patient records are never stored here"""

    def get_patient_alerts(self, patient_id: str) -> List[Alert]:
        raise NotImplementedError

    def replace_patient_alerts(
        self,
        patient_id: str,
        alerts: List[Alert],
        retired_alert_ids: Optional[List[str]] = None
    ) -> None:
        raise NotImplementedError

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        raise NotImplementedError

    def save_alert(self, alert: Alert) -> None:
        raise NotImplementedError

    def find_patient_id(self, alert_id: str) -> Optional[str]:
        raise NotImplementedError

    def patient_lock(self, patient_id: str):
        """Context manager serializing scans and mutations for one patient"""
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        raise NotImplementedError


# =============================================================================
# In-Memory Store
# =============================================================================

class InMemoryAlertStore(AlertStore):
    """
    Thread-safe process-local store

    Patients share a fixed pool of re-entrant lock stripes, so lock memory
    does not grow with the number of patients ever scanned.
    """

    def __init__(self, lock_stripes: int = LOCK_STRIPES):
        self._alerts: Dict[str, Dict[str, Alert]] = {}
        self._index: Dict[str, str] = {}
        self._lock_stripes = [threading.RLock() for _ in range(max(1, lock_stripes))]
        self._guard = threading.Lock()

    def get_patient_alerts(self, patient_id: str) -> List[Alert]:
        with self._guard:
            return [a.model_copy(deep=True) for a in self._alerts.get(patient_id, {}).values()]

    def replace_patient_alerts(
        self,
        patient_id: str,
        alerts: List[Alert],
        retired_alert_ids: Optional[List[str]] = None
    ) -> None:
        with self._guard:
            previous = self._alerts.get(patient_id, {})
            current = {a.id: a.model_copy(deep=True) for a in alerts}

            for alert_id in set(previous) - set(current):
                self._index.pop(alert_id, None)
            for alert_id in retired_alert_ids or []:
                self._index.pop(alert_id, None)
            for alert_id in current:
                self._index[alert_id] = patient_id

            self._alerts[patient_id] = current

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._guard:
            patient_id = self._index.get(alert_id)
            if patient_id is None:
                return None
            alert = self._alerts.get(patient_id, {}).get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    def save_alert(self, alert: Alert) -> None:
        with self._guard:
            self._alerts.setdefault(alert.patient_id, {})[alert.id] = alert.model_copy(deep=True)
            self._index[alert.id] = alert.patient_id

    def find_patient_id(self, alert_id: str) -> Optional[str]:
        with self._guard:
            return self._index.get(alert_id)

    @contextmanager
    def patient_lock(self, patient_id: str) -> Iterator[None]:
        lock = self._lock_stripes[hash(patient_id) % len(self._lock_stripes)]
        with lock:
            yield

    def health_check(self) -> Dict[str, Any]:
        with self._guard:
            return {
                "status": "healthy",
                "backend": "memory",
                "patients": len(self._alerts),
                "alerts": len(self._index),
            }


# =============================================================================
# Redis Store
# =============================================================================

_redis_retry = retry(
    stop=stop_after_attempt(settings.store_max_retries),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
    reraise=True
)


class RedisAlertStore(AlertStore):
    """Redis-backed store shared by every API and worker process"""

    def __init__(self, redis_client: Optional[Redis] = None, key_prefix: Optional[str] = None):
        """Initialize Redis connection"""
        self.key_prefix = key_prefix or settings.redis_key_prefix
        self.lock_timeout = settings.redis_lock_timeout
        self.redis_client: Redis = redis_client or redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        logger.info(f"Redis alert store configured with prefix '{self.key_prefix}'")

    # =========================================================================
    # Key Generation
    # =========================================================================

    def _generate_key(self, kind: str, *identifiers: Any) -> str:
        """Generate key from prefix, kind and identifiers"""
        parts = [self.key_prefix, kind] + [str(i) for i in identifiers]
        return ":".join(parts)

    def _patient_key(self, patient_id: str) -> str:
        return self._generate_key("patient", patient_id)

    def _index_key(self, alert_id: str) -> str:
        return self._generate_key("index", alert_id)

    # =========================================================================
    # Raw Operations
    # =========================================================================

    @_redis_retry
    def _load(self, patient_id: str) -> List[Alert]:
        raw = self.redis_client.get(self._patient_key(patient_id))
        if not raw:
            return []
        return [Alert.model_validate(item) for item in json.loads(raw)]

    @_redis_retry
    def _store(self, patient_id: str, alerts: List[Alert], stale_ids: List[str]) -> None:
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.set(
            self._patient_key(patient_id),
            json.dumps([a.model_dump(mode="json") for a in alerts])
        )
        for alert in alerts:
            pipe.set(self._index_key(alert.id), patient_id)
        if stale_ids:
            pipe.delete(*[self._index_key(alert_id) for alert_id in stale_ids])
        pipe.execute()

    @_redis_retry
    def _lookup(self, alert_id: str) -> Optional[str]:
        return self.redis_client.get(self._index_key(alert_id))

    # =========================================================================
    # Store Interface
    # =========================================================================

    def get_patient_alerts(self, patient_id: str) -> List[Alert]:
        try:
            return self._load(patient_id)
        except RedisError as e:
            logger.error(f"Failed to load alerts for patient {patient_id}: {e}")
            raise AlertStoreError(f"Failed to load alerts for patient {patient_id}") from e

    def replace_patient_alerts(
        self,
        patient_id: str,
        alerts: List[Alert],
        retired_alert_ids: Optional[List[str]] = None
    ) -> None:
        try:
            previous_ids = {a.id for a in self._load(patient_id)}
            stale = (previous_ids - {a.id for a in alerts}) | set(retired_alert_ids or [])
            self._store(patient_id, alerts, sorted(stale))
            logger.debug(f"Stored {len(alerts)} alerts for patient {patient_id}")
        except RedisError as e:
            logger.error(f"Failed to store alerts for patient {patient_id}: {e}")
            raise AlertStoreError(f"Failed to store alerts for patient {patient_id}") from e

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        patient_id = self.find_patient_id(alert_id)
        if patient_id is None:
            return None
        for alert in self.get_patient_alerts(patient_id):
            if alert.id == alert_id:
                return alert
        return None

    def save_alert(self, alert: Alert) -> None:
        try:
            alerts = self._load(alert.patient_id)
            replaced = [alert if a.id == alert.id else a for a in alerts]
            if not any(a.id == alert.id for a in alerts):
                replaced.append(alert)
            self._store(alert.patient_id, replaced, [])
        except RedisError as e:
            logger.error(f"Failed to save alert {alert.id}: {e}")
            raise AlertStoreError(f"Failed to save alert {alert.id}") from e

    def find_patient_id(self, alert_id: str) -> Optional[str]:
        try:
            return self._lookup(alert_id)
        except RedisError as e:
            logger.error(f"Failed to look up alert {alert_id}: {e}")
            raise AlertStoreError(f"Failed to look up alert {alert_id}") from e

    @contextmanager
    def patient_lock(self, patient_id: str) -> Iterator[None]:
        lock = self.redis_client.lock(
            self._generate_key("lock", patient_id),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout
        )
        try:
            acquired = lock.acquire()
        except RedisError as e:
            raise AlertStoreError(f"Failed to lock patient {patient_id}") from e
        if not acquired:
            raise AlertStoreError(f"Timed out waiting for lock on patient {patient_id}")
        try:
            yield
        finally:
            try:
                lock.release()
            except RedisError as e:
                # Lock expired while held; the next writer already owns it
                logger.warning(f"Failed to release lock for patient {patient_id}: {e}")

    def health_check(self) -> Dict[str, Any]:
        """Check Redis health"""
        try:
            self.redis_client.ping()
            return {"status": "healthy", "backend": "redis"}
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return {"status": "unhealthy", "backend": "redis", "error": str(e)}


# =============================================================================
# Global Store Instance
# =============================================================================

# Lazy initialization
_alert_store: Optional[AlertStore] = None


def get_alert_store() -> AlertStore:
    """Get or create the configured alert store"""
    global _alert_store
    if _alert_store is None:
        if settings.store_backend == "redis":
            _alert_store = RedisAlertStore()
        else:
            _alert_store = InMemoryAlertStore()
        logger.info(f"Alert store backend: {settings.store_backend}")
    return _alert_store
