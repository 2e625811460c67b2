"""
Redis client for job status and progress pub/sub
"""

import json
import structlog
from typing import Optional
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError
from config import settings

logger = structlog.get_logger()


class RedisClient:
    """
    Redis client with connection pooling and pub/sub helpers.

    The connection is opened on first use. Publishing never raises: the job
    store is the source of truth and a lost event only delays a UI refresh.
    """

    def __init__(self, url: str = None, enabled: bool = None):
        self.url = url or settings.REDIS_URL
        self.enabled = settings.REDIS_ENABLED if enabled is None else enabled
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    def _connect(self):
        """Establish Redis connection with connection pool"""
        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            retry_on_timeout=settings.REDIS_RETRY_ON_TIMEOUT,
            health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True
        )
        self._client = Redis(connection_pool=self._pool)
        logger.info("redis_client_created", url=self.url)

    def get_client(self) -> Redis:
        """Get Redis client instance"""
        if self._client is None:
            self._connect()
        return self._client

    def ping(self) -> bool:
        """Check if Redis is connected"""
        if not self.enabled:
            return False
        try:
            return bool(self.get_client().ping())
        except RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection"""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("redis_connection_closed")

    def _publish(self, channel: str, payload: dict) -> bool:
        if not self.enabled:
            return False
        try:
            self.get_client().publish(channel, json.dumps(payload, default=str))
            return True
        except RedisError as e:
            logger.warning("redis_publish_failed", channel=channel, job_id=payload.get("job_id"), error=str(e))
            return False

    # ===== Pub/Sub Operations =====

    def publish_status(self, job_id: str, status: str, **kwargs) -> bool:
        """
        Publish job status update to subscribers

        Args:
            job_id: Job identifier
            status: Status value
            **kwargs: Additional metadata

        Returns:
            bool: Success status
        """
        published = self._publish(settings.JOB_STATUS_CHANNEL, {
            "job_id": job_id,
            "status": status,
            **kwargs
        })
        if published:
            logger.debug("status_published", job_id=job_id, status=status)
        return published

    def publish_progress(self, job_id: str, stage: str, progress: int, **kwargs) -> bool:
        """
        Publish job progress update to subscribers

        Args:
            job_id: Job identifier
            stage: Current processing stage
            progress: Progress percentage (0-100)
            **kwargs: Additional metadata

        Returns:
            bool: Success status
        """
        published = self._publish(settings.JOB_PROGRESS_CHANNEL, {
            "job_id": job_id,
            "stage": stage,
            "progress": progress,
            **kwargs
        })
        if published:
            logger.debug("progress_published", job_id=job_id, stage=stage, progress=progress)
        return published

    def subscribe_to_status(self):
        """
        Subscribe to job status updates

        Returns:
            PubSub: Redis PubSub instance
        """
        pubsub = self.get_client().pubsub()
        pubsub.subscribe(settings.JOB_STATUS_CHANNEL)
        return pubsub

    def subscribe_to_progress(self):
        """
        Subscribe to job progress updates

        Returns:
            PubSub: Redis PubSub instance
        """
        pubsub = self.get_client().pubsub()
        pubsub.subscribe(settings.JOB_PROGRESS_CHANNEL)
        return pubsub


# Global Redis client instance
redis_client = RedisClient()
