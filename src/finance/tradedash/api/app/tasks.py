import asyncio
import logging
from time import time
from typing import Any, List, NoReturn, Tuple

from aiohttp import web
import sentry_sdk

from finance.tradedash.api.app.config import (
    TOKEN_REFRESH_QUEUE,
    TOKEN_REFRESH_RETRY_QUEUE,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from finance.tradedash.api.app.errors import utc_now
from finance.tradedash.api.auth.accounts import refresh_linked_account
from finance.tradedash.api.auth.oauth import cleanup_expired_states
from finance.tradedash.api.auth.sessions import cleanup_expired_sessions

logger = logging.getLogger(__name__)


def normalize_redis_string(value: Any) -> str:
    """
    Normalize Redis value to string, handling bytes conversion.
    """
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class QueueManager:
    """
    Claims due linked-account ids from the shared refresh queue into this worker's own queue, `batch_size` at a
    time. The heartbeat hash records when each worker last ran a pass.
    """

    def __init__(
        self,
        redis_client: Any,
        metrics_client: Any,
        queue_name: str,
        worker_id: str,
        batch_size: int = 5,
    ):
        self.redis_client = redis_client
        self.metrics_client = metrics_client
        self.queue_name = queue_name
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.worker_queue = f"{queue_name}:{worker_id}"
        self.workers_heartbeat = f"{queue_name}:workers"

    async def update_heartbeat(self, timestamp: int) -> None:
        await self.redis_client.hset(
            self.workers_heartbeat, self.worker_id, str(timestamp)
        )

    async def get_queue_metrics(self, timestamp: int) -> Tuple[int, int]:
        """
        Returns (worker_queue_count, global_queue_count) of entries due by `timestamp`.
        """
        worker_queue_count = await self.redis_client.zcount(
            self.worker_queue, 0, timestamp
        )
        global_queue_count = await self.redis_client.zcount(
            self.queue_name, 0, timestamp
        )
        return worker_queue_count, global_queue_count

    async def populate_worker_queue(self, timestamp: int) -> int:
        """
        Claim up to `batch_size` due entries for this worker. Returns the number claimed.
        """
        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.zrangestore(
                self.worker_queue,
                self.queue_name,
                0,
                timestamp,
                num=self.batch_size,
                offset=0,
                byscore=True,
            )
            redis_pipe.zdiffstore(self.queue_name, [self.queue_name, self.worker_queue])
            zrangestore_res, _ = await redis_pipe.execute()
            return zrangestore_res

    async def get_pending_tasks(self, timestamp: int) -> List[Tuple[str, float]]:
        return await self.redis_client.zrange(
            self.worker_queue, 0, timestamp, byscore=True, withscores=True
        )

    async def remove_task(self, task_id: str) -> None:
        await self.redis_client.zrem(self.worker_queue, task_id)


class RetryHandler:
    """
    Puts an account whose refresh failed back on the shared queue `base_delay * 2 ** attempt` seconds out.
    Attempts are counted in the retry hash and dropped once the refresh succeeds.
    """

    def __init__(
        self,
        redis_client: Any,
        metrics_client: Any,
        queue_name: str,
        retry_queue_name: str,
        worker_id: str,
        max_retries: int,
        base_delay: int,
    ):
        self.redis_client = redis_client
        self.metrics_client = metrics_client
        self.queue_name = queue_name
        self.retry_queue_name = retry_queue_name
        self.worker_id = worker_id
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def get_retry_count(self, task_id: str) -> int:
        current_retries = await self.redis_client.hget(self.retry_queue_name, task_id)
        return int(current_retries) if current_retries else 0

    async def schedule_retry(self, task_id: str, current_time: int) -> bool:
        """
        False once the account has used up `max_retries`. Its retry count is cleared and it leaves the queue.
        """
        current_retries = await self.get_retry_count(task_id)

        if current_retries >= self.max_retries:
            await self.clear_retry_count(task_id)
            logger.error(
                "Max retries exceeded for task %s, giving up after %d attempts",
                task_id,
                self.max_retries,
            )
            self.metrics_client.increment(
                "task.max_retries_exceeded",
                1,
                tag_dict={"worker_id": self.worker_id},
            )
            return False

        retry_delay = self.base_delay * (2**current_retries)
        await self.redis_client.zadd(
            self.queue_name, {task_id: current_time + retry_delay}
        )
        await self.redis_client.hset(
            self.retry_queue_name, task_id, current_retries + 1
        )

        logger.info(
            "Scheduled retry %d/%d for task %s in %d seconds",
            current_retries + 1,
            self.max_retries,
            task_id,
            retry_delay,
        )
        self.metrics_client.increment(
            "task.retry_scheduled",
            1,
            tag_dict={
                "retry_attempt": str(current_retries + 1),
                "worker_id": self.worker_id,
            },
        )
        return True

    async def clear_retry_count(self, task_id: str) -> None:
        await self.redis_client.hdel(self.retry_queue_name, task_id)


class TaskProcessor:
    """Runs a single refresh and records `task.<task_type>.count`, `.time` and `.exception`."""

    def __init__(self, metrics_client: Any, worker_id: str, task_type: str):
        self.metrics_client = metrics_client
        self.worker_id = worker_id
        self.task_type = task_type

    async def process_task(
        self,
        task_id: str,
        task_func,
        *args,
        **kwargs,
    ) -> bool:
        """
        False when `task_func` raised. The exception has already been logged and sent to sentry.
        """
        start_time = time()
        task_id_str = normalize_redis_string(task_id)

        try:
            await task_func(*args, **kwargs)
            return True
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error processing task %s", task_id_str)

            self.metrics_client.increment(
                f"task.{self.task_type}.exception",
                1,
                tag_dict={
                    "exception": type(e).__name__,
                    "worker_id": self.worker_id,
                },
            )
            return False
        finally:
            self.metrics_client.timer(
                f"task.{self.task_type}.time",
                time() - start_time,
                tag_dict={"worker_id": self.worker_id},
            )
            self.metrics_client.increment(
                f"task.{self.task_type}.count",
                1,
                tag_dict={"worker_id": self.worker_id},
            )


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every second, reducing the error score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(1)


async def token_refresh_task(app: web.Application) -> NoReturn:
    """
    Background process that refreshes Google access tokens before they expire.

    Linked account ids sit in TOKEN_REFRESH_QUEUE scored by their refresh deadline. Each pass claims a batch of
    due ids into this worker's queue, refreshes them one at a time and re-queues failures with backoff.
    """
    logger.info("Starting token refresh task")

    settings = app[SettingsAppKey]
    database_session_maker = app[DatabaseSessionMakerAppKey]
    http_session = app[SessionAppKey]
    redis_client = app[RedisClientAppKey]
    metrics_client = app[MetricsClientAppKey]

    queue_manager = QueueManager(
        redis_client, metrics_client, TOKEN_REFRESH_QUEUE, settings.worker_id
    )
    retry_handler = RetryHandler(
        redis_client,
        metrics_client,
        TOKEN_REFRESH_QUEUE,
        TOKEN_REFRESH_RETRY_QUEUE,
        settings.worker_id,
        settings.oauth_refresh_max_retries,
        settings.oauth_refresh_retry_base_delay,
    )
    task_processor = TaskProcessor(metrics_client, settings.worker_id, "token_refresh")

    while True:
        try:
            await asyncio.sleep(10)

            now = utc_now()
            timestamp = int(now.timestamp())

            await queue_manager.update_heartbeat(timestamp)

            worker_queue_count, global_queue_count = (
                await queue_manager.get_queue_metrics(timestamp)
            )
            metrics_client.gauge(
                "task.token_refresh.worker_queue_count",
                worker_queue_count,
                tag_dict={"worker_id": settings.worker_id},
            )
            metrics_client.gauge(
                "task.token_refresh.global_queue_count",
                global_queue_count,
                tag_dict={"worker_id": settings.worker_id},
            )

            if worker_queue_count == 0 and global_queue_count > 0:
                logger.debug(
                    "token_refresh_task: processing %s up to %d",
                    TOKEN_REFRESH_QUEUE,
                    timestamp,
                )
                work_queued = await queue_manager.populate_worker_queue(timestamp)
                metrics_client.increment(
                    "task.token_refresh.work_queued",
                    work_queued,
                    tag_dict={"worker_id": settings.worker_id},
                )

            tasks = await queue_manager.get_pending_tasks(timestamp)
            for linked_account_id, deadline in tasks:
                linked_account_id_str = normalize_redis_string(linked_account_id)
                logger.debug(
                    "token_refresh_task: processing %s deadline %s",
                    linked_account_id_str,
                    deadline,
                )

                async with database_session_maker() as database_session:
                    success = await task_processor.process_task(
                        linked_account_id,
                        refresh_linked_account,
                        settings,
                        http_session,
                        database_session,
                        redis_client,
                        linked_account_id_str,
                        now,
                    )

                if success:
                    await retry_handler.clear_retry_count(linked_account_id_str)
                else:
                    await retry_handler.schedule_retry(linked_account_id_str, timestamp)

                await queue_manager.remove_task(linked_account_id)

        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("token refresh tick failed")


async def run_cleanup(app: web.Application) -> Tuple[int, int, int]:
    """
    Delete expired sessions, tokens and orphaned OAuth states once.

    Returns (sessions_removed, tokens_removed, states_removed).
    """
    settings = app[SettingsAppKey]
    database_session_maker = app[DatabaseSessionMakerAppKey]
    redis_client = app[RedisClientAppKey]
    metrics_client = app[MetricsClientAppKey]

    async with database_session_maker() as database_session:
        async with database_session.begin():
            sessions_removed, tokens_removed = await cleanup_expired_sessions(
                database_session, utc_now()
            )
    states_removed = await cleanup_expired_states(redis_client)

    if sessions_removed or tokens_removed or states_removed:
        logger.info(
            "Cleaned up %d expired sessions, %d expired tokens and %d stale OAuth states",
            sessions_removed,
            tokens_removed,
            states_removed,
        )

    tag_dict = {"worker_id": settings.worker_id}
    metrics_client.increment(
        "task.cleanup.expired_sessions_removed", sessions_removed, tag_dict
    )
    metrics_client.increment(
        "task.cleanup.expired_tokens_removed", tokens_removed, tag_dict
    )
    metrics_client.increment(
        "task.cleanup.oauth_states_removed", states_removed, tag_dict
    )
    return sessions_removed, tokens_removed, states_removed


async def cleanup_task(app: web.Application) -> NoReturn:
    logger.info("Starting cleanup task")

    settings = app[SettingsAppKey]
    while True:
        try:
            await asyncio.sleep(settings.cleanup_interval)
            await run_cleanup(app)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Cleanup task failed")
