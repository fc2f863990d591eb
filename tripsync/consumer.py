"""
Redis Streams consumer with at-least-once delivery.

Messages are read one at a time through a consumer group. A handled message
is acknowledged and deleted; a message whose decoding or handling raised is
appended again to the tail of the stream (with an ``attempts`` counter) and
the original entry is acknowledged, so another read redelivers it. Entries
delivered to this consumer but never acknowledged (crash, lost connection)
are drained first on every reconnect.
"""
import asyncio
import functools
import inspect
import json

import redis
from redis.backoff import ConstantBackoff
from redis.retry import Retry

from tripsync.config import (
    BLOCK_MS,
    CONSUMER_NAME,
    GROUP,
    HEARTBEAT,
    PREFETCH_COUNT,
    RECOVERY_ATTEMPTS,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    REDIS_USER,
    RETRY_DELAY,
    STREAM,
)
from tripsync.logging_config import get_logger

logger = get_logger("consumer", "consumer.log")


def redis_client():
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB,
        username=REDIS_USER,
        password=REDIS_PASSWORD,
        health_check_interval=HEARTBEAT,
        socket_keepalive=True,
        retry=Retry(ConstantBackoff(RETRY_DELAY), RECOVERY_ATTEMPTS),
        retry_on_error=[redis.exceptions.ConnectionError, redis.exceptions.TimeoutError],
        decode_responses=False,
    )


def _key(k):
    return k.decode() if isinstance(k, bytes) else k


class StreamConsumer:

    def __init__(self, client_factory=redis_client, stream=STREAM, group=GROUP,
                 consumer=CONSUMER_NAME, retry_delay=RETRY_DELAY, block_ms=BLOCK_MS):
        self._client_factory = client_factory
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.retry_delay = retry_delay
        self.block_ms = block_ms
        self.client = None
        self._running = False
        self._busy = False

    @property
    def running(self) -> bool:
        return self._running

    # ---------- Lifecycle ----------
    async def run(self, handler) -> None:
        """
        Consume until stop() is called. ``handler(message)`` receives each
        decoded message and may be a plain function or a coroutine function.
        """
        self._running = True

        while self._running:
            try:
                await self._setup_connection()
                await self._consume_messages(handler)
            except KeyboardInterrupt:
                self._handle_shutdown("stopped by user")
            except asyncio.CancelledError:
                self._handle_shutdown("cancelled")
                raise
            except redis.exceptions.ConnectionError as e:
                await self._handle_error("Connection failed", e)
            except Exception as e:
                await self._handle_error("Unexpected error", e)

        self._shutdown()

    def stop(self) -> None:
        """Request a stop. A message being handled is finished (and acked) first."""
        self._running = False
        if not self._busy:
            self._shutdown()

    # ---------- Connection ----------
    async def _call(self, fn, *args, **kwargs):
        # Blocking redis calls go through the default executor
        return await asyncio.get_event_loop().run_in_executor(
            None, functools.partial(fn, *args, **kwargs)
        )

    async def _setup_connection(self) -> None:
        logger.info(f"[*] Connecting to Redis stream {self.stream}...")

        self.client = self._client_factory()
        await self._call(self.client.ping)
        await self._ensure_group()

        waiting = await self._call(self.client.xlen, self.stream)
        logger.info(f"[✓] Connected: {waiting} messages waiting")

    async def _ensure_group(self) -> None:
        try:
            # id="0" so entries queued before the group existed are delivered too
            await self._call(self.client.xgroup_create, self.stream, self.group, id="0", mkstream=True)
            logger.info(f"Consumer group {self.group} created.")
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.info(f"Consumer group {self.group} already exists.")
            else:
                raise

    # ---------- Consumption ----------
    async def _consume_messages(self, handler) -> None:
        logger.info("[*] Waiting for messages. Press Ctrl+C to exit")

        # "0" reads our own unacknowledged entries, ">" reads new ones
        read_id = "0"

        while self._running:
            response = await self._call(
                self.client.xreadgroup,
                self.group,
                self.consumer,
                {self.stream: read_id},
                count=PREFETCH_COUNT,
                block=self.block_ms,
            )

            records = [rec for _, recs in response or [] for rec in recs]
            if not records:
                if read_id != ">":
                    logger.info("[*] Pending backlog drained")
                    read_id = ">"
                continue

            for message_id, fields in records:
                self._busy = True
                try:
                    await self._process_message_with_ack(handler, message_id, fields)
                finally:
                    self._busy = False
                if not self._running:
                    break

    async def _process_message_with_ack(self, handler, message_id, fields) -> None:
        if not fields:
            # entry was deleted while still pending
            await self._ack(message_id)
            return

        fields = {_key(k): v for k, v in fields.items()}
        try:
            message = self._decode(fields)
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._log_error(f"Message processing error for {_key(message_id)}", e)
            await self._nack(message_id, fields)
            return

        await self._ack(message_id)
        logger.info(f"[✓] Message processed {_key(message_id)}")

    @staticmethod
    def _decode(fields: dict):
        raw = fields.get("data")
        if raw is None:
            raise ValueError("stream entry has no data field")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def _ack(self, message_id) -> None:
        await self._call(self.client.xack, self.stream, self.group, message_id)
        await self._call(self.client.xdel, self.stream, message_id)

    async def _nack(self, message_id, fields: dict) -> None:
        """Requeue: append a copy to the stream tail, then drop the original."""
        requeued = dict(fields)
        requeued["attempts"] = int(fields.get("attempts") or 0) + 1

        new_id = await self._call(self.client.xadd, self.stream, requeued)
        await self._ack(message_id)
        logger.warning(
            f"[!] Requeued {_key(message_id)} as {_key(new_id)} (attempt {requeued['attempts']})"
        )

    # ---------- Shutdown / errors ----------
    def _handle_shutdown(self, reason: str) -> None:
        self._running = False
        self._shutdown()
        logger.info(f"[*] Stream consumer {reason}")

    async def _handle_error(self, message: str, error: Exception) -> None:
        if not self._running:
            logger.info(f"[*] Consumer loop ended during shutdown: {error}")
            self._shutdown()
            return

        self._log_error(message, error)
        self._shutdown()
        if self._running:
            logger.info(f"[*] Retrying in {self.retry_delay} seconds...")
            await asyncio.sleep(self.retry_delay)

    @staticmethod
    def _log_error(message: str, error: Exception) -> None:
        logger.error(f"{message}: {type(error).__name__} - {error}", exc_info=error)

    def _shutdown(self) -> None:
        if self.client is None:
            return

        logger.info("[*] Shutting down Redis connection...")
        client, self.client = self.client, None

        try:
            client.close()
        except Exception as e:
            logger.error(f"Error closing client: {e}")

        try:
            client.connection_pool.disconnect()
        except Exception as e:
            logger.error(f"Error closing connection pool: {e}")

        logger.info("[✓] Shutdown complete")
