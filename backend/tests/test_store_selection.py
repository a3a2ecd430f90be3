import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.config import Settings
from app.core.errors import RemoteUnavailable
from app.store import build_store, connect_store
from app.store.memory import InMemoryDocumentStore
from app.store.redis_store import RedisDocumentStore, decode_body, encode_body


class StoreSelectionTests(unittest.IsolatedAsyncioTestCase):
    def test_backend_follows_settings(self) -> None:
        self.assertEqual(build_store(Settings(store_backend="memory")).name, "memory")
        self.assertEqual(build_store(Settings(store_backend="local", database_url="sqlite://")).name, "local")
        self.assertEqual(build_store(Settings(store_backend="redis")).name, "redis")

    async def test_unreachable_remote_falls_back_to_the_local_cache(self) -> None:
        settings = Settings(store_backend="redis", database_url="sqlite://", local_fallback_enabled=True)
        with patch.object(RedisDocumentStore, "connect", AsyncMock(side_effect=RemoteUnavailable())):
            with self.assertLogs("app.store", level="WARNING"):
                store = await connect_store(settings)
        self.assertEqual(store.name, "local")
        self.assertTrue(store.is_connected)
        await store.close()

    async def test_fallback_can_be_disabled(self) -> None:
        settings = Settings(store_backend="redis", local_fallback_enabled=False)
        with patch.object(RedisDocumentStore, "connect", AsyncMock(side_effect=RemoteUnavailable())):
            with self.assertRaises(RemoteUnavailable):
                await connect_store(settings)

    async def test_redis_ping_failure_is_remote_unavailable(self) -> None:
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")
        store = RedisDocumentStore("redis://nowhere:6379/0", client=client)
        with self.assertRaises(RemoteUnavailable):
            await store.connect()
        self.assertFalse(store.is_connected)

    async def test_disconnected_memory_store_is_unavailable(self) -> None:
        store = InMemoryDocumentStore()
        with self.assertRaises(RemoteUnavailable):
            await store.get("users", "x")


class RedisBodyCodecTests(unittest.TestCase):
    def test_datetimes_are_written_as_iso_strings(self) -> None:
        moment = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        body = decode_body(encode_body({"created_at": moment, "member_ids": ["a"]}))
        self.assertEqual(body, {"created_at": "2024-05-01T12:30:00+00:00", "member_ids": ["a"]})

    def test_bytes_payloads_decode(self) -> None:
        self.assertEqual(decode_body(b'{"status": "pending"}'), {"status": "pending"})


if __name__ == "__main__":
    unittest.main()
