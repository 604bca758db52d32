import asyncio
import threading
import time
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

from firekit.core.actions import Create, CreateWithGeneratedId, Delete, Get, Subscribe, Update
from firekit.core.audit import HostEnvironment
from firekit.core.sanitizer import MISSING
from firekit.errors import BackingStoreError, NotInitializedError, UnsupportedActionError, ValidationError
from firekit.services.backing_store import FirebaseBackingStore, InMemoryBackingStore
from firekit.services.firebase_app import FirebaseConnection
from firekit.services.gateway import SanitizingMutationGateway, Subscription


def _is_iso(value: str) -> bool:
    datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value.endswith("Z")


class FailingStore(InMemoryBackingStore):
    def set(self, path, value):
        raise PermissionError("PERMISSION_DENIED")

    def listen(self, path, on_change, on_error):
        raise ConnectionError("stream closed")


class GatewayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = InMemoryBackingStore()
        self.gateway = SanitizingMutationGateway(
            FirebaseConnection(store=self.store),
            environment=HostEnvironment(),
        )

    async def test_create_merges_exactly_one_audit_block(self):
        await self.gateway.dispatch(Create("items/1", {"x": 1}, "user1"))

        op, path, written = self.store.writes[-1]
        self.assertEqual((op, path), ("set", "items/1"))
        self.assertEqual(set(written), {"x", "createdAt", "createdBy"})
        self.assertEqual(written["x"], 1)
        self.assertTrue(_is_iso(written["createdAt"]))
        self.assertEqual(written["createdBy"]["actorId"], "user1")
        self.assertEqual(written["createdBy"]["timestamp"], written["createdAt"])

    async def test_update_end_to_end(self):
        await self.gateway.dispatch(
            Update("users/1", {"age": MISSING, "name": "Ann"}, "admin")
        )

        op, path, written = self.store.writes[-1]
        self.assertEqual((op, path), ("update", "users/1"))
        self.assertNotIn("age", written)
        self.assertEqual(written["name"], "Ann")
        self.assertTrue(_is_iso(written["updatedAt"]))
        self.assertEqual(written["updatedBy"]["actorId"], "admin")
        self.assertNotIn("createdAt", written)
        self.assertNotIn("createdBy", written)

    async def test_update_merges_instead_of_overwriting(self):
        await self.gateway.create("users/1", {"name": "Ann", "age": 30})
        await self.gateway.update("users/1", {"name": "Bea"})

        stored = await self.gateway.get("users/1")
        self.assertEqual(stored["name"], "Bea")
        self.assertEqual(stored["age"], 30)
        self.assertIn("createdAt", stored)
        self.assertIn("updatedAt", stored)

    async def test_opposite_audit_block_is_dropped(self):
        await self.gateway.create(
            "items/2",
            {"updatedAt": "old", "updatedBy": {"actorId": "x"}, "createdAt": "forged"},
        )
        written = self.store.writes[-1][2]
        self.assertNotIn("updatedAt", written)
        self.assertNotIn("updatedBy", written)
        self.assertNotEqual(written["createdAt"], "forged")

    async def test_actor_defaults_to_anonymous(self):
        await self.gateway.create("items/3", {})
        self.assertEqual(self.store.writes[-1][2]["createdBy"]["actorId"], "anonymous")

    async def test_create_with_generated_id_returns_key(self):
        key = await self.gateway.dispatch(CreateWithGeneratedId("posts", {"title": "hi"}, "u"))

        self.assertIsInstance(key, str)
        self.assertEqual(len(key), 20)
        stored = await self.gateway.dispatch(Get(f"posts/{key}"))
        self.assertEqual(stored["title"], "hi")
        self.assertEqual(stored["createdBy"]["actorId"], "u")

    async def test_generated_ids_sort_in_creation_order(self):
        keys = [await self.gateway.create_with_id("posts", {"n": n}) for n in range(5)]
        self.assertEqual(keys, sorted(keys))

    async def test_get_returns_raw_value(self):
        self.store.set("raw", {"a": None, "b": [1, 2]})
        self.assertEqual(await self.gateway.get("raw"), {"a": None, "b": [1, 2]})
        self.assertIsNone(await self.gateway.get("nothing/here"))

    async def test_delete_ignores_payload_and_removes_subtree(self):
        await self.gateway.create("users/1", {"name": "Ann"})
        await self.gateway.dispatch(Delete("users/1"))
        self.assertIsNone(await self.gateway.get("users/1"))
        self.assertIsNone(await self.gateway.get("users"))

    async def test_not_initialized_has_priority(self):
        gateway = SanitizingMutationGateway(None)
        with self.assertRaises(NotInitializedError):
            await gateway.dispatch("bogus")
        with self.assertRaises(NotInitializedError):
            await gateway.mutate("", action="explode")
        with self.assertRaises(NotInitializedError):
            gateway.subscribe("", lambda value: None)

    async def test_closed_connection_is_not_initialized(self):
        connection = FirebaseConnection(store=self.store)
        connection.close()
        with self.assertRaises(NotInitializedError):
            await SanitizingMutationGateway(connection).get("a")

    async def test_empty_path_is_rejected(self):
        with self.assertRaises(ValidationError):
            await self.gateway.dispatch(Get(""))
        with self.assertRaises(ValidationError):
            await self.gateway.dispatch(Create("   ", {"a": 1}))
        self.assertEqual(self.store.writes, [])

    async def test_unknown_request_is_rejected(self):
        with self.assertRaises(UnsupportedActionError):
            await self.gateway.dispatch({"path": "a", "action": "create"})
        with self.assertRaises(UnsupportedActionError):
            await self.gateway.mutate("a", {"x": 1}, action="upsert")

    async def test_write_requires_payload(self):
        for request in (Create("a"), Update("a"), CreateWithGeneratedId("a"), Update("a", None)):
            with self.subTest(request=request):
                with self.assertRaises(ValidationError):
                    await self.gateway.dispatch(request)
        with self.assertRaises(ValidationError):
            await self.gateway.dispatch(Create("a", ["not", "a", "mapping"]))
        self.assertEqual(self.store.writes, [])

    async def test_mutate_takes_action_names(self):
        await self.gateway.mutate("cfg", {"on": True}, action="create", action_by="ops")
        self.assertEqual(self.store.writes[-1][0], "set")
        key = await self.gateway.mutate("log", {"m": 1}, action="createWithId")
        self.assertEqual((await self.gateway.mutate(f"log/{key}", action="get"))["m"], 1)
        await self.gateway.mutate("cfg", action="delete")
        self.assertIsNone(await self.gateway.get("cfg"))

    async def test_backing_store_errors_are_wrapped(self):
        gateway = SanitizingMutationGateway(FirebaseConnection(store=FailingStore()))
        with self.assertRaises(BackingStoreError) as ctx:
            await gateway.create("a", {"x": 1})
        self.assertEqual(str(ctx.exception), "PERMISSION_DENIED")
        self.assertIsInstance(ctx.exception.original, PermissionError)
        self.assertEqual(ctx.exception.operation, "set")

        with self.assertRaises(BackingStoreError):
            gateway.subscribe("a", lambda value: None)


class SubscriptionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = InMemoryBackingStore()
        self.gateway = SanitizingMutationGateway(FirebaseConnection(store=self.store))

    async def test_subscribe_returns_handle_and_delivers_values(self):
        seen = []
        handle = await self.gateway.dispatch(Subscribe("rooms/1", seen.append))

        self.assertTrue(handle.active)
        await self.gateway.create("rooms/1", {"topic": "python"})
        await self.gateway.update("rooms/1", {"topic": "asyncio"})

        self.assertIsNone(seen[0])
        self.assertEqual(seen[1]["topic"], "python")
        self.assertEqual(seen[2]["topic"], "asyncio")
        handle.release()

    async def test_child_writes_reach_parent_listener(self):
        seen = []
        handle = self.gateway.subscribe("rooms", seen.append)
        await self.gateway.create("rooms/1/messages/a", {"text": "hi"})
        self.assertEqual(seen[-1]["1"]["messages"]["a"]["text"], "hi")
        handle.release()

    async def test_unsubscribe_is_idempotent(self):
        seen = []
        handle = self.gateway.subscribe("rooms/1", seen.append)
        handle.unsubscribe()
        handle.unsubscribe()
        handle.release()

        await self.gateway.create("rooms/1", {"topic": "late"})
        self.assertEqual(seen, [None])
        self.assertFalse(handle.active)
        self.assertEqual(self.store.listener_count, 0)

    async def test_context_manager_releases(self):
        with self.gateway.subscribe("rooms/1", lambda value: None) as handle:
            self.assertEqual(self.store.listener_count, 1)
        self.assertFalse(handle.active)
        self.assertEqual(self.store.listener_count, 0)

    async def test_listener_errors_reach_handler(self):
        errors = []

        class BrokenReads(InMemoryBackingStore):
            def get(self, path):
                raise ConnectionError("lost")

        gateway = SanitizingMutationGateway(FirebaseConnection(store=BrokenReads()))
        handle = gateway.subscribe("a", lambda value: None, errors.append)
        self.assertIsInstance(errors[0], ConnectionError)
        handle.release()

    async def test_listener_errors_without_handler_are_logged(self):
        class BrokenReads(InMemoryBackingStore):
            def get(self, path):
                raise ConnectionError("lost")

        gateway = SanitizingMutationGateway(FirebaseConnection(store=BrokenReads()))
        with self.assertLogs("firekit.services.gateway", level="ERROR") as logs:
            handle = gateway.subscribe("a", lambda value: None)
        self.assertIn("lost", logs.output[0])
        handle.release()


class SlowListenReference:
    def __init__(self, delay):
        self.delay = delay
        self.registered = threading.Event()

    def listen(self, callback):
        time.sleep(self.delay)
        self.registered.set()
        return MagicMock()


class FirebaseSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    async def test_subscribe_does_not_block_the_event_loop(self):
        ref = SlowListenReference(0.5)
        with patch("firekit.services.backing_store.db.reference", return_value=ref):
            gateway = SanitizingMutationGateway(FirebaseConnection(store=FirebaseBackingStore()))
            ticks = []

            async def ticker():
                for _ in range(5):
                    ticks.append(time.monotonic())
                    await asyncio.sleep(0.05)

            task = asyncio.create_task(ticker())
            await asyncio.sleep(0)
            handle = await gateway.dispatch(Subscribe("rooms/1", lambda value: None))
            await task

            gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
            self.assertLess(max(gaps), 0.2)
            handle.release()
            self.assertTrue(ref.registered.wait(2))


class SubscriptionLockTests(unittest.TestCase):
    def test_release_waits_for_a_running_callback(self):
        entered, proceed = threading.Event(), threading.Event()
        seen = []

        def on_change(value):
            seen.append(value)
            entered.set()
            proceed.wait(2)

        subscription = Subscription("a", on_change)
        delivering = threading.Thread(target=subscription._deliver, args=(1,))
        delivering.start()
        self.assertTrue(entered.wait(1))

        releasing = threading.Thread(target=subscription.release)
        releasing.start()
        releasing.join(0.1)
        self.assertTrue(releasing.is_alive())

        proceed.set()
        releasing.join(1)
        delivering.join(1)
        subscription._deliver(2)
        self.assertEqual(seen, [1])
        self.assertFalse(subscription.active)

    def test_callback_may_release_its_own_subscription(self):
        closed = []
        subscription = Subscription("a", lambda value: subscription.release())
        subscription._attach(lambda: closed.append(True))
        subscription._deliver(1)
        self.assertFalse(subscription.active)
        self.assertEqual(closed, [True])


if __name__ == "__main__":
    unittest.main()
