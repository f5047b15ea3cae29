import asyncio
import os
import sqlite3
import tempfile
import unittest
from contextlib import closing
from unittest.mock import patch

from datastore.dal import DataAccessLayer
from datastore.errors import (
    DuplicateIdError,
    QuotaExceededError,
    RecordNotFoundError,
    TransientError,
)
from datastore.filters import compile_filters
from datastore.local_store import LocalStore, default_database_url
from datastore.remote_store import InMemoryRemoteStore
from datastore.selector import BackendMode, BackendSelector
from shared.types import Message, Product, SavedItem, User

MEMORY_URL = "sqlite+pysqlite:///:memory:"
POLL_INTERVAL = 0.01


def _product(name="Lamp", price=5.0, category="Appliances", seller="s@x.edu"):
    return Product(product_name=name, price=price, category=category, seller=seller)


class LocalOnlyDataAccessTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.local = LocalStore(MEMORY_URL)
        self.dal = DataAccessLayer(
            BackendSelector(use_remote=False), self.local, poll_interval=POLL_INTERVAL
        )

    async def asyncTearDown(self):
        self.dal.close()
        self.local.dispose()

    async def test_register_then_browse(self):
        uid = await self.dal.add(
            "users",
            {"uid": "u1", "email": "a@x.edu", "role": "customer", "createdAt": 1000.0},
        )
        self.assertEqual(uid, "u1")

        users = await self.dal.get("users", [("email", "==", "a@x.edu")])
        self.assertEqual(len(users), 1)
        self.assertIsInstance(users[0], User)
        self.assertEqual(users[0].uid, "u1")
        self.assertEqual(users[0].created_at, 1000.0)

    async def test_save_unsave_symmetry(self):
        saved_id = await self.dal.add(
            "savedItems", SavedItem(buyer_email="a", product_id="p1")
        )
        items = await self.dal.get("savedItems", [("buyerEmail", "==", "a")])
        self.assertEqual([item.id for item in items], [saved_id])

        await self.dal.delete("savedItems", saved_id)
        await self.dal.delete("savedItems", saved_id)
        self.assertEqual(await self.dal.get("savedItems", [("buyerEmail", "==", "a")]), [])

    async def test_duplicate_id_rejected(self):
        record = {
            "id": "p1",
            "productName": "Lamp",
            "price": 5,
            "category": "Appliances",
            "seller": "s@x.edu",
        }
        self.assertEqual(await self.dal.add("products", record), "p1")
        with self.assertRaises(DuplicateIdError):
            await self.dal.add("products", record)

    async def test_round_trip(self):
        product = _product()
        record_id = await self.dal.add("products", product)
        fetched = await self.dal.get("products", [("id", "==", record_id)])
        product.id = record_id
        self.assertEqual(fetched, [product])

    async def test_ordering(self):
        await self.dal.add(
            "messages",
            Message(conversation_id="c1", sender="a", recipient="b", text="m1", timestamp=1.0),
        )
        await self.dal.add(
            "messages",
            Message(conversation_id="c1", sender="b", recipient="a", text="m2", timestamp=2.0),
        )
        messages = await self.dal.get(
            "messages", [("conversationId", "==", "c1")], order_by="timestamp"
        )
        self.assertEqual([m.text for m in messages], ["m1", "m2"])
        latest = await self.dal.get(
            "messages",
            [("conversationId", "==", "c1")],
            order_by="timestamp",
            descending=True,
            limit=1,
        )
        self.assertEqual([m.text for m in latest], ["m2"])

    async def test_update(self):
        record_id = await self.dal.add("products", _product())
        await self.dal.update("products", record_id, {"sold": True, "buyer_email": "b@x.edu"})
        (product,) = await self.dal.get("products", [("id", "==", record_id)])
        self.assertTrue(product.sold)
        self.assertEqual(product.buyer_email, "b@x.edu")

        with self.assertRaises(RecordNotFoundError):
            await self.dal.update("products", "missing", {"sold": True})
        with self.assertRaises(ValueError):
            await self.dal.update("products", record_id, {"id": "other"})

    async def test_get_by_id(self):
        record_id = await self.dal.add("products", _product())
        product = await self.dal.get_by_id("products", record_id)
        self.assertIsInstance(product, Product)
        self.assertEqual(product.product_name, "Lamp")
        self.assertIsNone(await self.dal.get_by_id("products", "missing"))

    async def test_purchase_before_creation_is_rejected(self):
        product = _product()
        product.created_at = 1000.0
        record_id = await self.dal.add("products", product)
        with self.assertRaises(ValueError):
            await self.dal.update(
                "products", record_id, {"sold": True, "purchase_date": 500.0}
            )
        (stored,) = await self.dal.get("products", [("id", "==", record_id)])
        self.assertFalse(stored.sold)
        self.assertIsNone(stored.purchase_date)

    async def test_reserved_and_unknown_collections(self):
        for collection in ("offers", "reviews"):
            with self.subTest(collection=collection):
                with self.assertRaises(ValueError):
                    await self.dal.get(collection)
                with self.assertRaises(ValueError):
                    await self.dal.add(collection, {"id": "x"})

    async def test_subscription_diff(self):
        received = []
        subscription = await self.dal.subscribe(
            "messages", [("conversationId", "==", "c1")], received.append
        )
        await asyncio.sleep(0.05)
        for index in range(3):
            await self.dal.add(
                "messages",
                Message(conversation_id="c1", sender="a", recipient="b", text=f"m{index}"),
            )
            await self.dal.add(
                "messages",
                Message(conversation_id="c2", sender="a", recipient="b", text="other"),
            )
            await asyncio.sleep(0.05)
        subscription.unsubscribe()

        self.assertTrue(received[0].initial)
        self.assertEqual(received[0].records, [])
        updates = received[1:]
        self.assertEqual(len(updates), 3)
        for count, change_set in enumerate(updates, start=1):
            self.assertEqual(len(change_set.records), count)
            self.assertEqual(len(change_set.changes), 1)
            self.assertIsInstance(change_set.changes[0].record, Message)

    async def test_unsubscribe_finality(self):
        received = []
        subscription = await self.dal.subscribe("products", None, received.append)
        await asyncio.sleep(0.05)
        subscription.unsubscribe()
        delivered = len(received)

        await self.dal.add("products", _product())
        await asyncio.sleep(0.05)
        self.assertEqual(len(received), delivered)
        self.assertEqual(self.dal.router.active, [])


class LocalStoreFailureTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, "campus_marketplace.sqlite3")
        self.local = LocalStore(default_database_url(self.tmpdir.name))
        self.dal = DataAccessLayer(
            BackendSelector(use_remote=False), self.local, poll_interval=POLL_INTERVAL
        )

    async def asyncTearDown(self):
        self.dal.close()
        self.local.dispose()

    def _execute(self, statement):
        with closing(sqlite3.connect(self.path)) as conn:
            conn.execute(statement)
            conn.commit()

    async def test_polling_survives_a_dropped_table(self):
        received = []
        subscription = await self.dal.subscribe(
            "messages", [("conversationId", "==", "c1")], received.append
        )
        await asyncio.sleep(0.05)

        with self.assertLogs("datastore.subscriptions", level="WARNING"):
            self._execute("DROP TABLE messages")
            await asyncio.sleep(0.05)
        with self.assertRaises(TransientError):
            await self.dal.get("messages")

        self._execute(
            "CREATE TABLE messages (key VARCHAR PRIMARY KEY, "
            "inserted_at BIGINT NOT NULL, data JSON NOT NULL)"
        )
        await self.dal.add(
            "messages",
            Message(conversation_id="c1", sender="a", recipient="b", text="back"),
        )
        await asyncio.sleep(0.05)
        subscription.unsubscribe()

        self.assertEqual(received[0].records, [])
        self.assertEqual([m.text for m in received[-1].records], ["back"])


class RemoteEnabledDataAccessTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.remote = InMemoryRemoteStore()
        self.local = LocalStore(MEMORY_URL)
        self.selector = BackendSelector(use_remote=True)
        self.dal = DataAccessLayer(
            self.selector, self.local, self.remote, poll_interval=POLL_INTERVAL
        )

    async def asyncTearDown(self):
        self.dal.close()
        self.local.dispose()

    def test_remote_store_is_required(self):
        with self.assertRaises(ValueError):
            DataAccessLayer(BackendSelector(use_remote=True), self.local)

    async def test_mirror_convergence(self):
        record_id = await self.dal.add("products", _product())
        await self.dal.flush()
        mirrored = self.local.get_by_id("products", record_id)
        self.assertEqual(mirrored["id"], record_id)
        self.assertEqual(mirrored["productName"], "Lamp")

        await self.dal.update("products", record_id, {"sold": True})
        await self.dal.flush()
        self.assertTrue(self.local.get_by_id("products", record_id)["sold"])

        await self.dal.delete("products", record_id)
        await self.dal.flush()
        self.assertIsNone(self.local.get_by_id("products", record_id))

    async def test_users_keep_their_uid_in_both_stores(self):
        uid = await self.dal.add("users", User(uid="u1", email="a@x.edu"))
        await self.dal.flush()
        self.assertEqual(uid, "u1")
        self.assertEqual(self.local.get_by_id("users", "u1")["email"], "a@x.edu")

    async def test_reads_come_from_the_remote(self):
        self.remote.add(
            "products",
            {"productName": "Remote only", "price": 1, "category": "A", "seller": "s"},
        )
        products = await self.dal.get("products")
        self.assertEqual([p.product_name for p in products], ["Remote only"])
        self.assertEqual(self.local.get("products"), [])

    async def test_failed_remote_write_is_not_mirrored(self):
        record_id = await self.dal.add("products", _product())
        await self.dal.flush()
        with patch.object(
            self.remote, "update", side_effect=TransientError("offline")
        ):
            with self.assertRaises(TransientError):
                await self.dal.update("products", record_id, {"sold": True})
        await self.dal.flush()
        self.assertFalse(self.local.get_by_id("products", record_id)["sold"])
        self.assertTrue(self.selector.remote_enabled)

    async def test_mirror_failure_is_logged(self):
        self.local.add("users", {"id": "u1", "uid": "u1", "email": "old@x.edu"})
        with self.assertLogs("datastore.dal", level="WARNING"):
            await self.dal.add("users", User(uid="u1", email="a@x.edu"))
            await self.dal.flush()
        self.assertEqual(self.local.get_by_id("users", "u1")["email"], "old@x.edu")

    async def test_quota_fallback(self):
        with patch.object(
            self.remote, "add", side_effect=QuotaExceededError("quota exhausted")
        ) as remote_add:
            with self.assertLogs("datastore.selector", level="WARNING"):
                record_id = await self.dal.add("products", _product())
            self.assertEqual(self.selector.mode, BackendMode.LOCAL_ONLY)
            self.assertEqual(self.selector.fallback_reason, "quota exhausted")
            self.assertIsNotNone(self.local.get_by_id("products", record_id))

            await self.dal.add("products", _product(name="Chair"))
            self.assertEqual(remote_add.call_count, 1)

        products = await self.dal.get("products")
        self.assertEqual([p.product_name for p in products], ["Lamp", "Chair"])
        self.assertEqual(self.remote.get("products"), [])

    async def test_quota_fallback_is_reported(self):
        reported = []
        self.dal.on_fallback = reported.append
        self.assertIsNone(self.dal.last_fallback)
        with patch.object(
            self.remote, "add", side_effect=QuotaExceededError("quota exhausted")
        ):
            with self.assertLogs("datastore.selector", level="WARNING"):
                await self.dal.add("products", _product())
                await self.dal.add("products", _product(name="Chair"))

        self.assertIsInstance(self.dal.last_fallback, QuotaExceededError)
        self.assertEqual(self.dal.last_fallback.message, "quota exhausted")
        self.assertEqual(reported, [self.dal.last_fallback])

    async def test_malformed_remote_records_are_skipped(self):
        self.remote.add("products", {"productName": "No price", "category": "A", "seller": "s"})
        await self.dal.add("products", _product())

        with self.assertLogs("datastore.dal", level="WARNING"):
            products = await self.dal.get("products")
        self.assertEqual([p.product_name for p in products], ["Lamp"])

        received = []
        with self.assertLogs("datastore.dal", level="WARNING"):
            subscription = await self.dal.subscribe("products", None, received.append)
            await asyncio.sleep(0.01)
        self.assertEqual([p.product_name for p in received[0].records], ["Lamp"])
        await self.dal.add("products", _product(name="Chair"))
        await asyncio.sleep(0.01)
        subscription.unsubscribe()
        self.assertEqual(
            [p.product_name for p in received[-1].records], ["Lamp", "Chair"]
        )
        self.assertFalse(received[-1].initial)

    async def test_purchase_before_creation_is_rejected_remotely(self):
        product = _product()
        product.created_at = 1000.0
        record_id = await self.dal.add("products", product)
        await self.dal.flush()

        with self.assertRaises(ValueError):
            await self.dal.update("products", record_id, {"purchase_date": 500.0})
        await self.dal.flush()
        self.assertNotIn("purchaseDate", self.remote.get_by_id("products", record_id))
        self.assertNotIn("purchaseDate", self.local.get_by_id("products", record_id))

        with self.assertRaises(RecordNotFoundError):
            await self.dal.update("products", "missing", {"purchase_date": 500.0})

        await self.dal.update("products", record_id, {"purchase_date": 2000.0})
        self.assertEqual(self.remote.get_by_id("products", record_id)["purchaseDate"], 2000.0)

    async def test_quota_on_update_retries_locally(self):
        record_id = await self.dal.add("products", _product())
        await self.dal.flush()
        with patch.object(
            self.remote, "update", side_effect=QuotaExceededError("quota")
        ):
            await self.dal.update("products", record_id, {"sold": True})
        self.assertFalse(self.selector.remote_enabled)
        self.assertTrue(self.local.get_by_id("products", record_id)["sold"])

    async def test_quota_on_read_propagates(self):
        with patch.object(self.remote, "get", side_effect=QuotaExceededError("quota")):
            with self.assertRaises(QuotaExceededError):
                await self.dal.get("products")
        self.assertTrue(self.selector.remote_enabled)

    async def test_filter_equivalence_across_backends(self):
        catalogue = [
            _product("Calculus", 30.0, "Textbooks"),
            _product("Physics", 45.0, "Textbooks", seller="t@x.edu"),
            _product("Lamp", 12.0, "Appliances"),
            _product("Rug", 60.0, "Room Decoration", seller="t@x.edu"),
        ]
        for product in catalogue:
            await self.dal.add("products", product)
        await self.dal.flush()

        filter_sets = [
            [("category", "==", "Textbooks")],
            [("price", ">=", 30), ("price", "<", 50)],
            [("seller", "!=", "s@x.edu"), ("price", ">", 50)],
            [("category", "in", ["Appliances", "Room Decoration"]), ("seller", "==", "t@x.edu")],
            [("createdAt", ">", 0), ("price", "<", 40)],
        ]
        for filters in filter_sets:
            with self.subTest(filters=filters):
                remote_ids = {p.id for p in await self.dal.get("products", filters)}
                local_ids = {
                    r["id"] for r in self.local.get("products", compile_filters(filters))
                }
                self.assertEqual(remote_ids, local_ids)

    async def test_subscription_snapshot_and_diff(self):
        first = Message(conversation_id="c1", sender="a", recipient="b", text="hello")
        await self.dal.add("messages", first)
        expected = await self.dal.get("messages", [("conversationId", "==", "c1")])

        received = []
        subscription = await self.dal.subscribe(
            "messages", [("conversationId", "==", "c1")], received.append
        )
        await asyncio.sleep(0.01)
        self.assertEqual(received[0].records, expected)

        for index in range(3):
            await self.dal.add(
                "messages",
                Message(conversation_id="c1", sender="a", recipient="b", text=f"m{index}"),
            )
        await asyncio.sleep(0.01)
        subscription()
        await self.dal.add(
            "messages",
            Message(conversation_id="c1", sender="a", recipient="b", text="late"),
        )
        await asyncio.sleep(0.01)

        self.assertEqual([len(c.records) for c in received], [1, 2, 3, 4])
        self.assertEqual(self.remote._watchers, [])


if __name__ == "__main__":
    unittest.main()
