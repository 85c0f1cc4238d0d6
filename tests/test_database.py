import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from pymongo import ReturnDocument

from database import MemoryRepository, MongoRepository, get_repository, plan_debit, to_document
from errors import InsufficientInventory, NotFound
from schemas import Donation, Hub, TrackingStatus


def hub_doc(inventory):
    return {
        "_id": "h1",
        "name": "Hub 1",
        "location_name": "Tokyo",
        "lat": 35.0,
        "lon": 139.0,
        "contact": None,
        "inventory": inventory,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }


class TestPlanDebit(unittest.TestCase):
    def test_resolves_keys_and_reports_shortages(self):
        resolved, shortages = plan_debit({"Water": 10, "Tents": 1}, {"water": 5, "Tents": 2, "Rope": 1})
        self.assertEqual(resolved, {"Water": 5})
        self.assertEqual(shortages, {
            "Tents": {"requested": 2, "available": 1},
            "Rope": {"requested": 1, "available": 0},
        })


class TestMemoryRepository(unittest.TestCase):
    def setUp(self):
        self.repo = MemoryRepository()
        self.hub = Hub(name="Hub", location_name="Tokyo", lat=35.0, lon=139.0, inventory={"Water": 10})
        self.repo.insert(self.hub)

    def test_reads_are_copies(self):
        fetched = self.repo.get(Hub, self.hub.id)
        fetched.inventory["Water"] = 999
        self.assertEqual(self.repo.get(Hub, self.hub.id).inventory, {"Water": 10})

    def test_duplicate_insert(self):
        with self.assertRaises(ValueError):
            self.repo.insert(self.hub)

    def test_find_with_filters(self):
        pending = Donation(donor_name="A")
        done = Donation(donor_name="B", tracking_status=TrackingStatus.fulfilled, assigned_hub_id=self.hub.id)
        active = Donation(donor_name="C", tracking_status=TrackingStatus.pickup, assigned_hub_id=self.hub.id)
        for d in (pending, done, active):
            self.repo.insert(d)

        found = self.repo.find(Donation, {"assigned_hub_id": self.hub.id, "tracking_status": {"$ne": "fulfilled"}})
        self.assertEqual([d.id for d in found], [active.id])
        self.assertEqual(self.repo.count(Donation), 3)
        self.assertEqual(self.repo.count(Donation, {"tracking_status": {"$in": ["pending", "pickup"]}}), 2)

    def test_replace_and_delete(self):
        self.hub.name = "Renamed"
        self.repo.replace(self.hub)
        self.assertEqual(self.repo.get(Hub, self.hub.id).name, "Renamed")
        self.assertTrue(self.repo.delete(Hub, self.hub.id))
        self.assertFalse(self.repo.delete(Hub, self.hub.id))
        with self.assertRaises(NotFound):
            self.repo.replace(self.hub)

    def test_credit_adds_to_existing_key(self):
        hub = self.repo.credit_inventory(self.hub.id, {"water": 5, "Tents": 2})
        self.assertEqual(hub.inventory, {"Water": 15, "Tents": 2})


class TestMongoRepository(unittest.TestCase):
    def setUp(self):
        self.collection = MagicMock()
        self.db = MagicMock()
        self.db.__getitem__.return_value = self.collection
        self.repo = MongoRepository(self.db)

    def test_insert_uses_object_id_as_key(self):
        hub = Hub(name="Hub", location_name="Tokyo", lat=35.0, lon=139.0)
        self.repo.insert(hub)
        self.db.__getitem__.assert_called_with("hub")
        doc = self.collection.insert_one.call_args[0][0]
        self.assertEqual(doc["_id"], hub.id)
        self.assertNotIn("id", doc)

    def test_derived_status_is_not_stored(self):
        donation = Donation(donor_name="A")
        self.repo.insert(donation)
        doc = self.collection.insert_one.call_args[0][0]
        self.assertNotIn("allocated_status", doc)
        self.assertEqual(doc["tracking_status"], "pending")

    def test_get_maps_id(self):
        self.collection.find_one.return_value = hub_doc({"Water": 5})
        hub = self.repo.get(Hub, "h1")
        self.assertEqual(hub.id, "h1")
        self.assertEqual(hub.inventory, {"Water": 5})
        self.collection.find_one.return_value = None
        self.assertIsNone(self.repo.get(Hub, "h2"))

    def test_find_sorts_newest_first(self):
        self.collection.find.return_value.sort.return_value = [hub_doc({})]
        hubs = self.repo.find(Hub, {"location_name": "Tokyo"})
        self.collection.find.assert_called_once_with({"location_name": "Tokyo"})
        self.assertEqual([h.id for h in hubs], ["h1"])

    def test_debit_is_a_conditional_update(self):
        """The debit only matches while stock is still available"""
        self.collection.find_one.return_value = hub_doc({"Water": 100})
        self.collection.find_one_and_update.return_value = hub_doc({"Water": 50})

        self.repo.debit_inventory("h1", {"water": 50})

        self.collection.find_one_and_update.assert_called_once_with(
            {"_id": "h1", "inventory.Water": {"$gte": 50}},
            {"$inc": {"inventory.Water": -50}},
            return_document=ReturnDocument.AFTER,
        )
        self.collection.update_one.assert_not_called()

    def test_debit_to_zero_unsets_item(self):
        self.collection.find_one.return_value = hub_doc({"Water": 50})
        self.collection.find_one_and_update.return_value = hub_doc({"Water": 0})

        self.repo.debit_inventory("h1", {"Water": 50})

        self.collection.update_one.assert_called_once_with(
            {"_id": "h1", "inventory.Water": 0}, {"$unset": {"inventory.Water": ""}}
        )

    def test_debit_shortage_skips_update(self):
        self.collection.find_one.return_value = hub_doc({"Water": 50})
        with self.assertRaises(InsufficientInventory):
            self.repo.debit_inventory("h1", {"Water": 60})
        self.collection.find_one_and_update.assert_not_called()

    def test_debit_lost_race(self):
        self.collection.find_one.return_value = hub_doc({"Water": 50})
        self.collection.find_one_and_update.return_value = None
        with self.assertRaises(InsufficientInventory):
            self.repo.debit_inventory("h1", {"Water": 40})

    def test_debit_unknown_hub(self):
        self.collection.find_one.return_value = None
        with self.assertRaises(NotFound):
            self.repo.debit_inventory("h1", {"Water": 1})

    def test_replace_missing(self):
        self.collection.replace_one.return_value.matched_count = 0
        donation = Donation(donor_name="A")
        with self.assertRaises(NotFound):
            self.repo.replace(donation)
        filter_doc, doc = self.collection.replace_one.call_args[0]
        self.assertEqual(filter_doc, {"_id": donation.id})
        self.assertEqual(doc, to_document(donation))


class TestGetRepository(unittest.TestCase):
    @patch("database.Config")
    def test_memory_without_database_url(self, mock_config):
        mock_config.DATABASE_URL = None
        self.assertIsInstance(get_repository(), MemoryRepository)

    @patch("database.MongoClient")
    @patch("database.Config")
    def test_mongo_with_database_url(self, mock_config, mock_client):
        mock_config.DATABASE_URL = "mongodb://localhost:27017"
        mock_config.DATABASE_NAME = "relief"
        repo = get_repository()
        self.assertIsInstance(repo, MongoRepository)
        mock_client.assert_called_once_with("mongodb://localhost:27017", tz_aware=True)


if __name__ == '__main__':
    unittest.main()
