import unittest

from database import MemoryRepository
from gazetteer import Gazetteer
from ledger import AllocationLedger
from schemas import DonationCreate, HubCreate, TrackingStatus, TrackingUpdate, VictimRequestCreate
from stats import compute_stats


class TestStats(unittest.TestCase):
    def setUp(self):
        self.repository = MemoryRepository()
        self.ledger = AllocationLedger(self.repository, Gazetteer())

    def test_empty_store(self):
        stats = compute_stats(self.repository)
        self.assertEqual(
            (stats.total_hubs, stats.total_donations, stats.total_requests, stats.total_events), (0, 0, 0, 0)
        )
        self.assertEqual(stats.donations_by_status["pending"], 0)

    def test_counts_follow_ledger(self):
        hub = self.ledger.add_hub(HubCreate(name="H", location_name="Tokyo", inventory={"Water": 100}), "admin")
        first = self.ledger.create_donation(DonationCreate(donor_name="A", amount=25.5, items={"Water": 10}))
        self.ledger.create_donation(DonationCreate(donor_name="B", amount=10))
        self.ledger.create_victim_request(VictimRequestCreate(victim_name="V", location_name="Tokyo"))
        self.ledger.predict_location("Flooding in Osaka")

        stats = compute_stats(self.repository)
        self.assertEqual(stats.total_hubs, 1)
        self.assertEqual(stats.total_donations, 2)
        self.assertEqual(stats.total_requests, 1)
        self.assertEqual(stats.total_events, 1)
        self.assertEqual(stats.pending_requests, 1)
        self.assertEqual(stats.total_donated_amount, 35.5)
        self.assertEqual(stats.donations_by_status["pending"], 2)

        self.ledger.update_donation_tracking(
            first.id, TrackingUpdate(tracking_status=TrackingStatus.allocated, hub_id=hub.id), "admin"
        )
        stats = compute_stats(self.repository)
        self.assertEqual(stats.donations_by_status["pending"], 1)
        self.assertEqual(stats.donations_by_status["allocated"], 1)


if __name__ == '__main__':
    unittest.main()
