"""Dashboard counters, recomputed from the store on every call."""

from collections import Counter

from database import Repository
from schemas import DisasterEvent, Donation, FulfilledStatus, Hub, Stats, TrackingStatus, VictimRequest


def compute_stats(repository: Repository) -> Stats:
    donations = repository.find(Donation)
    requests = repository.find(VictimRequest)

    donation_counts = Counter(d.tracking_status.value for d in donations)
    request_counts = Counter(r.fulfilled_status.value for r in requests)

    return Stats(
        total_hubs=repository.count(Hub),
        total_donations=len(donations),
        total_requests=len(requests),
        total_events=repository.count(DisasterEvent),
        pending_requests=request_counts.get(FulfilledStatus.pending.value, 0),
        total_donated_amount=round(sum(d.amount for d in donations), 2),
        donations_by_status={s.value: donation_counts.get(s.value, 0) for s in TrackingStatus},
        requests_by_status={s.value: request_counts.get(s.value, 0) for s in FulfilledStatus},
    )
