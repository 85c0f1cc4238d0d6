"""
Allocation Ledger

Every change to hubs, donations and victim requests goes through
AllocationLedger. It enforces the two forward-only lifecycles, debits hub
inventory when a donation is allocated and keeps concurrent updates from
overselling a hub.

Donation:        pending -> allocated -> pickup -> in_transit -> delivered -> fulfilled
Victim request:  pending -> in_progress -> fulfilled

Locks are taken per entity, always donation before hub.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from config import Config
from database import Repository
from errors import ActiveAllocationsExist, InvalidTransition, NotFound, ValidationError
from geo import nearby
from schemas import (
    DisasterEvent,
    Donation,
    DonationCreate,
    FulfilledStatus,
    GeoPoint,
    Hub,
    HubCreate,
    MatchedHub,
    TrackingEntry,
    TrackingStatus,
    TrackingUpdate,
    VictimRequest,
    VictimRequestCreate,
)
from scoring import best_match

logger = logging.getLogger(__name__)

DONATION_FLOW: Dict[TrackingStatus, Optional[TrackingStatus]] = {
    TrackingStatus.pending: TrackingStatus.allocated,
    TrackingStatus.allocated: TrackingStatus.pickup,
    TrackingStatus.pickup: TrackingStatus.in_transit,
    TrackingStatus.in_transit: TrackingStatus.delivered,
    TrackingStatus.delivered: TrackingStatus.fulfilled,
    TrackingStatus.fulfilled: None,
}

REQUEST_FLOW: Dict[FulfilledStatus, Optional[FulfilledStatus]] = {
    FulfilledStatus.pending: FulfilledStatus.in_progress,
    FulfilledStatus.in_progress: FulfilledStatus.fulfilled,
    FulfilledStatus.fulfilled: None,
}


def _check_flow(flow, states):
    missing = set(states) - set(flow)
    if missing:
        raise RuntimeError(f"No transition defined for {sorted(s.value for s in missing)}")


_check_flow(DONATION_FLOW, TrackingStatus)
_check_flow(REQUEST_FLOW, FulfilledStatus)


def holds_inventory(status: TrackingStatus) -> bool:
    """Whether a donation in this status has its items debited from a hub."""
    return status is not TrackingStatus.pending


class EntityLocks:
    """One mutex per (collection, id), dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], List] = {}

    @contextmanager
    def hold(self, kind: str, entity_id: str):
        key = (kind, entity_id)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class AllocationLedger:
    def __init__(self, repository: Repository, resolver, cutoff_km: Optional[float] = None):
        self.repository = repository
        self.resolver = resolver
        self.cutoff_km = Config.MATCH_CUTOFF_KM if cutoff_km is None else cutoff_km
        self.locks = EntityLocks()

    # ------------------ Hubs ------------------

    def add_hub(self, payload: HubCreate, actor: str) -> Hub:
        if payload.lat is None:
            place = self.resolver.locate(payload.location_name)
            lat, lon = place.lat, place.lon
        else:
            lat, lon = payload.lat, payload.lon
        hub = Hub(**payload.model_dump(exclude={"lat", "lon"}), lat=lat, lon=lon)
        self.repository.insert(hub)
        logger.info("Hub %s (%s) added by %s at %.4f, %.4f", hub.id, hub.name, actor, lat, lon)
        return hub

    def get_hub(self, hub_id: str) -> Hub:
        hub = self.repository.get(Hub, hub_id)
        if hub is None:
            raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id)
        return hub

    def list_hubs(self) -> List[Hub]:
        return self.repository.find(Hub)

    def update_hub_inventory(self, hub_id: str, inventory: Dict[str, int], actor: str) -> Hub:
        with self.locks.hold("hub", hub_id):
            hub = self.get_hub(hub_id)
            hub.inventory = dict(inventory)
            self.repository.replace(hub)
        logger.info("Inventory of hub %s set by %s: %s", hub_id, actor, inventory)
        return hub

    def delete_hub(self, hub_id: str, actor: str) -> None:
        with self.locks.hold("hub", hub_id):
            self.get_hub(hub_id)
            active = self.repository.find(
                Donation,
                {"assigned_hub_id": hub_id, "tracking_status": {"$ne": TrackingStatus.fulfilled.value}},
            )
            if active:
                logger.warning("Refusing to delete hub %s: %d active allocations", hub_id, len(active))
                raise ActiveAllocationsExist(
                    f"Hub {hub_id} still has {len(active)} active allocation(s)",
                    hub_id=hub_id,
                    donation_ids=[d.id for d in active],
                )
            self.repository.delete(Hub, hub_id)
        logger.info("Hub %s deleted by %s", hub_id, actor)

    def nearby_hubs(self, point: GeoPoint, radius_km: Optional[float] = None,
                    max_results: Optional[int] = None) -> List[Tuple[Hub, float]]:
        radius = self.cutoff_km if radius_km is None else radius_km
        return nearby(point, self.repository.find(Hub), radius, max_results)

    # ------------------ Disaster events ------------------

    def predict_location(self, text: str, max_hubs: Optional[int] = None) -> Tuple[DisasterEvent, List[Tuple[Hub, float]]]:
        resolution = self.resolver.resolve(text)
        event = DisasterEvent(
            source_text=text,
            location_name=resolution.location_name,
            lat=resolution.lat,
            lon=resolution.lon,
            disaster_type=resolution.disaster_type,
            severity=resolution.severity,
        )
        self.repository.insert(event)
        logger.info(
            "Event %s: %s in %s (%s)",
            event.id, event.disaster_type.value, event.location_name, event.severity.value,
        )
        hubs = self.nearby_hubs(
            GeoPoint(lat=event.lat, lon=event.lon),
            max_results=max_hubs or Config.NEARBY_MAX_RESULTS,
        )
        return event, hubs

    def list_events(self) -> List[DisasterEvent]:
        return self.repository.find(DisasterEvent)

    # ------------------ Donations ------------------

    def create_donation(self, payload: DonationCreate) -> Donation:
        donation = Donation(
            **payload.model_dump(),
            tracking_history=[TrackingEntry(status=TrackingStatus.pending.value, note="Donation received")],
        )
        self.repository.insert(donation)
        logger.info("Donation %s from %s: %s, amount %.2f",
                    donation.id, donation.donor_name, donation.items, donation.amount)
        return donation

    def get_donation(self, donation_id: str) -> Donation:
        donation = self.repository.get(Donation, donation_id)
        if donation is None:
            raise NotFound(f"Donation {donation_id} not found", donation_id=donation_id)
        return donation

    def list_donations(self) -> List[Donation]:
        return self.repository.find(Donation)

    def update_donation_tracking(self, donation_id: str, update: TrackingUpdate, actor: str) -> Donation:
        """Move a donation to `update.tracking_status`.

        Without `override` only the next status in DONATION_FLOW is accepted.
        Leaving `pending` debits the donation's items from the hub; an
        override back to `pending` credits them back. Failures leave both
        the donation and the hub untouched.
        """
        with self.locks.hold("donation", donation_id):
            donation = self.get_donation(donation_id)
            current = donation.tracking_status
            target = update.tracking_status
            note = update.tracking_note

            if update.override:
                if target is current:
                    raise InvalidTransition(
                        f"Donation {donation_id} is already {current.value}",
                        current=current.value, requested=target.value,
                    )
                note = f"Admin override {current.value} -> {target.value}" + (f": {note}" if note else "")
            elif DONATION_FLOW[current] is not target:
                allowed = DONATION_FLOW[current]
                logger.warning("Rejected donation %s transition %s -> %s", donation_id, current.value, target.value)
                raise InvalidTransition(
                    f"Cannot move donation from {current.value} to {target.value}",
                    current=current.value,
                    requested=target.value,
                    allowed=[allowed.value] if allowed else [],
                )

            if holds_inventory(target) and not holds_inventory(current):
                hub_id = update.hub_id or donation.assigned_hub_id
                if not hub_id:
                    raise ValidationError("A hub_id is required to allocate a donation", donation_id=donation_id)
                with self.locks.hold("hub", hub_id):
                    self.repository.debit_inventory(hub_id, donation.items)
                    updated = self._advance(donation, target, note, actor, hub_id)
                    self._save_or_restock(updated, hub_id)
                logger.info("Donation %s allocated to hub %s by %s", donation_id, hub_id, actor)
                return updated

            if holds_inventory(current) and not holds_inventory(target):
                hub_id = donation.assigned_hub_id
                with self.locks.hold("hub", hub_id):
                    if self.repository.get(Hub, hub_id) is not None:
                        self.repository.credit_inventory(hub_id, donation.items)
                    else:
                        logger.warning("Hub %s no longer exists; donation %s released without restock",
                                       hub_id, donation_id)
                    updated = self._advance(donation, target, note, actor, None)
                    self.repository.replace(updated)
                logger.info("Donation %s released from hub %s by %s", donation_id, hub_id, actor)
                return updated

            if update.hub_id and update.hub_id != donation.assigned_hub_id:
                raise ValidationError(
                    f"Donation {donation_id} is allocated to hub {donation.assigned_hub_id}",
                    donation_id=donation_id, assigned_hub_id=donation.assigned_hub_id,
                )
            hub_id = donation.assigned_hub_id
            with self.locks.hold("hub", hub_id):
                # a fulfilled donation's hub may have been deleted since
                if holds_inventory(target) and self.repository.get(Hub, hub_id) is None:
                    logger.warning("Donation %s points at deleted hub %s", donation_id, hub_id)
                    raise NotFound(f"Hub {hub_id} not found", hub_id=hub_id, donation_id=donation_id)
                updated = self._advance(donation, target, note, actor, hub_id)
                self.repository.replace(updated)
        logger.info("Donation %s moved %s -> %s by %s", donation_id, current.value, target.value, actor)
        return updated

    def _advance(self, donation: Donation, target: TrackingStatus, note: Optional[str],
                 actor: str, hub_id: Optional[str]) -> Donation:
        entry = TrackingEntry(status=target.value, note=note, actor=actor)
        return donation.model_copy(update={
            "tracking_status": target,
            "assigned_hub_id": hub_id,
            "tracking_history": donation.tracking_history + [entry],
        })

    def _save_or_restock(self, donation: Donation, hub_id: str) -> None:
        try:
            self.repository.replace(donation)
        except Exception:
            # the debit already happened; give the items back before failing
            self.repository.credit_inventory(hub_id, donation.items)
            raise

    # ------------------ Victim requests ------------------

    def create_victim_request(self, payload: VictimRequestCreate) -> VictimRequest:
        if payload.lat is None:
            place = self.resolver.locate(payload.location_name)
            lat, lon = place.lat, place.lon
        else:
            lat, lon = payload.lat, payload.lon

        candidate = best_match(
            payload.requested_items, GeoPoint(lat=lat, lon=lon), self.repository.find(Hub), self.cutoff_km
        )
        request = VictimRequest(
            **payload.model_dump(exclude={"lat", "lon"}),
            lat=lat,
            lon=lon,
            matched_hub_id=candidate.hub.id if candidate else None,
            match_score=candidate.score if candidate else None,
            match_distance_km=candidate.distance_km if candidate else None,
            status_history=[TrackingEntry(status=FulfilledStatus.pending.value, note="Request received")],
        )
        self.repository.insert(request)
        if candidate:
            logger.info("Request %s matched to hub %s (score %d, %.1f km)",
                        request.id, candidate.hub.id, candidate.score, candidate.distance_km)
        else:
            logger.info("Request %s: no hub within %.0f km", request.id, self.cutoff_km)
        return request

    def get_victim_request(self, request_id: str) -> VictimRequest:
        request = self.repository.get(VictimRequest, request_id)
        if request is None:
            raise NotFound(f"Victim request {request_id} not found", request_id=request_id)
        return request

    def list_victim_requests(self) -> List[VictimRequest]:
        return self.repository.find(VictimRequest)

    def matched_hub(self, request: VictimRequest) -> Optional[MatchedHub]:
        if not request.matched_hub_id:
            return None
        hub = self.repository.get(Hub, request.matched_hub_id)
        if hub is None:
            return None
        return MatchedHub(
            id=hub.id,
            name=hub.name,
            location_name=hub.location_name,
            lat=hub.lat,
            lon=hub.lon,
            distance_km=request.match_distance_km,
            match_score=request.match_score,
        )

    def update_request_status(self, request_id: str, status: FulfilledStatus, actor: str,
                              note: Optional[str] = None) -> VictimRequest:
        with self.locks.hold("victimrequest", request_id):
            request = self.get_victim_request(request_id)
            current = request.fulfilled_status
            if REQUEST_FLOW[current] is not status:
                allowed = REQUEST_FLOW[current]
                logger.warning("Rejected request %s transition %s -> %s", request_id, current.value, status.value)
                raise InvalidTransition(
                    f"Cannot move request from {current.value} to {status.value}",
                    current=current.value,
                    requested=status.value,
                    allowed=[allowed.value] if allowed else [],
                )
            entry = TrackingEntry(status=status.value, note=note, actor=actor)
            updated = request.model_copy(update={
                "fulfilled_status": status,
                "status_history": request.status_history + [entry],
            })
            self.repository.replace(updated)
        logger.info("Request %s moved %s -> %s by %s", request_id, current.value, status.value, actor)
        return updated
