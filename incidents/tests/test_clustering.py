"""Unit tests for the greedy clustering pass."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from fakes import T0, InMemoryIncidentStore
from incidents.fires.clustering import (
    ClusteringOutcome,
    cluster_unassigned_detections,
    select_closest_incident,
)
from incidents.fires.models import (
    STATUS_ENDED,
    TAG_EXISTING_INCIDENT,
    TAG_NEW_INCIDENT,
    DetectionAlreadyAssignedError,
    Incident,
    IncidentEndedError,
    StoredDetection,
)


def _partition(store):
    """Incident membership as a set of coordinate sets (independent of ids)."""
    groups = {}
    for d in store.detections.values():
        groups.setdefault(d.incident_id, set()).add((d.latitude, d.longitude))
    return {frozenset(members) for members in groups.values()}


def test_two_detections_200m_apart_form_one_incident(store, at):
    store.add_detection(40.0, -120.0, at(0), frp=4.0)
    store.add_detection(40.0018, -120.0, at(5), frp=6.0)

    result = cluster_unassigned_detections(store, clustering_distance_m=5000)

    assert len(store.incidents) == 1
    incident = next(iter(store.incidents.values()))
    assert incident.fire_count == 2
    assert [o.tag for o in result.outcomes] == [TAG_NEW_INCIDENT, TAG_EXISTING_INCIDENT]
    assert result.processed == 2
    assert result.errors == []


def test_two_detections_50km_apart_form_two_incidents(store, at):
    store.add_detection(40.0, -120.0, at(0))
    store.add_detection(40.45, -120.0, at(5))

    result = cluster_unassigned_detections(store, clustering_distance_m=5000)

    assert len(store.incidents) == 2
    assert sorted(i.fire_count for i in store.incidents.values()) == [1, 1]
    assert result.incidents_created == 2
    assert all(o.is_new_incident for o in result.outcomes)


def test_detections_are_processed_oldest_first(store, at):
    later = store.add_detection(40.0018, -120.0, at(30))
    earlier = store.add_detection(40.0, -120.0, at(0))

    result = cluster_unassigned_detections(store)

    assert [o.detection.id for o in result.outcomes] == [earlier.id, later.id]
    incident = next(iter(store.incidents.values()))
    assert incident.first_detected_at == at(0)
    assert incident.last_detected_at == at(30)


def test_aggregates_match_member_detections(store, at):
    rows = [
        (40.02, -120.0, 30, 7.25),
        (40.0, -120.0, 0, 5.0),
        (41.0, -121.0, 5, 3.0),
        (40.01, -120.01, 10, 12.5),
        (40.005, -119.995, 20, 0.0),
        (41.01, -121.0, 15, 9.0),
    ]
    for lat, lon, minute, frp in rows:
        store.add_detection(lat, lon, at(minute), frp=frp)

    cluster_unassigned_detections(store, clustering_distance_m=5000)

    assert len(store.incidents) == 2
    for incident_id, incident in store.incidents.items():
        members = store.members(incident_id)
        frps = [m.frp for m in members]
        assert incident.fire_count == len(members)
        assert incident.total_frp == pytest.approx(sum(frps))
        assert incident.min_frp == min(frps)
        assert incident.max_frp == max(frps)
        assert incident.avg_frp == pytest.approx(sum(frps) / len(frps))
        assert incident.min_lat == min(m.latitude for m in members)
        assert incident.max_lat == max(m.latitude for m in members)
        assert incident.min_lon == min(m.longitude for m in members)
        assert incident.max_lon == max(m.longitude for m in members)
        assert incident.first_detected_at == min(m.detected_at for m in members)
        assert incident.last_detected_at == max(m.detected_at for m in members)


def test_clustering_is_deterministic_across_runs(at):
    rows = [
        (40.0, -120.0, 0),
        (40.03, -120.0, 1),
        (40.06, -120.0, 2),
        (40.5, -120.0, 3),
        (40.52, -120.01, 4),
        (40.09, -120.0, 5),
    ]
    first, second = InMemoryIncidentStore(), InMemoryIncidentStore()
    for lat, lon, minute in rows:
        first.add_detection(lat, lon, at(minute))
    for lat, lon, minute in reversed(rows):
        second.add_detection(lat, lon, at(minute))

    cluster_unassigned_detections(first, clustering_distance_m=5000)
    cluster_unassigned_detections(second, clustering_distance_m=5000)

    assert len(first.incidents) == len(second.incidents)
    assert _partition(first) == _partition(second)


def test_rerun_skips_assigned_detections(store, at):
    store.add_detection(40.0, -120.0, at(0))
    store.add_detection(40.0018, -120.0, at(5))
    cluster_unassigned_detections(store)
    before = {k: (v.fire_count, v.total_frp) for k, v in store.incidents.items()}

    second = cluster_unassigned_detections(store)

    assert second.processed == 0
    assert {k: (v.fire_count, v.total_frp) for k, v in store.incidents.items()} == before


def test_equidistant_candidates_resolve_to_lowest_incident_id(store, at):
    store.add_detection(0.0, 20.0, at(0))
    store.add_detection(0.0, 21.0, at(1))
    middle = store.add_detection(0.0, 20.5, at(2))

    result = cluster_unassigned_detections(store, clustering_distance_m=60_000)

    assert len(store.incidents) == 2
    assert result.outcomes[-1].detection.id == middle.id
    assert result.outcomes[-1].incident_id == 1
    assert result.outcomes[-1].tag == TAG_EXISTING_INCIDENT


def test_select_closest_incident_tie_ignores_candidate_order():
    seed_a = StoredDetection(id=1, latitude=0.0, longitude=20.0, detected_at=T0)
    seed_b = StoredDetection(id=2, latitude=0.0, longitude=21.0, detected_at=T0)
    incident_a = Incident.seed(seed_a)
    incident_a.id = 7
    incident_b = Incident.seed(seed_b)
    incident_b.id = 3

    chosen = select_closest_incident([incident_a, incident_b], 0.0, 20.5)

    assert chosen is incident_b


def test_closest_candidate_wins(store, at):
    store.add_detection(40.0, -120.0, at(0))
    store.add_detection(40.06, -120.0, at(1))
    near_second = store.add_detection(40.045, -120.0, at(2))

    result = cluster_unassigned_detections(store, clustering_distance_m=5000)

    assert result.outcomes[-1].detection.id == near_second.id
    assert result.outcomes[-1].incident_id == 2


def test_ended_incident_is_not_a_candidate(store, at):
    store.add_detection(40.0, -120.0, at(0))
    cluster_unassigned_detections(store)
    store.mark_ended(1, at(60))

    store.add_detection(40.0005, -120.0, at(90))
    result = cluster_unassigned_detections(store)

    assert result.outcomes[0].tag == TAG_NEW_INCIDENT
    assert store.incidents[1].status == STATUS_ENDED
    assert store.incidents[1].fire_count == 1


def test_incident_outside_expiry_window_is_not_a_candidate(store, at):
    store.add_detection(40.0, -120.0, at(0))
    store.add_detection(40.0005, -120.0, at(0) + timedelta(hours=23))
    store.add_detection(40.001, -120.0, at(0) + timedelta(hours=23 + 30))

    result = cluster_unassigned_detections(store, expiry_hours=24)

    assert [o.tag for o in result.outcomes] == [TAG_NEW_INCIDENT, TAG_EXISTING_INCIDENT, TAG_NEW_INCIDENT]


def test_domain_errors_are_collected_and_batch_continues(store, at):
    class RacingStore(InMemoryIncidentStore):
        def attach_detection(self, incident, detection):
            if detection.id == 2:
                raise DetectionAlreadyAssignedError("Detection 2 is already assigned")
            super().attach_detection(incident, detection)

    racing = RacingStore()
    racing.add_detection(40.0, -120.0, at(0))
    racing.add_detection(40.001, -120.0, at(1))
    racing.add_detection(40.002, -120.0, at(2))

    result = cluster_unassigned_detections(racing)

    assert [e.detection_id for e in result.errors] == [2]
    assert [o.detection.id for o in result.outcomes] == [1, 3]
    assert result.to_metadata()["errors"][0]["detection_id"] == 2


def test_storage_errors_propagate(at):
    class BrokenStore(InMemoryIncidentStore):
        def find_candidate_incidents(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("server closed the connection"))

    broken = BrokenStore()
    broken.add_detection(40.0, -120.0, at(0))

    with pytest.raises(OperationalError):
        cluster_unassigned_detections(broken)


def test_absorb_refuses_ended_incident():
    incident = Incident.seed(StoredDetection(id=1, latitude=1.0, longitude=2.0, detected_at=T0))
    incident.id = 1
    incident.status = STATUS_ENDED
    incident.ended_at = T0

    with pytest.raises(IncidentEndedError):
        incident.absorb(StoredDetection(id=2, latitude=1.0, longitude=2.0, detected_at=T0))


def test_absorb_keeps_last_detected_at_monotonic():
    incident = Incident.seed(StoredDetection(id=1, latitude=1.0, longitude=2.0, detected_at=T0, frp=2.0))
    incident.absorb(StoredDetection(id=2, latitude=1.01, longitude=2.0, detected_at=T0 - timedelta(hours=1), frp=4.0))

    assert incident.last_detected_at == T0
    assert incident.first_detected_at == T0 - timedelta(hours=1)
    assert incident.center == pytest.approx((1.005, 2.0))
    assert incident.avg_frp == pytest.approx(3.0)


def test_outcome_round_trips_through_job_arguments(at):
    detection = StoredDetection(id=5, latitude=1.5, longitude=2.5, detected_at=at(3), frp=8.0, incident_id=9)
    outcome = ClusteringOutcome(detection=detection, incident_id=9, tag=TAG_NEW_INCIDENT)

    restored = ClusteringOutcome.from_dict(outcome.to_dict())

    assert restored == outcome


def test_rejects_non_positive_distance(store):
    with pytest.raises(ValueError):
        cluster_unassigned_detections(store, clustering_distance_m=0)
