"""Unit tests for the SQL incident store, location store and outbox notifier."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from incidents.fires.models import DetectionAlreadyAssignedError, Incident, IncidentEndedError, StoredDetection
from incidents.fires.repo import SqlIncidentStore
from incidents.notifications.locations import SqlLocationStore
from incidents.notifications.models import NotificationDeliveryError, NotificationRequest
from incidents.notifications.notifier import OutboxNotifier

T0 = datetime(2026, 8, 1, 12, 0, tzinfo=timezone.utc)


def _mock_engine(target):
    """Patch `get_engine` in `target` and return the connection used inside `begin()`."""
    patcher = patch(f"{target}.get_engine")
    mock_engine = patcher.start()
    conn = MagicMock()
    mock_engine.return_value.begin.return_value.__enter__.return_value = conn
    return patcher, conn


@pytest.fixture
def repo_conn():
    patcher, conn = _mock_engine("incidents.fires.repo")
    yield conn
    patcher.stop()


def _incident(incident_id=1):
    detection = StoredDetection(id=1, latitude=40.0, longitude=-120.0, detected_at=T0, frp=3.0)
    incident = Incident.seed(detection)
    incident.id = incident_id
    return incident


def test_create_incident_inserts_and_assigns_in_one_transaction(repo_conn):
    insert_result = MagicMock()
    insert_result.scalar_one.return_value = 42
    assign_result = MagicMock(rowcount=1)
    repo_conn.execute.side_effect = [insert_result, assign_result]
    detection = StoredDetection(id=7, latitude=40.0, longitude=-120.0, detected_at=T0, frp=3.0)

    created = SqlIncidentStore().create_incident(Incident.seed(detection), detection)

    assert created.id == 42
    assert repo_conn.execute.call_count == 2
    insert_params = repo_conn.execute.call_args_list[0][0][1]
    assert insert_params["center_latitude"] == 40.0
    assert insert_params["fire_count"] == 1
    assign_params = repo_conn.execute.call_args_list[1][0][1]
    assert assign_params == {"incident_id": 42, "detection_id": 7}


def test_create_incident_raises_when_detection_was_taken(repo_conn):
    insert_result = MagicMock()
    insert_result.scalar_one.return_value = 42
    repo_conn.execute.side_effect = [insert_result, MagicMock(rowcount=0)]
    detection = StoredDetection(id=7, latitude=40.0, longitude=-120.0, detected_at=T0)

    with pytest.raises(DetectionAlreadyAssignedError):
        SqlIncidentStore().create_incident(Incident.seed(detection), detection)


def test_attach_detection_guards_assignment_then_status(repo_conn):
    detection = StoredDetection(id=8, latitude=40.001, longitude=-120.0, detected_at=T0)
    store = SqlIncidentStore()

    repo_conn.execute.side_effect = [MagicMock(rowcount=0)]
    with pytest.raises(DetectionAlreadyAssignedError):
        store.attach_detection(_incident(), detection)

    repo_conn.execute.side_effect = [MagicMock(rowcount=1), MagicMock(rowcount=0)]
    with pytest.raises(IncidentEndedError):
        store.attach_detection(_incident(), detection)

    repo_conn.execute.side_effect = [MagicMock(rowcount=1), MagicMock(rowcount=1)]
    store.attach_detection(_incident(), detection)
    update_sql = str(repo_conn.execute.call_args_list[-1][0][0])
    assert "status = :status" in update_sql


def test_find_candidates_widens_bounds_by_distance(repo_conn):
    repo_conn.execute.return_value.fetchall.return_value = []

    SqlIncidentStore().find_candidate_incidents(0.0, 10.0, distance_m=5550.0, active_since=T0)

    params = repo_conn.execute.call_args[0][1]
    assert params["d_lat"] == pytest.approx(0.05)
    assert params["d_lon"] == pytest.approx(0.05)
    assert params["active_since"] == T0


def test_list_unassigned_detections_orders_oldest_first_with_limit(repo_conn):
    row = MagicMock(id=3, latitude=40.0, longitude=-120.0, detected_at=T0, frp=1.5)
    repo_conn.execute.return_value.fetchall.return_value = [row]

    detections = SqlIncidentStore().list_unassigned_detections(limit=10)

    sql = str(repo_conn.execute.call_args[0][0])
    assert "incident_id IS NULL" in sql
    assert "ORDER BY detected_at ASC, id ASC" in sql
    assert repo_conn.execute.call_args[0][1] == {"limit": 10}
    assert detections == [StoredDetection(id=3, latitude=40.0, longitude=-120.0, detected_at=T0, frp=1.5)]


def test_mark_ended_only_touches_active_rows(repo_conn):
    repo_conn.execute.return_value = MagicMock(rowcount=0)

    assert SqlIncidentStore().mark_ended(5, T0) is False
    assert "status = 'active'" in str(repo_conn.execute.call_args[0][0])


def test_purgeable_ids_require_ended_notification(repo_conn):
    repo_conn.execute.return_value.fetchall.return_value = [MagicMock(id=1), MagicMock(id=2)]

    ids = SqlIncidentStore().list_purgeable_incident_ids(T0, limit=1000)

    assert ids == [1, 2]
    sql = str(repo_conn.execute.call_args[0][0])
    assert "ended_notified_at IS NOT NULL" in sql
    assert repo_conn.execute.call_args[0][1] == {"cutoff": T0, "limit": 1000}


def test_delete_incidents_removes_detections_and_incidents(repo_conn):
    repo_conn.execute.side_effect = [MagicMock(rowcount=12), MagicMock(rowcount=2)]

    assert SqlIncidentStore().delete_incidents([1, 2]) == (2, 12)
    assert SqlIncidentStore().delete_incidents([]) == (0, 0)
    assert repo_conn.execute.call_count == 2


def test_count_active_incidents_near_excludes_given_incident(repo_conn):
    repo_conn.execute.return_value.scalar_one.return_value = 2
    store = SqlIncidentStore()

    assert store.count_active_incidents_near(40.0, -120.0, 8000.0, exclude_incident_id=9) == 2
    sql = str(repo_conn.execute.call_args[0][0])
    assert "id <> :exclude_incident_id" in sql
    assert repo_conn.execute.call_args[0][1]["exclude_incident_id"] == 9

    store.count_active_incidents_near(40.0, -120.0, 8000.0)
    assert "exclude_incident_id" not in str(repo_conn.execute.call_args[0][0])


def test_location_store_uses_min_radius_for_small_incidents():
    patcher, conn = _mock_engine("incidents.notifications.locations")
    try:
        conn.execute.return_value.fetchall.return_value = [
            MagicMock(id=1, user_id=10, latitude=40.0, longitude=-120.0, radius_m=3000.0)
        ]
        conn.execute.return_value.fetchall.return_value[0].name = "Home"

        locations = SqlLocationStore().find_locations_near_incident(_incident(), 5000.0)
    finally:
        patcher.stop()

    assert conn.execute.call_args[0][1]["radius_m"] == 5000.0
    assert locations[0].name == "Home"
    assert locations[0].user_id == 10


def _request():
    return NotificationRequest(
        user_id=10,
        location_id=1,
        incident_id=3,
        kind="new_incident",
        new_detection_count=2,
        incident_detection_count=2,
        other_active_incident_count=0,
        payload={"title": "Fire Alert: 2 new fires detected"},
        batch_key="detections:abc",
    )


def test_outbox_notifier_writes_request():
    patcher, conn = _mock_engine("incidents.notifications.notifier")
    try:
        conn.execute.return_value.scalar_one_or_none.return_value = 99
        delivery = OutboxNotifier().send(_request())
    finally:
        patcher.stop()

    assert delivery.sent == 1
    assert delivery.failed == 0
    params = conn.execute.call_args[0][1]
    assert params["payload"] == {"title": "Fire Alert: 2 new fires detected"}
    assert params["kind"] == "new_incident"
    assert params["batch_key"] == "detections:abc"
    assert "ON CONFLICT (batch_key, user_id, location_id, incident_id) DO NOTHING" in str(conn.execute.call_args[0][0])


def test_outbox_notifier_reports_repeat_of_batch_group_as_already_sent():
    patcher, conn = _mock_engine("incidents.notifications.notifier")
    try:
        conn.execute.return_value.scalar_one_or_none.return_value = None
        delivery = OutboxNotifier().send(_request())
    finally:
        patcher.stop()

    assert delivery.already_sent is True
    assert delivery.sent == 0
    assert delivery.failed == 0


def test_outbox_notifier_wraps_storage_errors():
    patcher, conn = _mock_engine("incidents.notifications.notifier")
    try:
        conn.execute.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
        with pytest.raises(NotificationDeliveryError):
            OutboxNotifier().send(_request())
    finally:
        patcher.stop()
