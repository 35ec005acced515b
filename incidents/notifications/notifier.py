"""Outbox notifier: persist requests for the external delivery service."""

from __future__ import annotations

import logging

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError

from incidents.db import get_engine
from incidents.notifications.models import DeliveryResult, NotificationDeliveryError, NotificationRequest

LOGGER = logging.getLogger(__name__)

_INSERT_OUTBOX = text(
    """
    INSERT INTO notification_outbox (
        user_id,
        location_id,
        incident_id,
        kind,
        new_detection_count,
        incident_detection_count,
        other_active_incident_count,
        payload,
        batch_key,
        status
    )
    VALUES (
        :user_id,
        :location_id,
        :incident_id,
        :kind,
        :new_detection_count,
        :incident_detection_count,
        :other_active_incident_count,
        :payload,
        :batch_key,
        'pending'
    )
    ON CONFLICT (batch_key, user_id, location_id, incident_id) DO NOTHING
    RETURNING id
    """
).bindparams(bindparam("payload", type_=JSONB))


class OutboxNotifier:
    """Writes each request to `notification_outbox`; a delivery worker fans out per device.

    The outbox row counts as one "sent" handoff. Rows are unique per batch key and
    group, so a retried job finds its earlier rows and reports `already_sent`
    instead of queueing a duplicate. A storage failure is reported as
    `NotificationDeliveryError` so the orchestrator can isolate it to the group.
    """

    def send(self, request: NotificationRequest) -> DeliveryResult:
        params = request.to_dict()
        try:
            with get_engine().begin() as conn:
                outbox_id = conn.execute(_INSERT_OUTBOX, params).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise NotificationDeliveryError(
                f"Could not queue notification for user {request.user_id}: {exc.__class__.__name__}"
            ) from exc
        if outbox_id is None:
            LOGGER.info("Notification already queued for batch=%s key=%s", request.batch_key, request.key)
            return DeliveryResult(sent=0, failed=0, already_sent=True)
        LOGGER.debug("Queued notification outbox_id=%s key=%s kind=%s", outbox_id, request.key, request.kind)
        return DeliveryResult(sent=1, failed=0)
