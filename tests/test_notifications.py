"""
Tests for the add-on notification emitter.
"""

from unittest.mock import patch

import pytest

from apps.notifications.models import Notification
from apps.notifications.services import notify, render_message


class TestRenderMessage:
    def test_renders_payload(self):
        title, message = render_message(
            Notification.LOW_BALANCE, {"addon_name": "SMS Credits", "remaining_credits": 7}
        )
        assert title == "Low Balance Alert"
        assert message == "Your SMS Credits balance is running low (7 credits remaining)."

    def test_missing_keys_render_as_placeholder(self):
        _, message = render_message(Notification.ADDON_SUSPENDED, {"addon_name": "API Access"})
        assert message == "API Access has been suspended: -"

    def test_unknown_event_type(self):
        title, message = render_message("something_else", {})
        assert title == "Notification"
        assert message == "something_else"


@pytest.mark.django_db
class TestNotify:
    """Test recording notifications."""

    def test_notify_creates_notification(self, tenant):
        notification = notify(
            tenant.id,
            Notification.PAYMENT_FAILED,
            {"addon_name": "Extra Branches", "next_retry_at": "2026-01-17"},
        )

        assert notification.tenant_id == tenant.id
        assert notification.title == "Payment Failed"
        assert "2026-01-17" in notification.message
        assert notification.payload["addon_name"] == "Extra Branches"
        assert not notification.is_read

    def test_failure_is_swallowed(self, tenant):
        """A notification failure never propagates to the caller."""
        with patch.object(Notification.objects, "create", side_effect=RuntimeError("db down")):
            assert notify(tenant.id, Notification.ADDON_ACTIVATED, {"addon_name": "X"}) is None

    def test_mark_as_read(self, tenant):
        notification = notify(tenant.id, Notification.ADDON_EXPIRED, {"addon_name": "X"})

        notification.mark_as_read()

        notification.refresh_from_db()
        assert notification.is_read
        assert notification.read_at is not None
