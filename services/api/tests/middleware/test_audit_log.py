"""
AuditLog writes and request metadata extraction.
"""

from unittest.mock import MagicMock

from sqlalchemy import select

from services.api.db.models import AuditLog
from services.api.middleware.audit import AuditLogger, audit_action, extract_client_info
from services.api.middleware.sentry import _strip_sensitive_data


def _request(headers: dict, host: str | None = "10.0.0.9") -> MagicMock:
    request = MagicMock()
    request.headers = headers
    request.client = MagicMock(host=host) if host else None
    return request


# ---------------------------------------------------------------------------
# AuditLogger.log
# ---------------------------------------------------------------------------

class TestAuditLoggerWrite:
    async def test_log_persists_entry(self, db):
        entry_id = await AuditLogger(db).log(
            actor_id="admin-001",
            action="vendors.merge",
            target_type="vendors",
            target_id="vendor-001",
            ip_address="192.168.1.1",
            user_agent="TestAgent/1.0",
            before={"businessName": "Kettle Korn"},
            after={"deletedId": "vendor-002"},
        )

        assert len(entry_id) == 36
        entry = (await db.execute(select(AuditLog).where(AuditLog.id == entry_id))).scalars().one()
        assert entry.action == "vendors.merge"
        assert entry.before == {"businessName": "Kettle Korn"}
        assert entry.after == {"deletedId": "vendor-002"}
        assert entry.createdAt is not None

    async def test_audit_action_uses_request_metadata(self, db):
        request = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "User-Agent": "Browser/2"})

        entry_id = await audit_action(
            db=db,
            request=request,
            actor_id="admin-001",
            action="events.merge",
            target_type="events",
            target_id="event-001",
        )

        entry = (await db.execute(select(AuditLog).where(AuditLog.id == entry_id))).scalars().one()
        assert entry.ipAddress == "203.0.113.5"
        assert entry.userAgent == "Browser/2"
        assert entry.before is None


# ---------------------------------------------------------------------------
# extract_client_info
# ---------------------------------------------------------------------------

class TestExtractClientInfo:
    def test_proxy_client_ip_wins(self):
        request = _request({"X-Admin-Client-IP": "198.51.100.7", "X-Forwarded-For": "203.0.113.5"})
        assert extract_client_info(request)[0] == "198.51.100.7"

    def test_falls_back_to_peer(self):
        assert extract_client_info(_request({})) == ("10.0.0.9", "unknown")

    def test_no_client(self):
        assert extract_client_info(_request({}, host=None))[0] == "unknown"


# ---------------------------------------------------------------------------
# Sentry scrubbing
# ---------------------------------------------------------------------------

class TestSentryScrub:
    def test_sensitive_headers_filtered(self):
        event = {
            "request": {"headers": {"Authorization": "Bearer x", "X-Admin-User-Id": "admin-1", "Accept": "*/*"}},
            "breadcrumbs": {"values": [{"data": {"headers": {"Cookie": "session=1"}}}]},
        }

        scrubbed = _strip_sensitive_data(event, {})

        assert scrubbed["request"]["headers"] == {
            "Authorization": "[FILTERED]",
            "X-Admin-User-Id": "[FILTERED]",
            "Accept": "*/*",
        }
        assert scrubbed["breadcrumbs"]["values"][0]["data"]["headers"]["Cookie"] == "[FILTERED]"

    def test_event_without_request(self):
        assert _strip_sensitive_data({"message": "boom"}, {}) == {"message": "boom"}
