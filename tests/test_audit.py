"""Unit tests for the audit sink."""

from unittest import mock

import pytest

from chatwarden.service.audit import AuditAction, AuditSink, format_admin_action
from chatwarden.service.privilege import AdminIdentity
from chatwarden.storage.memory import MemoryStore
from chatwarden.storage.models import AUDIT_LOG, AuditEntry

ADMIN = AdminIdentity(admin_id="admin-00000001")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestFormat:
    def test_line_shape(self):
        line = format_admin_action("admin-00000001", AuditAction.BAN_USER, "user-00000009", "spam")
        assert line == "[ADMIN_ACTION] admin-00000001 banned user user-00000009. Reason: spam"

    @pytest.mark.parametrize("action", list(AuditAction))
    def test_every_action_has_a_verb(self, action):
        assert format_admin_action("a", action, "t", "r").startswith("[ADMIN_ACTION] a ")


class TestAuditSink:
    def test_record_persists_entry(self, store):
        entry_id = AuditSink(store).record(ADMIN, AuditAction.BAN_IP, "1.2.3.4", "abuse")
        entry = AuditEntry.from_document(store.get(AUDIT_LOG, entry_id))
        assert entry.admin_id == ADMIN.admin_id
        assert entry.action == "ban_ip"
        assert entry.target == "1.2.3.4"
        assert entry.detail == "abuse"

    def test_store_failure_is_swallowed(self, store):
        with mock.patch.object(store, "create", side_effect=RuntimeError("disk full")):
            assert AuditSink(store).record(ADMIN, AuditAction.DELETE_USER, "user-00000009") is None

    def test_emits_admin_action_line(self, store):
        sink = AuditSink(store)
        with mock.patch("chatwarden.service.audit.logger") as log:
            sink.record(ADMIN, AuditAction.GRANT_ADMIN, "user-00000009", "is_admin=true")
        message = log.info.call_args.args[0]
        assert message == "[ADMIN_ACTION] admin-00000001 granted admin to user-00000009. Reason: is_admin=true"
