"""Unit tests for the moderation engine.

Tests for:
- User and address bans
- User deletion with identity-provider cascade
- License issuance
- Admin flag changes and subject listing
"""

from datetime import timedelta
from unittest import mock

import pytest

from chatwarden.service.audit import AuditSink
from chatwarden.service.errors import TargetNotFound, ValidationFailed
from chatwarden.service.moderation import (
    ModerationEngine,
    generate_license_key,
    license_fingerprint,
)
from chatwarden.service.privilege import AdminIdentity
from chatwarden.storage.errors import ConstraintViolation
from chatwarden.storage.memory import MemoryStore
from chatwarden.storage.models import (
    ADDRESS_BANS,
    AUDIT_LOG,
    LICENSES,
    SUBJECTS,
    USER_BANS,
    BanRecord,
    License,
)

ADMIN = AdminIdentity(admin_id="admin-00000001", email="admin@example.com")


class RecordingProvider:
    def __init__(self, fail=False):
        self.deleted = []
        self.fail = fail

    async def verify_token(self, token):
        raise NotImplementedError

    async def delete_account(self, subject_id):
        if self.fail:
            raise RuntimeError("provider down")
        self.deleted.append(subject_id)


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create(SUBJECTS, {"id": "target-0000001", "email": "t@example.com", "is_admin": False}, key="target-0000001")
    return store


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def engine(store, provider):
    return ModerationEngine(store, AuditSink(store), identity_provider=provider)


class TestBanUser:
    def test_creates_ban_with_expiry(self, store, engine):
        ban_id = engine.ban_user(ADMIN, "target-0000001", "spamming links", 7)
        doc = store.get(USER_BANS, ban_id)
        ban = BanRecord.from_document(doc, "user_id")
        assert ban.target == "target-0000001"
        assert ban.reason == "spamming links"
        assert ban.banned_by == ADMIN.admin_id
        assert ban.expires_at - ban.banned_at == timedelta(days=7)

    def test_unknown_target_creates_nothing(self, store, engine):
        with pytest.raises(TargetNotFound):
            engine.ban_user(ADMIN, "nonexistent-user-id-000", "spam", 7)
        assert store.find(USER_BANS) == []
        assert store.find(AUDIT_LOG) == []

    def test_writes_one_audit_entry(self, store, engine):
        engine.ban_user(ADMIN, "target-0000001", "spamming links", 7)
        entries = store.find(AUDIT_LOG)
        assert len(entries) == 1
        assert entries[0]["action"] == "ban_user"
        assert entries[0]["target"] == "target-0000001"
        assert entries[0]["admin_id"] == ADMIN.admin_id


class TestBanIP:
    def test_creates_address_ban(self, store, engine):
        ban_id = engine.ban_ip(ADMIN, "10.0.0.9", "credential stuffing", 1)
        doc = store.get(ADDRESS_BANS, ban_id)
        assert doc["ip_address"] == "10.0.0.9"
        assert doc["banned_by"] == ADMIN.admin_id
        assert store.find(AUDIT_LOG, action="ban_ip")[0]["target"] == "10.0.0.9"

    def test_ip_ban_needs_no_subject(self, engine):
        assert engine.ban_ip(ADMIN, "2001:db8::1", "abuse reports", 30)


class TestDeleteUser:
    async def test_removes_subject_and_cascades(self, store, engine, provider):
        await engine.delete_user(ADMIN, "target-0000001")
        assert store.get(SUBJECTS, "target-0000001") is None
        assert provider.deleted == ["target-0000001"]
        assert store.find(AUDIT_LOG, action="delete_user")

    async def test_unknown_target(self, store, engine, provider):
        with pytest.raises(TargetNotFound):
            await engine.delete_user(ADMIN, "nonexistent-user-id-000")
        assert provider.deleted == []
        assert store.find(AUDIT_LOG) == []

    async def test_provider_failure_is_not_raised(self, store):
        engine = ModerationEngine(store, AuditSink(store), identity_provider=RecordingProvider(fail=True))
        await engine.delete_user(ADMIN, "target-0000001")
        assert store.get(SUBJECTS, "target-0000001") is None
        assert store.find(AUDIT_LOG, action="delete_user")

    async def test_existing_bans_are_kept(self, store, engine):
        ban_id = engine.ban_user(ADMIN, "target-0000001", "spamming links", 7)
        await engine.delete_user(ADMIN, "target-0000001")
        assert store.get(USER_BANS, ban_id) is not None


class TestCreateLicense:
    def test_stored_record_matches_input(self, store, engine):
        key = engine.create_license(ADMIN, "Pro", 365)
        license_ = License.from_document(store.get(LICENSES, key))
        assert license_.plan == "Pro"
        assert license_.validity_days == 365
        assert license_.issued_by == ADMIN.admin_id
        assert license_.expires_at - license_.issued_at == timedelta(days=365)
        assert license_.redeemed_by is None

    def test_keys_are_unique(self, engine):
        keys = {engine.create_license(ADMIN, "Free", 30) for _ in range(25)}
        assert len(keys) == 25

    def test_key_never_reported_in_audit(self, store, engine):
        key = engine.create_license(ADMIN, "Classic", 30)
        entry = store.find(AUDIT_LOG, action="create_license")[0]
        assert key not in entry["target"]
        assert key not in entry["detail"]
        assert entry["target"] == license_fingerprint(key)

    def test_key_format(self):
        key = generate_license_key()
        groups = key.split("-")
        assert len(groups) == 4
        assert all(len(group) == 8 for group in groups)

    def test_unknown_plan(self, store, engine):
        with pytest.raises(ValidationFailed):
            engine.create_license(ADMIN, "Enterprise", 30)
        assert store.find(LICENSES) == []

    def test_retries_on_key_collision(self, store, engine):
        real_create = store.create
        calls = {"n": 0}

        def flaky(collection, document, key=None):
            if collection == LICENSES and calls["n"] == 0:
                calls["n"] += 1
                raise ConstraintViolation("document already exists", {})
            return real_create(collection, document, key=key)

        with mock.patch.object(store, "create", side_effect=flaky):
            key = engine.create_license(ADMIN, "Pro", 10)
        assert store.get(LICENSES, key)["plan"] == "Pro"


class TestSetAdmin:
    def test_grant_and_revoke(self, store, engine):
        subject = engine.set_admin(ADMIN, "target-0000001", True)
        assert subject.is_admin is True
        assert store.get(SUBJECTS, "target-0000001")["is_admin"] is True
        engine.set_admin(ADMIN, "target-0000001", False)
        assert store.get(SUBJECTS, "target-0000001")["is_admin"] is False
        actions = sorted(entry["action"] for entry in store.find(AUDIT_LOG))
        assert actions == ["grant_admin", "revoke_admin"]

    def test_unknown_target(self, engine):
        with pytest.raises(TargetNotFound):
            engine.set_admin(ADMIN, "nonexistent-user-id-000", True)


class TestListSubjects:
    def test_lists_and_limits(self, store, engine):
        for i in range(5):
            store.create(SUBJECTS, {"id": f"extra-{i:08d}", "email": ""}, key=f"extra-{i:08d}")
        assert len(engine.list_subjects(ADMIN)) == 6
        assert len(engine.list_subjects(ADMIN, limit=2)) == 2

    def test_listing_is_not_audited(self, store, engine):
        engine.list_subjects(ADMIN)
        assert store.find(AUDIT_LOG) == []
