"""Tests for the first-admin bootstrap script."""

import pytest

from chatwarden.storage.models import SUBJECTS
from scripts.bootstrap_admin import bootstrap_admin, main


class TestBootstrapAdmin:
    def test_creates_admin(self, runtime):
        result = bootstrap_admin("ops-admin-0001", "ops@example.com")
        assert result["status"] == "created"
        doc = runtime.store.get(SUBJECTS, "ops-admin-0001")
        assert doc["is_admin"] is True
        assert doc["email"] == "ops@example.com"

    def test_promotes_existing(self, runtime, make_subject):
        subject_id = make_subject()
        assert bootstrap_admin(subject_id)["status"] == "promoted"
        assert runtime.store.get(SUBJECTS, subject_id)["is_admin"] is True

    def test_already_admin(self, make_subject):
        subject_id = make_subject(is_admin=True)
        assert bootstrap_admin(subject_id)["status"] == "already_admin"

    def test_dry_run_changes_nothing(self, runtime, make_subject):
        subject_id = make_subject()
        assert bootstrap_admin(subject_id, dry_run=True)["status"] == "dry_run"
        assert runtime.store.get(SUBJECTS, subject_id)["is_admin"] is False
        assert bootstrap_admin("ops-admin-0002", dry_run=True)["status"] == "dry_run"
        assert runtime.store.get(SUBJECTS, "ops-admin-0002") is None

    async def test_issued_token_passes_the_gate(self, runtime):
        result = bootstrap_admin("ops-admin-0003", issue_token=True)
        identity = await runtime.identity.verify(result["access_token"])
        assert runtime.gate.require_admin(identity).admin_id == "ops-admin-0003"


class TestMain:
    def test_requires_user_id(self, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_USER_ID", raising=False)
        assert main([]) == 1
        assert "required" in capsys.readouterr().out

    def test_rejects_short_user_id(self):
        assert main(["--user-id", "short"]) == 1

    @pytest.mark.parametrize("flag", [[], ["--dry-run"]])
    def test_runs(self, flag):
        assert main(["--user-id", "ops-admin-0009", *flag]) == 0

    def test_prints_token(self, capsys):
        assert main(["--user-id", "ops-admin-0010", "--issue-token"]) == 0
        assert "Access Token: " in capsys.readouterr().out
