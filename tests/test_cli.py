"""Tests for the billing CLI."""

import json
from datetime import datetime

import pytest

from billing_engine.cli import BillingCli
from billing_engine.models import ProfileStatus


@pytest.fixture
def cli(session_factory, clients, config, gateways):
    return BillingCli(session_factory=session_factory, clients=clients, config=config)


class TestBillingCli:
    def test_no_command_prints_help(self, cli, capsys):
        assert cli.run([]) == 1
        assert "process-recurring" in capsys.readouterr().out

    def test_rejects_non_positive_minutes(self, cli):
        with pytest.raises(SystemExit):
            cli.run(["verify-pending", "--older-than-minutes", "0"])

    def test_dry_run_lists_due_profiles(self, cli, stub_client, make_profile, capsys):
        profile = make_profile(datetime(2025, 1, 1))

        assert cli.run(["process-recurring", "--dry-run"]) == 0

        out = capsys.readouterr().out
        assert "1 profile(s) would be charged" in out
        assert profile.profile_id in out
        assert stub_client.charges == []

    def test_process_recurring_prints_summary(self, cli, stub_client, make_profile, capsys):
        make_profile(datetime(2025, 1, 1))

        assert cli.run(["process-recurring"]) == 0

        summary = json.loads(capsys.readouterr().out)
        assert summary["processed"] == 1
        assert summary["succeeded"] == 1
        assert len(stub_client.charges) == 1

    def test_declined_run_exits_non_zero(self, cli, make_profile, capsys):
        make_profile(datetime(2025, 1, 1), token=None)

        assert cli.run(["process-recurring"]) == 1
        assert json.loads(capsys.readouterr().out)["failed"] == 1

    def test_single_profile(self, cli, make_profile, capsys):
        profile = make_profile(datetime(2025, 1, 1))

        assert cli.run(["process-recurring", "--profile", profile.profile_id]) == 0
        assert capsys.readouterr().out.startswith(f"{profile.profile_id}: succeeded")

    def test_unknown_profile_is_an_error(self, cli, capsys):
        assert cli.run(["process-recurring", "--profile", "RPPMISSING"]) == 1
        assert capsys.readouterr().err.startswith("ERROR:")

    def test_suspended_profile_is_an_error(self, cli, make_profile, capsys):
        profile = make_profile(datetime(2025, 1, 1), status=ProfileStatus.SUSPENDED.value)

        assert cli.run(["process-recurring", "--profile", profile.profile_id]) == 1
        assert "ERROR:" in capsys.readouterr().err

    def test_verify_pending(self, cli, capsys):
        assert cli.run(["verify-pending", "--older-than-minutes", "15"]) == 0
        assert "Checked:   0" in capsys.readouterr().out

    def test_reconcile_refunds(self, cli, capsys):
        assert cli.run(["reconcile-refunds"]) == 0
        assert "Still pending: 0" in capsys.readouterr().out

    def test_gateways_hide_credentials(self, cli, capsys):
        assert cli.run(["gateways"]) == 0

        out = capsys.readouterr().out
        listed = {g["code"]: g for g in json.loads(out)}
        assert set(listed) == {"stub", "cash", "bkash"}
        assert listed["stub"]["adapter"] is True
        assert listed["cash"]["adapter"] is False
        assert listed["stub"]["fee_percentage"] == "1.50"
        assert "stub-secret" not in out
        assert "app-secret" not in out
