from typer.testing import CliRunner

from canvas_billing.cli import app as cli

runner = CliRunner()


def test_seed_adjust_and_audit():
    seeded = runner.invoke(cli, ["seed", "--email", "ops@example.com", "--grant", "12"])
    assert seeded.exit_code == 0, seeded.output
    assert "ops@example.com" in seeded.output

    again = runner.invoke(cli, ["seed", "--email", "ops@example.com"])
    assert "already exists" in again.output

    balance = runner.invoke(cli, ["balance", "1"])
    assert "12" in balance.output
    assert "entitled" in balance.output

    adjusted = runner.invoke(cli, ["adjust", "--reason", "goodwill", "--key", "fix-1", "--", "1", "-2"])
    assert adjusted.exit_code == 0, adjusted.output
    assert "10" in adjusted.output

    replay = runner.invoke(cli, ["adjust", "--key", "fix-1", "--", "1", "-2"])
    assert "Already applied" in replay.output

    rejected = runner.invoke(cli, ["adjust", "--", "1", "-100"])
    assert rejected.exit_code == 1

    audit = runner.invoke(cli, ["audit", "1"])
    assert audit.exit_code == 0, audit.output
    assert "Consistent" in audit.output

    assert runner.invoke(cli, ["audit", "999"]).exit_code == 1

    ledger = runner.invoke(cli, ["ledger", "1"])
    assert ledger.exit_code == 0
    assert "Ledger for user 1" in ledger.output

    duplicates = runner.invoke(cli, ["duplicates"])
    assert duplicates.exit_code == 0
    assert "No duplicate" in duplicates.output


def test_token_is_a_valid_session():
    from canvas_billing.services.auth_service import session_user_id

    result = runner.invoke(cli, ["token", "5"])

    assert result.exit_code == 0
    assert session_user_id(result.output.strip()) == 5
