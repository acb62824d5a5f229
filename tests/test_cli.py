"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from htlc_engine.cli import cli
from htlc_engine.config import config
from htlc_engine.identity import derive_swap_id, hash_preimage


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def local_db(tmp_path, monkeypatch):
    """Point the CLI at a throwaway database."""
    monkeypatch.setattr(config, "database_url", f"sqlite:///{tmp_path / 'cli.db'}")


def test_secret_prints_matching_pair(runner):
    result = runner.invoke(cli, ["secret"])

    assert result.exit_code == 0
    lines = dict(line.split(": ") for line in result.output.strip().splitlines())
    assert hash_preimage(bytes.fromhex(lines["Preimage"])).hex() == lines["Hashlock"]


def test_swap_id_matches_derivation(runner):
    hashlock = hash_preimage(b"secret")
    result = runner.invoke(
        cli,
        [
            "swap-id",
            "--sender", "alice",
            "--receiver", "bob",
            "--hashlock", hashlock.hex(),
            "--timelock", "2000",
        ],
    )

    assert result.exit_code == 0
    assert result.output.strip() == derive_swap_id("alice", "bob", hashlock, 2000).hex()


def test_swap_id_rejects_bad_hashlock(runner):
    result = runner.invoke(
        cli,
        ["swap-id", "--sender", "a", "--receiver", "b", "--hashlock", "beef", "--timelock", "1"],
    )

    assert result.exit_code != 0


def test_simulate_claim(runner):
    result = runner.invoke(cli, ["simulate"])

    assert result.exit_code == 0
    assert "Final state: claimed" in result.output
    assert "bob: 100 XLM" in result.output
    assert "alice: 0 XLM" in result.output


def test_simulate_wrong_secret_refunds(runner):
    result = runner.invoke(cli, ["simulate", "--guess", "wrong"])

    assert result.exit_code == 0
    assert "claim failed: invalid_preimage" in result.output
    assert "Final state: refunded" in result.output
    assert "alice: 100 XLM" in result.output


def test_fund_and_balance(runner, local_db):
    result = runner.invoke(cli, ["fund", "--account", "alice", "--asset", "XLM", "--amount", "250"])
    assert result.exit_code == 0
    assert "alice now holds 250 XLM" in result.output

    result = runner.invoke(cli, ["balance", "--account", "alice", "--asset", "XLM"])
    assert result.exit_code == 0
    assert "alice: 250 XLM" in result.output


def test_fund_rejects_non_positive_amount(runner, local_db):
    result = runner.invoke(cli, ["fund", "--account", "alice", "--asset", "XLM", "--amount", "0"])

    assert result.exit_code == 1


def test_list_swaps_empty(runner, local_db):
    result = runner.invoke(cli, ["list-swaps"])

    assert result.exit_code == 0
    assert "No swaps found" in result.output


def test_show_unknown_swap(runner, local_db):
    result = runner.invoke(cli, ["show", "--swap-id", "00" * 32])

    assert result.exit_code == 1


def test_initiate_needs_a_deadline(runner):
    result = runner.invoke(
        cli,
        [
            "initiate",
            "--sender", "alice",
            "--receiver", "bob",
            "--asset", "XLM",
            "--amount", "1",
            "--hashlock", "00" * 32,
        ],
    )

    assert result.exit_code == 2
    assert "--timelock or --expires-in" in result.output
