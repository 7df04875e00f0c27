"""Solana CLI wrappers with the subprocess layer replaced."""

from decimal import Decimal

import pytest

from validatorvm import solana


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("validatorvm.solana.time.sleep", lambda s: None)
    monkeypatch.setattr("validatorvm.utils.time.sleep", lambda s: None)


def _fake_run(responses, calls):
    """Map the solana subcommand (second arg) to a list of (status, output)."""

    def run(*args, timeout=None):
        calls.append(args)
        queue = responses[args[1]]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return run


def test_keypair_paths(tmp_path):
    paths = solana.keypair_paths(tmp_path)
    assert paths["validator"] == tmp_path / "validator-keypair.json"
    assert paths["withdrawer"].name == "authorized-withdrawer-keypair.json"


def test_get_balance(monkeypatch):
    calls = []
    monkeypatch.setattr(solana, "_run", _fake_run({"balance": [(0, "5.5 SOL")]}, calls))
    assert solana.get_balance("Abc") == Decimal("5.5")
    assert calls[0] == ("solana", "balance", "Abc", "--url", "testnet")


@pytest.mark.parametrize("result", [(1, "Error: connection refused"), (0, ""), (0, "garbage")])
def test_get_balance_unavailable(monkeypatch, result):
    monkeypatch.setattr(solana, "_run", _fake_run({"balance": [result]}, []))
    assert solana.get_balance("Abc") is None


def test_request_airdrop_rate_limited(monkeypatch):
    monkeypatch.setattr(
        solana, "_run", _fake_run({"airdrop": [(1, "Error: airdrop request failed. rate limit")]}, [])
    )
    assert not solana.request_airdrop(Decimal(2), "Abc")


def test_fund_account_already_funded(monkeypatch):
    calls = []
    monkeypatch.setattr(solana, "_run", _fake_run({"balance": [(0, "10 SOL")]}, calls))
    assert solana.fund_account("Abc", Decimal(5))
    assert all(args[1] != "airdrop" for args in calls)


def test_fund_account_via_airdrop(monkeypatch):
    responses = {
        "balance": [(0, "0 SOL"), (0, "2 SOL"), (0, "6 SOL")],
        "airdrop": [(0, "Signature: 5xyz\n2 SOL")],
    }
    monkeypatch.setattr(solana, "_run", _fake_run(responses, []))
    assert solana.fund_account("Abc", Decimal(5), ask=lambda _: pytest.fail("should not prompt"))


def test_fund_account_falls_back_to_faucet(monkeypatch):
    responses = {
        "balance": [(0, "0 SOL"), (0, "0 SOL"), (0, "5 SOL")],
        "airdrop": [(1, "Error: rate limit")],
    }
    calls = []
    monkeypatch.setattr(solana, "_run", _fake_run(responses, calls))
    prompts = []
    assert solana.fund_account("Abc", Decimal(5), ask=lambda p: prompts.append(p) or "y")
    assert len(prompts) == 1
    assert sum(1 for args in calls if args[1] == "airdrop") == solana.AIRDROP_ATTEMPTS


def test_fund_account_faucet_declined(monkeypatch):
    responses = {"balance": [(0, "0 SOL")], "airdrop": [(1, "Error: rate limit")]}
    monkeypatch.setattr(solana, "_run", _fake_run(responses, []))
    assert not solana.fund_account("Abc", Decimal(5), ask=lambda _: "n")


def test_parse_vote_credits():
    output = (
        "Account Balance: 0.02685864 SOL\n"
        "Validator Identity: 7Np41oeYqPefeNQEHSv1UDhYrehxin3NStELsSKCT4K2\n"
        "Credits: 1,234,567\n"
        "Commission: 10%\n"
    )
    assert solana.parse_vote_credits(output) == 1234567
    assert solana.parse_vote_credits("Account Balance: 0 SOL") is None


def test_is_caught_up():
    assert solana.is_caught_up("7Np4...K2 has caught up (us:123 them:123)")
    assert not solana.is_caught_up("7Np4...K2 has not caught up yet, 1500 slot(s) behind")
    assert not solana.is_caught_up("")


def test_create_vote_account_is_idempotent(monkeypatch, tmp_path):
    paths = solana.keypair_paths(tmp_path)
    for path in paths.values():
        path.write_text("[]")
    monkeypatch.setattr(solana, "get_pubkey", lambda path: f"pk-{path.name}")
    monkeypatch.setattr(solana, "_run", _fake_run({"vote-account": [(0, "Credits: 0")]}, []))
    monkeypatch.setattr(solana, "run_cmd", lambda *a: pytest.fail("should not create"))

    assert solana.create_vote_account(paths) == "pk-vote-account-keypair.json"


def test_generate_keypair_keeps_existing(monkeypatch, tmp_path):
    path = tmp_path / "validator-keypair.json"
    path.write_text("[1]")
    monkeypatch.setattr(solana, "verify_keypair", lambda p: True)
    monkeypatch.setattr(solana, "get_pubkey", lambda p: "Existing111")
    monkeypatch.setattr(solana, "run_cmd", lambda *a: pytest.fail("should not regenerate"))

    assert solana.generate_keypair(path) == "Existing111"
    assert path.read_text() == "[1]"


def test_generate_keypair_rejects_corrupt_existing(monkeypatch, tmp_path):
    path = tmp_path / "validator-keypair.json"
    path.write_text("not a keypair")
    monkeypatch.setattr(solana, "_run", _fake_run({"pubkey": [(1, "Error: failed to read keypair")]}, []))
    monkeypatch.setattr(solana, "run_cmd", lambda *a: pytest.fail("should not regenerate"))

    with pytest.raises(SystemExit):
        solana.generate_keypair(path)
    assert path.read_text() == "not a keypair"


def test_verify_keypair(monkeypatch, tmp_path):
    path = tmp_path / "vote-account-keypair.json"
    path.write_text("[1]")
    calls = []
    responses = {"pubkey": [(0, "Vote111")], "verify": [(0, "Verification for public key: Vote111: Success")]}
    monkeypatch.setattr(solana, "_run", _fake_run(responses, calls))

    assert solana.verify_keypair(path)
    assert calls[-1] == ("solana-keygen", "verify", "Vote111", str(path))


def test_verify_keypair_mismatch_or_missing(monkeypatch, tmp_path):
    path = tmp_path / "vote-account-keypair.json"
    assert not solana.verify_keypair(path)

    path.write_text("[1]")
    responses = {"pubkey": [(0, "Vote111")], "verify": [(1, "Verification for public key: Vote111: Failed")]}
    monkeypatch.setattr(solana, "_run", _fake_run(responses, []))
    assert not solana.verify_keypair(path)


def test_parse_vote_account():
    output = (
        "Account Balance: 0.02685864 SOL\n"
        "Validator Identity: 7Np41oeYqPefeNQEHSv1UDhYrehxin3NStELsSKCT4K2\n"
        "Vote Authority: {0: \"7Np41oeYqPefeNQEHSv1UDhYrehxin3NStELsSKCT4K2\"}\n"
        "Credits: 1,234,567\n"
        "Commission: 10%\n"
        "Root Slot: 301234567\n"
        "Epoch Voting History:\n"
        "  - epoch: 700\n"
        "    credits range: [1200000..1234567)\n"
    )
    account = solana.parse_vote_account(output)
    assert account.balance == Decimal("0.02685864")
    assert account.credits == 1234567
    assert account.commission == "10%"
    assert account.root_slot == 301234567


def test_parse_vote_account_missing_fields():
    account = solana.parse_vote_account("Account Balance: n/a SOL\nRoot Slot: ~\n")
    assert account.balance is None
    assert account.credits is None
    assert account.commission is None
    assert account.root_slot is None


def test_get_vote_account_not_found(monkeypatch):
    monkeypatch.setattr(solana, "_run", _fake_run({"vote-account": [(1, "Error: account does not exist")]}, []))
    assert solana.get_vote_account("Vote111") is None


def test_in_gossip(monkeypatch):
    gossip = "IP Address | Identity\n10.0.0.5 | Ident111\n"
    monkeypatch.setattr(solana, "_run", _fake_run({"gossip": [(0, gossip)]}, []))
    assert solana.in_gossip("Ident111")
    assert solana.in_gossip("Other222") is False

    monkeypatch.setattr(solana, "_run", _fake_run({"gossip": [(1, "connection refused")]}, []))
    assert solana.in_gossip("Ident111") is None
