"""Tests for keeper keypair loading."""

import json

import base58
import pytest
from solders.keypair import Keypair

from perp_keeper import wallet
from perp_keeper.errors import ConfigurationError
from perp_keeper.wallet import load_keypair, load_keypair_base58, load_keypair_file


def test_json_array_file(tmp_path):
    keypair = Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(keypair))))

    assert load_keypair_file(path).pubkey() == keypair.pubkey()


def test_base58_secret():
    keypair = Keypair()
    secret = base58.b58encode(bytes(keypair)).decode()

    assert load_keypair_base58(f"  {secret}\n").pubkey() == keypair.pubkey()


def test_path_takes_precedence(tmp_path):
    from_file, from_env = Keypair(), Keypair()
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(from_file))))

    loaded = load_keypair(str(path), base58.b58encode(bytes(from_env)).decode())

    assert loaded.pubkey() == from_file.pubkey()


@pytest.mark.parametrize("content", ["{not json", '{"key": 1}', "[1, 2, 3]", json.dumps([300] * 64)])
def test_bad_files(tmp_path, content):
    path = tmp_path / "id.json"
    path.write_text(content)

    with pytest.raises(ConfigurationError):
        load_keypair_file(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_keypair_file(tmp_path / "missing.json")


def test_bad_base58():
    with pytest.raises(ConfigurationError):
        load_keypair_base58("0OIl")


def test_nothing_configured(tmp_path, monkeypatch):
    monkeypatch.setattr(wallet, "SOLANA_CLI_DEFAULT", tmp_path / "absent.json")

    with pytest.raises(ConfigurationError, match="No keeper keypair"):
        load_keypair()
