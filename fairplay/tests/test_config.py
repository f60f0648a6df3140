import json

import pytest
import yaml

from fairplay.config import FairplayConfig, is_address
from fairplay.errors import ConfigError

from .conftest import CONSUMER, PROVIDER, TREASURY, TREASURY_KEY, make_config


def test_valid_config_passes():
    make_config().validate()


@pytest.mark.parametrize(
    "overrides",
    [
        {"rpc_url": "ws://node"},
        {"chain_id": 0},
        {"consumer_address": "0x1234"},
        {"treasury_key": "abcd"},
        {"fee_currency": "gold"},
        {"fee_currency": "token", "fee_token_address": None},
        {"scan_upper_bound": 0},
        {"scan_upper_bound": 10**6},
        {"fulfillment_timeout_s": 0},
        {"max_retries": -1},
        {"min_deposit": 10, "max_deposit": 5},
        {"withdraw_gas_limit": 20_000},
        {"explorer_url": "ftp://x"},
    ],
)
def test_invalid_config_is_rejected(overrides):
    with pytest.raises(ConfigError):
        make_config(**overrides).validate()


def test_token_currency_with_token_address():
    make_config(fee_currency="token", fee_token_address="0x" + "77" * 20).validate()


def test_from_env(monkeypatch):
    monkeypatch.setenv("FAIRPLAY_RPC_URL", "https://rpc.example.org")
    monkeypatch.setenv("FAIRPLAY_CHAIN_ID", "8453")
    monkeypatch.setenv("FAIRPLAY_PROVIDER_ADDRESS", PROVIDER)
    monkeypatch.setenv("FAIRPLAY_CONSUMER_ADDRESS", CONSUMER)
    monkeypatch.setenv("FAIRPLAY_TREASURY_ADDRESS", TREASURY)
    monkeypatch.setenv("FAIRPLAY_TREASURY_KEY", TREASURY_KEY)
    monkeypatch.setenv("FAIRPLAY_SCAN_UPPER_BOUND", "25")
    monkeypatch.setenv("FAIRPLAY_FULFILLMENT_TIMEOUT_S", "")

    cfg = FairplayConfig.from_env()
    assert cfg.chain_id == 8453
    assert cfg.scan_upper_bound == 25
    assert cfg.fulfillment_timeout_s == FairplayConfig().fulfillment_timeout_s

    monkeypatch.setenv("FAIRPLAY_CHAIN_ID", "base")
    with pytest.raises(ConfigError, match="FAIRPLAY_CHAIN_ID"):
        FairplayConfig.from_env()


def _fields(**extra):
    data = dict(
        rpc_url="https://rpc.example.org",
        chain_id=8453,
        provider_address=PROVIDER,
        consumer_address=CONSUMER,
        treasury_address=TREASURY,
        treasury_key=TREASURY_KEY,
    )
    data.update(extra)
    return data


def test_from_yaml_and_json_files(tmp_path):
    y = tmp_path / "fairplay.yaml"
    y.write_text(yaml.safe_dump(_fields(scan_upper_bound=7)))
    j = tmp_path / "fairplay.json"
    j.write_text(json.dumps(_fields(fulfillment_timeout_s=60)))

    assert FairplayConfig.from_file(str(y)).scan_upper_bound == 7
    assert FairplayConfig.from_file(str(j)).fulfillment_timeout_s == 60


def test_unknown_keys_and_non_mapping_files(tmp_path):
    with pytest.raises(ConfigError, match="scan_bound"):
        FairplayConfig.from_dict(_fields(scan_bound=3))
    bad = tmp_path / "list.yaml"
    bad.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError):
        FairplayConfig.from_file(str(bad))


def test_signing_key_is_redacted():
    cfg = make_config()
    assert cfg.to_dict()["treasury_key"] == "***"
    assert TREASURY_KEY not in cfg.to_json()
    assert TREASURY_KEY not in repr(cfg)


def test_is_address():
    assert is_address(PROVIDER)
    assert not is_address(None)
    assert not is_address(PROVIDER[:-2])
