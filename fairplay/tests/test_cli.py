import json

import yaml
from typer.testing import CliRunner

from fairplay.cli import app
from fairplay.commit_reveal import commit

from .conftest import CONSUMER, PROVIDER, TREASURY, TREASURY_KEY

runner = CliRunner()

SEED = "0x" + "5a" * 32


def test_commit_with_given_seed():
    result = runner.invoke(app, ["commit", "--seed", SEED])
    assert result.exit_code == 0, result.output
    out = json.loads(result.output)
    assert out == {"seed": SEED, "commitment": "0x" + commit(bytes.fromhex(SEED[2:])).hex()}


def test_commit_generates_a_fresh_seed():
    a = json.loads(runner.invoke(app, ["commit"]).output)
    b = json.loads(runner.invoke(app, ["commit"]).output)
    assert a["seed"] != b["seed"]
    assert len(a["seed"]) == 66


def test_commit_rejects_bad_seeds():
    assert runner.invoke(app, ["commit", "--seed", "zz"]).exit_code != 0
    assert runner.invoke(app, ["commit", "--seed", "0x0102"]).exit_code != 0


def test_verify_exit_codes():
    commitment = json.loads(runner.invoke(app, ["commit", "--seed", SEED]).output)["commitment"]

    ok = runner.invoke(app, ["verify", commitment, SEED])
    assert ok.exit_code == 0
    assert json.loads(ok.output) == {"valid": True}

    bad = runner.invoke(app, ["verify", commitment, "0x" + "5b" * 32])
    assert bad.exit_code == 1
    assert json.loads(bad.output) == {"valid": False}


def test_show_config_redacts_key(tmp_path):
    path = tmp_path / "fairplay.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "rpc_url": "https://rpc.example.org",
                "chain_id": 8453,
                "provider_address": PROVIDER,
                "consumer_address": CONSUMER,
                "treasury_address": TREASURY,
                "treasury_key": TREASURY_KEY,
            }
        )
    )
    result = runner.invoke(app, ["show-config", "--config", str(path)])
    assert result.exit_code == 0, result.output
    shown = json.loads(result.output)
    assert shown["treasury_key"] == "***"
    assert shown["chain_id"] == 8453
    assert TREASURY_KEY not in result.output


def test_invalid_config_file_exits(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"rpc_url": "https://rpc.example.org", "bogus": 1}))
    result = runner.invoke(app, ["show-config", "--config", str(path)])
    assert result.exit_code != 0
