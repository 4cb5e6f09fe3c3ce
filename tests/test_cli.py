"""Tests for octomil_secagg.cli: Click command-line interface."""

from __future__ import annotations

import json
import math

from click.testing import CliRunner

from octomil_secagg import __version__
from octomil_secagg.cli import main


class TestKeygen:
    def test_prints_public_jwk(self):
        result = CliRunner().invoke(main, ["keygen"])
        assert result.exit_code == 0, result.output
        jwk = json.loads(result.output)
        assert jwk["kty"] == "EC"
        assert jwk["crv"] == "P-256"
        assert "d" not in jwk


class TestSplitReconstruct:
    def test_roundtrip(self):
        runner = CliRunner()
        split = runner.invoke(main, ["split", "42", "-t", "3", "-n", "5"])
        assert split.exit_code == 0, split.output
        shares = json.loads(split.output)
        assert len(shares) == 5

        subset = json.dumps([shares[0], shares[2], shares[4]])
        result = runner.invoke(main, ["reconstruct", "-t", "3", subset])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "42"

    def test_too_few_shares(self):
        runner = CliRunner()
        shares = json.loads(runner.invoke(main, ["split", "7", "-t", "3", "-n", "5"]).output)
        result = runner.invoke(main, ["reconstruct", "-t", "3", json.dumps(shares[:2])])
        assert result.exit_code == 1
        assert "Need at least 3 shares, got 2." in result.output

    def test_invalid_threshold(self):
        result = CliRunner().invoke(main, ["split", "7", "-t", "6", "-n", "5"])
        assert result.exit_code == 1
        assert "threshold" in result.output

    def test_bad_json(self):
        result = CliRunner().invoke(main, ["reconstruct", "-t", "1", "not json"])
        assert result.exit_code == 1
        assert "Invalid shares JSON" in result.output


class TestSigma:
    def test_prints_sigma(self):
        result = CliRunner().invoke(
            main, ["sigma", "--epsilon", "1", "--sensitivity", "1", "--delta", "1e-5"]
        )
        assert result.exit_code == 0, result.output
        assert float(result.output) == float(f"{math.sqrt(2 * math.log(1.25e5)):.6g}")

    def test_rejects_bad_epsilon(self):
        result = CliRunner().invoke(
            main, ["sigma", "--epsilon", "0", "--sensitivity", "1", "--delta", "1e-5"]
        )
        assert result.exit_code == 1
        assert "epsilon" in result.output


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
