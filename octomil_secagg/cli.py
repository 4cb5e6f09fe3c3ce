"""
octomil-secagg command-line interface.

Usage::

    octomil-secagg keygen
    octomil-secagg split 42 --threshold 3 --num-shares 5
    octomil-secagg reconstruct --threshold 3 '[{"x": 1, "y": ...}, ...]'
    octomil-secagg sigma --epsilon 1.0 --sensitivity 1.0 --delta 1e-5
"""

from __future__ import annotations

import json

import click

from octomil_secagg import __version__
from octomil_secagg.errors import OctomilSecAggError
from octomil_secagg.masking import PairwiseMasking
from octomil_secagg.privacy import noise_stddev
from octomil_secagg.secagg_plus import SecAggPlus
from octomil_secagg.shamir import SecretShare


@click.group()
@click.version_option(version=__version__, prog_name="octomil-secagg")
def main() -> None:
    """Secure aggregation and differential-privacy utilities."""


@main.command()
def keygen() -> None:
    """Generate a P-256 key pair and print the public JWK."""
    masking = PairwiseMasking()
    click.echo(json.dumps(masking.generate_key_pair()))


@main.command()
@click.argument("secret", type=int)
@click.option("--threshold", "-t", type=int, required=True, help="Shares needed to reconstruct.")
@click.option("--num-shares", "-n", type=int, required=True, help="Total shares to produce.")
def split(secret: int, threshold: int, num_shares: int) -> None:
    """Split SECRET into Shamir shares over GF(2^31 - 1).

    Example:

        octomil-secagg split 42 -t 3 -n 5
    """
    try:
        shares = SecAggPlus(threshold).split_secret(secret, num_shares)
    except OctomilSecAggError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps([s.to_dict() for s in shares]))


@main.command()
@click.argument("shares_json")
@click.option("--threshold", "-t", type=int, required=True, help="Shares needed to reconstruct.")
def reconstruct(shares_json: str, threshold: int) -> None:
    """Reconstruct a secret from a JSON list of shares."""
    try:
        payload = json.loads(shares_json)
        shares = [SecretShare.from_dict(item) for item in payload]
    except (ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(f"Invalid shares JSON: {exc}") from exc
    try:
        secret = SecAggPlus(threshold).reconstruct_secret(shares)
    except OctomilSecAggError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(str(secret))


@main.command()
@click.option("--epsilon", type=float, required=True)
@click.option("--sensitivity", type=float, required=True)
@click.option("--delta", "delta_dp", type=float, required=True)
def sigma(epsilon: float, sensitivity: float, delta_dp: float) -> None:
    """Print the Gaussian-mechanism noise standard deviation."""
    try:
        value = noise_stddev(epsilon, sensitivity, delta_dp)
    except OctomilSecAggError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{value:.6g}")


if __name__ == "__main__":
    main()
