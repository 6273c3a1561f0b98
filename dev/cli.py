"""Dev CLI for inspecting buckets, simulating splits and reading experiment summaries."""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid

import click

from src.core.hashing import BucketPurpose, user_bucket
from src.models.domain.experiment import VariantCreate, build_variants
from src.services.assignment_service import AssignmentEngine


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
    )
    # Quiet noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def _parse_weights(raw: str) -> list[int]:
    try:
        weights = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        raise click.BadParameter("weights must be comma-separated integers") from e
    if sum(weights) != 100:
        raise click.BadParameter(f"weights must sum to 100 (got {sum(weights)})")
    return weights


@click.group()
def cli() -> None:
    """Experimentation dev tools."""
    _setup_logging()


@cli.command()
@click.argument("user_ids", nargs=-1, required=True)
def bucket(user_ids: tuple[str, ...]) -> None:
    """Show the traffic, variant and rollout buckets of each user."""
    purposes = list(BucketPurpose)
    click.echo(f"{'user_id':30s}  " + "  ".join(f"{p:>8s}" for p in purposes))
    for user_id in user_ids:
        buckets = "  ".join(f"{user_bucket(user_id, p):8d}" for p in purposes)
        click.echo(f"{user_id:30s}  {buckets}")


@cli.command()
@click.option("--users", default=100_000, show_default=True, help="Synthetic population size")
@click.option("--weights", default="50,50", show_default=True, help="Variant weights, e.g. 70,30")
@click.option("--traffic", default=100, show_default=True, type=click.IntRange(0, 100))
@click.option("--prefix", default="user_", show_default=True, help="User id prefix")
def simulate(users: int, weights: str, traffic: int, prefix: str) -> None:
    """Simulate the split a population of user ids would get."""
    variants = build_variants(
        "simulation",
        [
            VariantCreate(name=f"variant_{i}", traffic_weight=w, is_control=i == 0)
            for i, w in enumerate(_parse_weights(weights))
        ],
    )

    counts = {v.id: 0 for v in variants}
    excluded = 0
    for i in range(users):
        user_id = f"{prefix}{i}"
        if not AssignmentEngine.is_in_traffic(user_id, traffic):
            excluded += 1
            continue
        variant = AssignmentEngine.select_variant(user_id, variants)
        if variant is not None:
            counts[variant.id] += 1

    assigned = users - excluded
    click.echo(f"Users: {users}, in traffic: {assigned}, excluded: {excluded}")
    click.echo("-" * 60)
    for variant in variants:
        share = counts[variant.id] / assigned * 100 if assigned else 0.0
        click.echo(
            f"  {variant.id:30s}  {counts[variant.id]:8d}  "
            f"{share:6.2f}% (target {variant.traffic_weight}%)"
        )


@cli.command()
@click.argument("experiment_id", type=click.UUID)
def summary(experiment_id: uuid.UUID) -> None:
    """Print results and the recommendation for an experiment."""

    async def _run() -> None:
        from src.core.cache import get_registry_caches
        from src.core.config import get_settings
        from src.core.database import close_database, init_database, session_scope
        from src.core.exceptions import AppError
        from src.services.conversion_service import ConversionService
        from src.services.registry import ExperimentRegistry

        init_database(get_settings())
        try:
            async with session_scope() as db:
                registry = ExperimentRegistry(db, get_registry_caches())
                result = await ConversionService(db, registry).get_experiment_summary(
                    experiment_id
                )
        except AppError as e:
            raise click.ClickException(e.detail) from e
        finally:
            await close_database()

        experiment = result.experiment
        click.echo(f"{experiment.name} ({experiment.status}), {result.status.runtime_hours}h")
        click.echo("-" * 60)
        for row in result.results:
            marker = "*" if row.is_significant else " "
            click.echo(
                f" {marker} {row.variant_id:28s} {row.metric_name:16s} "
                f"n={row.sample_size:<7d} rate={row.conversion_rate:.4f} "
                f"lift={row.lift:+.2f}% p={row.p_value:.4f}"
            )
        recommendation = result.recommendation
        click.echo(
            f"\n{recommendation.action.upper()} ({recommendation.confidence}): "
            f"{recommendation.reason}"
        )

    asyncio.run(_run())
