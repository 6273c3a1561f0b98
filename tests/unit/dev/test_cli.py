"""Tests for the dev CLI."""

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from dev.cli import cli
from src.core.exceptions import ExperimentNotFoundError, StatisticalError
from src.core.hashing import BucketPurpose, user_bucket


class TestBucket:
    """Tests for the bucket command."""

    def test_prints_every_purpose(self) -> None:
        result = CliRunner().invoke(cli, ["bucket", "user_42", "user_123"])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 3
        assert lines[1].split() == [
            "user_42",
            *(str(user_bucket("user_42", p)) for p in BucketPurpose),
        ]

    def test_requires_user_ids(self) -> None:
        result = CliRunner().invoke(cli, ["bucket"])

        assert result.exit_code != 0


class TestSimulate:
    """Tests for the simulate command."""

    def test_reports_split(self) -> None:
        result = CliRunner().invoke(cli, ["simulate", "--users", "2000", "--weights", "70,30"])

        assert result.exit_code == 0
        assert "Users: 2000, in traffic: 2000, excluded: 0" in result.output
        assert "simulation_variant_0" in result.output
        assert "(target 70%)" in result.output

    def test_traffic_exclusion(self) -> None:
        result = CliRunner().invoke(cli, ["simulate", "--users", "500", "--traffic", "0"])

        assert result.exit_code == 0
        assert "in traffic: 0, excluded: 500" in result.output

    def test_rejects_bad_weights(self) -> None:
        result = CliRunner().invoke(cli, ["simulate", "--weights", "60,30"])

        assert result.exit_code == 2
        assert "weights must sum to 100" in result.output

    def test_rejects_non_numeric_weights(self) -> None:
        result = CliRunner().invoke(cli, ["simulate", "--weights", "a,b"])

        assert result.exit_code == 2


@asynccontextmanager
async def _fake_scope():  # noqa: ANN202
    yield MagicMock()


class TestSummary:
    """Tests for the summary command."""

    def _invoke(self, error: Exception) -> tuple:
        with (
            patch("src.core.database.init_database") as init_db,
            patch("src.core.database.close_database", new_callable=AsyncMock) as close_db,
            patch("src.core.database.session_scope", _fake_scope),
            patch(
                "src.services.conversion_service.ConversionService.get_experiment_summary",
                AsyncMock(side_effect=error),
            ),
        ):
            result = CliRunner().invoke(cli, ["summary", str(uuid.uuid4())])
        return result, init_db, close_db

    def test_unknown_experiment_is_a_clean_error(self) -> None:
        experiment_id = uuid.uuid4()

        result, init_db, close_db = self._invoke(ExperimentNotFoundError(experiment_id))

        assert result.exit_code == 1
        assert f"Error: Experiment with id '{experiment_id}' not found" in result.output
        assert "Traceback" not in result.output
        init_db.assert_called_once()
        close_db.assert_awaited_once()

    def test_statistical_failure_is_a_clean_error(self) -> None:
        result, _, close_db = self._invoke(StatisticalError("Could not load experiment"))

        assert result.exit_code == 1
        assert "Error: Could not load experiment" in result.output
        close_db.assert_awaited_once()
