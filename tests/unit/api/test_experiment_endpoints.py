"""Unit tests for Experiment API endpoints."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.v1 import router as v1_router
from src.api.v1.dependencies import (
    get_assignment_engine,
    get_conversion_service,
    get_experiment_registry,
)
from src.core.exceptions import (
    ExperimentNotFoundError,
    InvalidConfigError,
    StatisticalError,
    setup_exception_handlers,
)
from src.models.db.experiment import ExperimentStatus
from src.models.domain.experiment import AssignmentRead
from src.services import statistics
from tests.factories import make_assignment_row, make_experiment

BASE = "/api/v1/experiments"
USER_CONTEXT = {"user_id": "user_42", "session_id": "sess-1"}


@pytest.fixture
def mock_registry() -> MagicMock:
    return AsyncMock()


@pytest.fixture
def mock_engine() -> MagicMock:
    return AsyncMock()


@pytest.fixture
def mock_conversions() -> MagicMock:
    return AsyncMock()


@pytest.fixture
def app(
    mock_registry: MagicMock, mock_engine: MagicMock, mock_conversions: MagicMock
) -> FastAPI:
    test_app = FastAPI()
    setup_exception_handlers(test_app)
    test_app.include_router(v1_router)

    test_app.dependency_overrides[get_experiment_registry] = lambda: mock_registry
    test_app.dependency_overrides[get_assignment_engine] = lambda: mock_engine
    test_app.dependency_overrides[get_conversion_service] = lambda: mock_conversions

    return test_app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


class TestCreateExperiment:
    """Tests for POST /experiments."""

    def test_create_experiment(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.create_experiment.return_value = make_experiment(
            status=ExperimentStatus.DRAFT
        )

        response = client.post(
            BASE,
            json={
                "name": "Checkout flow test",
                "feature_key": "checkout_flow",
                "variants": [
                    {"name": "control", "traffic_weight": 50, "is_control": True},
                    {"name": "green", "traffic_weight": 50},
                ],
                "metrics": [{"name": "purchase", "is_primary": True}],
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "draft"
        assert data["variants"][0]["id"] == "checkout_flow_variant_0"
        submitted = mock_registry.create_experiment.call_args[0][0]
        assert submitted.feature_key == "checkout_flow"

    def test_invalid_config_is_422_problem(
        self, client: TestClient, mock_registry: MagicMock
    ) -> None:
        mock_registry.create_experiment.side_effect = InvalidConfigError(
            "Variant traffic weights must sum to 100 (got 99)"
        )

        response = client.post(
            BASE,
            json={
                "name": "Checkout",
                "feature_key": "checkout_flow",
                "variants": [{"name": "control", "traffic_weight": 99, "is_control": True}],
                "metrics": [{"name": "purchase", "is_primary": True}],
            },
        )

        assert response.status_code == 422
        assert response.headers["content-type"] == "application/problem+json"
        body = response.json()
        assert body["code"] == "INVALID_CONFIG"
        assert body["errors"] == ["Variant traffic weights must sum to 100 (got 99)"]

    def test_schema_violation(self, client: TestClient) -> None:
        response = client.post(BASE, json={"name": "x", "feature_key": "bad key"})

        assert response.status_code == 422


class TestReadExperiments:
    """Tests for GET /experiments."""

    def test_list_with_filters(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.list_experiments.return_value = [make_experiment()]

        response = client.get(BASE, params={"status": "active", "tag": "checkout", "limit": 10})

        assert response.status_code == 200
        assert len(response.json()) == 1
        mock_registry.list_experiments.assert_awaited_once_with(
            status=ExperimentStatus.ACTIVE, tag="checkout", limit=10, offset=0
        )

    def test_get_experiment(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment = make_experiment()
        mock_registry.require_experiment.return_value = experiment

        response = client.get(f"{BASE}/{experiment.id}")

        assert response.status_code == 200
        assert response.json()["id"] == str(experiment.id)

    def test_get_missing_experiment(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment_id = uuid.uuid4()
        mock_registry.require_experiment.side_effect = ExperimentNotFoundError(experiment_id)

        response = client.get(f"{BASE}/{experiment_id}")

        assert response.status_code == 404
        assert response.json()["code"] == "EXPERIMENT_NOT_FOUND"

    def test_update_experiment(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment = make_experiment()
        mock_registry.update_experiment.return_value = experiment

        response = client.patch(f"{BASE}/{experiment.id}", json={"traffic_allocation": 20})

        assert response.status_code == 200
        data = mock_registry.update_experiment.call_args[0][1]
        assert data.model_dump(exclude_unset=True) == {"traffic_allocation": 20}


class TestLifecycle:
    """Tests for the status transition endpoints."""

    @pytest.mark.parametrize(
        ("action", "method"),
        [
            ("start", "start_experiment"),
            ("pause", "pause_experiment"),
            ("archive", "archive_experiment"),
        ],
    )
    def test_transition(
        self, client: TestClient, mock_registry: MagicMock, action: str, method: str
    ) -> None:
        experiment = make_experiment()
        getattr(mock_registry, method).return_value = experiment

        response = client.post(f"{BASE}/{experiment.id}/{action}")

        assert response.status_code == 200
        getattr(mock_registry, method).assert_awaited_once_with(experiment.id)

    def test_stop_with_reason(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment = make_experiment(status=ExperimentStatus.COMPLETED)
        mock_registry.stop_experiment.return_value = experiment

        response = client.post(f"{BASE}/{experiment.id}/stop", json={"reason": "Winner found"})

        assert response.status_code == 200
        mock_registry.stop_experiment.assert_awaited_once_with(
            experiment.id, reason="Winner found"
        )

    def test_stop_without_body(self, client: TestClient, mock_registry: MagicMock) -> None:
        experiment = make_experiment(status=ExperimentStatus.COMPLETED)
        mock_registry.stop_experiment.return_value = experiment

        response = client.post(f"{BASE}/{experiment.id}/stop")

        assert response.status_code == 200
        mock_registry.stop_experiment.assert_awaited_once_with(experiment.id, reason=None)

    def test_invalid_transition(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.pause_experiment.side_effect = InvalidConfigError(
            "Cannot pause an experiment in status draft"
        )

        response = client.post(f"{BASE}/{uuid.uuid4()}/pause")

        assert response.status_code == 422


class TestAssignment:
    """Tests for assignment and variant endpoints."""

    def test_assignment(self, client: TestClient, mock_engine: MagicMock) -> None:
        experiment_id = uuid.uuid4()
        mock_engine.get_assignment.return_value = AssignmentRead.model_validate(
            make_assignment_row(experiment_id)
        )

        response = client.post(f"{BASE}/{experiment_id}/assignment", json=USER_CONTEXT)

        assert response.status_code == 200
        assert response.json()["variant_id"] == "checkout_flow_variant_1"
        context = mock_engine.get_assignment.call_args[0][1]
        assert context.user_id == "user_42"

    def test_no_assignment_is_null(self, client: TestClient, mock_engine: MagicMock) -> None:
        mock_engine.get_assignment.return_value = None

        response = client.post(f"{BASE}/{uuid.uuid4()}/assignment", json=USER_CONTEXT)

        assert response.status_code == 200
        assert response.json() is None

    def test_variant(self, client: TestClient, mock_engine: MagicMock) -> None:
        experiment = make_experiment()
        mock_engine.get_variant.return_value = experiment.variants[1]

        response = client.post(f"{BASE}/{experiment.id}/variant", json=USER_CONTEXT)

        assert response.status_code == 200
        assert response.json()["config"] == {"button_color": "green"}

    def test_context_requires_user_id(self, client: TestClient) -> None:
        response = client.post(f"{BASE}/{uuid.uuid4()}/assignment", json={"session_id": "s"})

        assert response.status_code == 422


class TestConversionsAndResults:
    """Tests for conversion tracking and reporting."""

    def test_track_conversion(self, client: TestClient, mock_conversions: MagicMock) -> None:
        experiment_id = uuid.uuid4()
        mock_conversions.track_conversion.return_value = None

        response = client.post(
            f"{BASE}/{experiment_id}/conversions",
            json={"metric_name": "purchase", "value": 10, "user_context": USER_CONTEXT},
        )

        assert response.status_code == 200
        args, kwargs = mock_conversions.track_conversion.call_args
        assert args[0] == experiment_id
        assert args[1] == "purchase"
        assert kwargs["value"] == 10.0

    def test_results(self, client: TestClient, mock_conversions: MagicMock) -> None:
        experiment = make_experiment()
        mock_conversions.calculate_results.return_value = statistics.calculate_results(
            experiment,
            {"checkout_flow_variant_0": 100, "checkout_flow_variant_1": 100},
            {},
            datetime.now(UTC),
        )

        response = client.get(f"{BASE}/{experiment.id}/results")

        assert response.status_code == 200
        assert len(response.json()) == 4
        assert response.json()[0]["calculation_method"] == "frequentist"

    def test_results_failure(self, client: TestClient, mock_conversions: MagicMock) -> None:
        mock_conversions.calculate_results.side_effect = StatisticalError("aggregation failed")

        response = client.get(f"{BASE}/{uuid.uuid4()}/results")

        assert response.status_code == 500
        assert response.json()["code"] == "STATISTICAL_ERROR"
