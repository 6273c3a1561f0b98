"""Unit tests for feature flag API endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.v1 import router as v1_router
from src.api.v1.dependencies import get_flag_evaluator, get_flag_registry
from src.core.exceptions import FlagNotFoundError, setup_exception_handlers
from src.models.domain.feature_flag import FlagEvaluation, UserFlag
from tests.factories import make_flag

BASE = "/api/v1/flags"
USER_CONTEXT = {"user_id": "user_42", "session_id": "sess-1"}


@pytest.fixture
def mock_registry() -> MagicMock:
    return AsyncMock()


@pytest.fixture
def mock_evaluator() -> MagicMock:
    return AsyncMock()


@pytest.fixture
def client(mock_registry: MagicMock, mock_evaluator: MagicMock) -> TestClient:
    test_app = FastAPI()
    setup_exception_handlers(test_app)
    test_app.include_router(v1_router)

    test_app.dependency_overrides[get_flag_registry] = lambda: mock_registry
    test_app.dependency_overrides[get_flag_evaluator] = lambda: mock_evaluator

    return TestClient(test_app)


class TestFlagAdmin:
    """Tests for flag CRUD."""

    def test_create_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.create_flag.return_value = make_flag(rollout_percentage=25)

        response = client.post(
            BASE, json={"key": "new_checkout", "name": "New checkout", "rollout_percentage": 25}
        )

        assert response.status_code == 201
        assert response.json()["rollout_percentage"] == 25

    def test_create_flag_bad_rollout(self, client: TestClient) -> None:
        response = client.post(
            BASE, json={"key": "new_checkout", "name": "New checkout", "rollout_percentage": 150}
        )

        assert response.status_code == 422

    def test_list_flags(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.list_flags.return_value = [make_flag()]

        response = client.get(BASE, params={"active_only": "true"})

        assert response.status_code == 200
        mock_registry.list_flags.assert_awaited_once_with(active_only=True)

    def test_get_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.get_flag.return_value = make_flag()

        response = client.get(f"{BASE}/new_checkout")

        assert response.status_code == 200
        assert response.json()["key"] == "new_checkout"

    def test_get_missing_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.get_flag.return_value = None

        response = client.get(f"{BASE}/missing")

        assert response.status_code == 404
        assert response.json()["detail"] == "Feature flag 'missing' not found"

    def test_update_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.update_flag.return_value = make_flag(is_active=False)

        response = client.patch(f"{BASE}/new_checkout", json={"is_active": False})

        assert response.status_code == 200
        assert response.json()["is_active"] is False

    def test_delete_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        response = client.delete(f"{BASE}/new_checkout")

        assert response.status_code == 204
        mock_registry.delete_flag.assert_awaited_once_with("new_checkout")

    def test_delete_missing_flag(self, client: TestClient, mock_registry: MagicMock) -> None:
        mock_registry.delete_flag.side_effect = FlagNotFoundError("missing")

        response = client.delete(f"{BASE}/missing")

        assert response.status_code == 404


class TestFlagEvaluation:
    """Tests for end-user evaluation endpoints."""

    def test_evaluate_flag(self, client: TestClient, mock_evaluator: MagicMock) -> None:
        mock_evaluator.evaluate.return_value = FlagEvaluation(
            value="green", variant="checkout_flow_variant_1", is_enabled=True
        )

        response = client.post(
            f"{BASE}/button_color/evaluate",
            json={"user_context": USER_CONTEXT, "default_value": "blue"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "value": "green",
            "variant": "checkout_flow_variant_1",
            "is_enabled": True,
        }
        key, context, default = mock_evaluator.evaluate.call_args[0]
        assert (key, context.user_id, default) == ("button_color", "user_42", "blue")

    def test_evaluate_many(self, client: TestClient, mock_evaluator: MagicMock) -> None:
        mock_evaluator.evaluate_many.return_value = {"a": True, "b": False}

        response = client.post(
            f"{BASE}/evaluate", json={"keys": ["a", "b"], "user_context": USER_CONTEXT}
        )

        assert response.status_code == 200
        assert response.json() == {"a": True, "b": False}

    def test_evaluate_many_requires_keys(self, client: TestClient) -> None:
        response = client.post(f"{BASE}/evaluate", json={"keys": [], "user_context": USER_CONTEXT})

        assert response.status_code == 422

    def test_user_flags(self, client: TestClient, mock_evaluator: MagicMock) -> None:
        mock_evaluator.get_user_flags.return_value = [
            UserFlag(
                key="new_checkout",
                name="New Checkout",
                value=True,
                variant="default",
                is_enabled=True,
                reason="Enabled",
            )
        ]

        response = client.post(f"{BASE}/user", json=USER_CONTEXT)

        assert response.status_code == 200
        assert response.json()[0]["reason"] == "Enabled"
