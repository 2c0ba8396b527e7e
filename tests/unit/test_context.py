"""Tests for ExecutionContext."""

import pytest

from src.ignition.context import CancellationToken, ExecutionContext, ExecutionOverrides
from src.ignition.models import InstallationRecord, SkillManifest


@pytest.fixture
def manifest() -> SkillManifest:
    return SkillManifest(name="Test Skill", slug="test-skill", version="1.0.0")


@pytest.fixture
def installation(manifest) -> InstallationRecord:
    return InstallationRecord(
        id="inst-1",
        user_id="user-1",
        skill_id="test-skill",
        config={"workflowId": "wf-1", "region": "eu"},
        permissions_granted=["mcp:ghl:*"],
        environment={"GHL_LOCATION_PIT": "pit-123"},
        onboarding_data={"company": "Acme"},
        manifest=manifest,
    )


class TestExecutionContext:
    """Test suite for ExecutionContext."""

    def test_from_installation(self, installation):
        """Test building a run context from an installation."""
        context = ExecutionContext.from_installation(installation, execution_id="exec-1")

        assert context.installation_id == "inst-1"
        assert context.user_id == "user-1"
        assert context.skill_id == "test-skill"
        assert context.execution_id == "exec-1"
        assert context.config == {"workflowId": "wf-1", "region": "eu"}
        assert context.permissions == frozenset({"mcp:ghl:*"})
        assert dict(context.variables) == {}

    def test_overrides_layer_over_installation(self, installation):
        """Test that run overrides win over installation values."""
        overrides = ExecutionOverrides(
            input={"email": "ada@example.com"},
            config={"workflowId": "wf-2"},
            environment={"EXTRA": "1"},
            variables={"seed": 42},
        )
        context = ExecutionContext.from_installation(installation, overrides)

        assert context.config == {"workflowId": "wf-2", "region": "eu"}
        assert context.environment == {"GHL_LOCATION_PIT": "pit-123", "EXTRA": "1"}
        assert context.input == {"email": "ada@example.com"}
        assert context.get_variable("seed") == 42

    def test_context_does_not_alias_installation(self, installation):
        """Test that changing the context leaves the installation alone."""
        context = ExecutionContext.from_installation(installation)
        context.config["region"] = "us"

        assert installation.config["region"] == "eu"

    def test_variables_are_read_only(self, installation):
        """Test that handlers cannot write variables directly."""
        context = ExecutionContext.from_installation(installation)

        with pytest.raises(TypeError):
            context.variables["x"] = 1  # type: ignore[index]

    def test_set_variable_keeps_insertion_order(self, installation):
        """Test binding and rebinding variables."""
        context = ExecutionContext.from_installation(installation)
        context.set_variable("a", 1)
        context.set_variable("b", 2)
        context.set_variable("a", 3)

        assert list(context.variables.items()) == [("a", 3), ("b", 2)]
        assert context.snapshot_variables() == {"a": 3, "b": 2}

    def test_resolve_params(self, installation):
        """Test resolving templates against the context."""
        context = ExecutionContext.from_installation(
            installation, ExecutionOverrides(input={"email": "ada@example.com"})
        )
        context.set_variable("contact", {"id": "c-1"})

        params = context.resolve_params(
            {
                "contactId": "{{ contact.id }}",
                "workflowId": "{{ config.workflowId }}",
                "email": "{{ input.email }}",
                "note": "{{ company }} lead",
            }
        )
        assert params == {
            "contactId": "c-1",
            "workflowId": "wf-1",
            "email": "ada@example.com",
            "note": "Acme lead",
        }

    def test_evaluate_condition(self, installation):
        """Test evaluating run conditions."""
        context = ExecutionContext.from_installation(installation)

        assert context.evaluate_condition("{{ config.workflowId }}") is True
        assert context.evaluate_condition("{{ config.missing }}") is False
        assert context.evaluate_condition(None) is True

    def test_is_allowed(self, installation):
        """Test permission checks against the granted set."""
        context = ExecutionContext.from_installation(installation)

        assert context.is_allowed("mcp:ghl:create_contact") is True
        assert context.is_allowed("mcp:stripe:create_customer") is False

    def test_repr(self, installation):
        """Test string representation."""
        context = ExecutionContext.from_installation(installation)
        assert repr(context) == (
            "<ExecutionContext installation='inst-1' skill='test-skill' variables=0>"
        )


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel(self):
        """Test flipping the cancellation flag."""
        token = CancellationToken()
        assert token.cancelled is False

        token.cancel()
        assert token.cancelled is True
