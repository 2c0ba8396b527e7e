"""Tests for template resolution and condition truthiness."""

from types import SimpleNamespace

import pytest

from src.ignition.errors import TemplateError
from src.ignition.templates import (
    TemplateScope,
    check_syntax,
    evaluate_condition,
    extract_references,
    is_single_expression,
    is_truthy,
    reference_paths,
    resolve,
    resolve_params,
)


@pytest.fixture
def scope() -> TemplateScope:
    """Scope with a value in every lookup source."""
    return TemplateScope(
        variables={
            "contact": {"id": "c-1", "tags": ["lead", "vip"]},
            "count": 3,
            "step-1": {"ok": True},
        },
        config={"api": {"url": "https://api.example.com"}, "workflowId": "wf-1", "flag": True},
        input={"email": "ada@example.com", "name": "Ada"},
        onboarding_data={"company": "Acme"},
        environment={"GHL_LOCATION_PIT": "pit-123"},
    )


class TestSingleExpression:
    """Tests for templates that are exactly one expression."""

    def test_keeps_original_type(self, scope):
        """Test that a whole-string expression returns the raw value."""
        assert resolve("{{ count }}", scope) == 3
        assert resolve("{{ contact }}", scope) == {"id": "c-1", "tags": ["lead", "vip"]}
        assert resolve("{{ config.flag }}", scope) is True

    def test_dotted_path(self, scope):
        """Test walking into nested mappings."""
        assert resolve("{{ contact.id }}", scope) == "c-1"

    def test_list_index(self, scope):
        """Test numeric segments index into lists."""
        assert resolve("{{ contact.tags.1 }}", scope) == "vip"
        assert resolve("{{ contact.tags.9 }}", scope) is None

    def test_whitespace_is_optional(self, scope):
        """Test that spacing inside braces does not matter."""
        assert resolve("{{contact.id}}", scope) == "c-1"
        assert is_single_expression("  {{ contact.id }}  ") is True

    def test_unknown_path_is_none(self, scope):
        """Test that unknown paths resolve to None."""
        assert resolve("{{ missing }}", scope) is None
        assert resolve("{{ contact.missing.deeper }}", scope) is None

    def test_hyphenated_ids(self, scope):
        """Test that action ids with hyphens can be referenced."""
        assert resolve("{{ step-1.ok }}", scope) is True

    def test_private_attributes_are_not_reachable(self):
        """Test that underscore segments never walk into object internals."""
        scope = TemplateScope(variables={"obj": SimpleNamespace(name="Ada")})
        assert resolve("{{ obj.name }}", scope) == "Ada"
        assert resolve("{{ obj.__class__ }}", scope) is None
        assert resolve("{{ obj._private }}", scope) is None


class TestLookupOrder:
    """Tests for the scope lookup order."""

    def test_reserved_roots(self, scope):
        """Test the explicit config/input/env/onboarding/variables roots."""
        assert resolve("{{ config.workflowId }}", scope) == "wf-1"
        assert resolve("{{ input.email }}", scope) == "ada@example.com"
        assert resolve("{{ env.GHL_LOCATION_PIT }}", scope) == "pit-123"
        assert resolve("{{ onboarding.company }}", scope) == "Acme"
        assert resolve("{{ variables.count }}", scope) == 3

    def test_bare_names_fall_through_scopes(self, scope):
        """Test that bare names find config, input and onboarding values."""
        assert resolve("{{ api.url }}", scope) == "https://api.example.com"
        assert resolve("{{ email }}", scope) == "ada@example.com"
        assert resolve("{{ company }}", scope) == "Acme"

    def test_variables_shadow_config(self):
        """Test that run variables win over installation config."""
        scope = TemplateScope(variables={"flag": False}, config={"flag": True})
        assert resolve("{{ flag }}", scope) is False

    def test_config_shadows_input(self):
        """Test that config wins over caller input."""
        scope = TemplateScope(config={"name": "from-config"}, input={"name": "from-input"})
        assert resolve("{{ name }}", scope) == "from-config"

    def test_environment_only_via_env_root(self):
        """Test that environment values are not reachable by bare name."""
        scope = TemplateScope(environment={"SECRET": "s"})
        assert resolve("{{ SECRET }}", scope) is None
        assert resolve("{{ env.SECRET }}", scope) == "s"


class TestMixedText:
    """Tests for templates mixing text and expressions."""

    def test_renders_to_string(self, scope):
        """Test interpolating several values into text."""
        assert resolve("Contact {{ contact.id }} has {{ count }} notes", scope) == (
            "Contact c-1 has 3 notes"
        )

    def test_unknown_renders_empty(self, scope):
        """Test that unknown values render as empty text."""
        assert resolve("Hi {{ missing }}!", scope) == "Hi !"

    def test_booleans_and_structures(self, scope):
        """Test rendering of booleans and JSON-able values."""
        assert resolve("ok={{ config.flag }}", scope) == "ok=true"
        assert resolve("tags={{ contact.tags }}", scope) == 'tags=["lead", "vip"]'

    def test_hyphenated_ids_in_text(self, scope):
        """Test hyphenated references inside text."""
        assert resolve("done: {{ step-1.ok }}", scope) == "done: true"

    def test_jinja_filters(self, scope):
        """Test that expressions beyond plain paths are rendered by jinja."""
        assert resolve("{{ name | upper }}", scope) == "ADA"

    def test_plain_text_untouched(self, scope):
        """Test that strings without expressions pass through."""
        assert resolve("no templates here", scope) == "no templates here"

    def test_non_strings_untouched(self, scope):
        """Test that non-string values pass through."""
        assert resolve(42, scope) == 42
        assert resolve(None, scope) is None

    def test_syntax_error_raises(self, scope):
        """Test that unparsable templates raise TemplateError."""
        with pytest.raises(TemplateError) as exc_info:
            resolve("Hello {{ name ", scope, field_name="params.text")

        assert exc_info.value.field_name == "params.text"
        assert "Template error in field 'params.text'" in str(exc_info.value)

    def test_sandbox_blocks_attribute_traversal(self, scope):
        """Test that expressions cannot climb into Python internals."""
        with pytest.raises(TemplateError):
            resolve("x {{ ''.__class__.__mro__[1].__subclasses__() | length }}", scope)

    def test_sandbox_hides_dunder_attributes(self, scope):
        """Test that unsafe attributes render as nothing."""
        assert resolve("x {{ ''.__class__ }}", scope) == "x "


class TestResolveParams:
    """Tests for recursive param resolution."""

    def test_nested_structures(self, scope):
        """Test resolving inside dicts and lists."""
        params = {
            "server": "ghl",
            "params": {"email": "{{ input.email }}", "tags": ["{{ contact.tags.0 }}", "x"]},
            "count": "{{ count }}",
            "limit": 10,
        }
        assert resolve_params(params, scope) == {
            "server": "ghl",
            "params": {"email": "ada@example.com", "tags": ["lead", "x"]},
            "count": 3,
            "limit": 10,
        }

    def test_does_not_mutate_input(self, scope):
        """Test that the declared params are left unchanged."""
        params = {"a": "{{ count }}"}
        resolve_params(params, scope)
        assert params == {"a": "{{ count }}"}

    def test_error_names_the_field(self, scope):
        """Test that errors point at the nested field."""
        with pytest.raises(TemplateError) as exc_info:
            resolve_params({"outer": {"inner": "{{ a + }}"}}, scope)

        assert exc_info.value.field_name == "params.outer.inner"

    def test_unknown_path_becomes_empty_string(self, scope):
        """Test that unresolved lone expressions become empty strings."""
        params = {"email": "{{ missing }}", "nested": ["{{ contact.nope.x }}"], "n": "{{ count }}"}
        assert resolve_params(params, scope) == {"email": "", "nested": [""], "n": 3}
        assert resolve("{{ missing }}", scope) is None
        assert evaluate_condition("{{ missing }}", scope) is False

    def test_known_values_keep_their_type(self):
        """Test that falsy but known values are not replaced."""
        scope = TemplateScope(config={"zero": 0, "off": False, "none": None})
        assert resolve_params({"a": "{{ zero }}", "b": "{{ off }}"}, scope) == {"a": 0, "b": False}
        assert resolve_params({"c": "{{ none }}"}, scope) == {"c": ""}


class TestTruthiness:
    """Tests for is_truthy and evaluate_condition."""

    @pytest.mark.parametrize(
        "value",
        [None, False, 0, 0.0, "", "   ", "false", "FALSE", " 0 ", "null", "undefined", "None", [], {}],
    )
    def test_falsy(self, value):
        """Test values that skip an action."""
        assert is_truthy(value) is False

    @pytest.mark.parametrize(
        "value", [True, 1, -1, 0.5, "yes", "no", "wf-1", [0], {"a": 1}, object()]
    )
    def test_truthy(self, value):
        """Test values that run an action."""
        assert is_truthy(value) is True

    def test_no_condition_runs(self, scope):
        """Test that an absent condition is true."""
        assert evaluate_condition(None, scope) is True

    def test_condition_on_config(self, scope):
        """Test conditions over config values."""
        assert evaluate_condition("{{ config.workflowId }}", scope) is True
        assert evaluate_condition("{{ config.missing }}", scope) is False

    def test_empty_string_condition_is_false(self):
        """Test that an empty configured value skips."""
        scope = TemplateScope(config={"workflowId": ""})
        assert evaluate_condition("{{config.workflowId}}", scope) is False

    def test_rendered_condition(self, scope):
        """Test conditions that render through jinja."""
        assert evaluate_condition("{{ count > 2 }}", scope) is True
        assert evaluate_condition("{{ count > 5 }}", scope) is False


class TestInspection:
    """Tests for syntax checking and reference extraction."""

    def test_check_syntax(self):
        """Test reporting parse errors without a scope."""
        assert check_syntax("{{ contact.id }}") is None
        assert check_syntax("plain") is None
        assert check_syntax("{{ contact.id ") is not None

    def test_extract_references(self):
        """Test collecting referenced root names."""
        refs = extract_references(
            {"a": "{{ contact.id }} and {{ count }}", "b": ["{{ name | upper }}"], "c": 3}
        )
        assert refs == {"contact", "count", "name"}

    def test_reference_paths(self):
        """Test collecting full dotted paths."""
        assert reference_paths(["{{ contact.id }}", {"x": "{{ config.flag }}"}]) == [
            "contact.id",
            "config.flag",
        ]
