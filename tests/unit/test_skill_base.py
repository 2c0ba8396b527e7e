"""Tests for the ActionHandler base class and ActionResult."""

from typing import Any, Dict

import pytest

from src.ignition.context import ExecutionContext
from src.ignition.models import AuditLogEntry, SkillManifest
from src.skills.base import ActionHandler, ActionResult, FunctionHandler, coerce_result


class EchoHandler(ActionHandler):
    """Handler that echoes its params."""

    type = "test:echo"
    description = "Echoes params"

    async def handle(self, params: Dict[str, Any], context: ExecutionContext) -> ActionResult:
        return ActionResult.ok(params)


class ExplodingHandler(ActionHandler):
    """Handler that always raises."""

    type = "test:explode"

    async def handle(self, params: Dict[str, Any], context: ExecutionContext) -> ActionResult:
        raise RuntimeError("kaboom")


class BareDataHandler(ActionHandler):
    """Handler that returns plain data instead of an ActionResult."""

    type = "test:bare"

    async def handle(self, params, context):
        return {"id": 7}


class ReversibleHandler(ActionHandler):
    type = "test:reversible"

    async def handle(self, params, context):
        return ActionResult.ok(reversible=True, before_state={"v": 1})

    async def revert(self, entry, context):
        return ActionResult.ok(entry.before_state)


@pytest.fixture
def context() -> ExecutionContext:
    manifest = SkillManifest(name="Test", slug="test", version="1.0.0")
    return ExecutionContext("inst-1", "user-1", "test", manifest)


class TestActionResult:
    """Tests for ActionResult."""

    def test_ok(self):
        """Test building a success."""
        result = ActionResult.ok({"id": 1}, target="contact:1")
        assert result.success is True
        assert result.data == {"id": 1}
        assert result.target == "contact:1"
        assert result.reversible is False

    def test_fail(self):
        """Test building a failure."""
        result = ActionResult.fail("nope")
        assert result.success is False
        assert result.error == "nope"

    def test_camel_case_state_keys(self):
        """Test that handlers may use beforeState/afterState."""
        result = ActionResult.model_validate(
            {"success": True, "beforeState": {"a": 1}, "afterState": {"a": 2}}
        )
        assert result.before_state == {"a": 1}
        assert result.after_state == {"a": 2}

    def test_coerce_result(self):
        """Test accepting results, result dicts and bare data."""
        result = ActionResult.ok(1)
        assert coerce_result(result) is result
        assert coerce_result({"success": False, "error": "x"}).error == "x"
        assert coerce_result({"id": 1}).data == {"id": 1}
        assert coerce_result(None).success is True


class TestActionHandler:
    """Tests for ActionHandler."""

    def test_cannot_instantiate_abstract(self):
        """Test that the base class is abstract."""
        with pytest.raises(TypeError):
            ActionHandler()  # type: ignore[abstract]

    def test_required_permission_defaults_to_class_attribute(self):
        """Test the default permission hook."""
        handler = EchoHandler()
        assert handler.required_permission({}) is None

        handler.permission = "notes:write"
        assert handler.required_permission({}) == "notes:write"

    @pytest.mark.asyncio
    async def test_run_traces_success(self, context):
        """Test that run returns the result and a trace."""
        result, trace = await EchoHandler().run({"a": 1}, context)

        assert result.success is True
        assert result.data == {"a": 1}
        assert trace.action_type == "test:echo"
        assert trace.params == {"a": 1}
        assert trace.completed_at is not None
        assert trace.duration_ms is not None
        assert trace.error is None
        assert trace.result["success"] is True

    @pytest.mark.asyncio
    async def test_run_captures_exceptions(self, context):
        """Test that exceptions become failed results."""
        result, trace = await ExplodingHandler().run({}, context)

        assert result.success is False
        assert result.error == "RuntimeError: kaboom"
        assert trace.error == "RuntimeError: kaboom"

    @pytest.mark.asyncio
    async def test_run_coerces_bare_data(self, context):
        """Test that plain return values are wrapped."""
        result, _ = await BareDataHandler().run({}, context)
        assert result.success is True
        assert result.data == {"id": 7}

    @pytest.mark.asyncio
    async def test_revert_not_supported_by_default(self):
        """Test that handlers without an inverse say so."""
        handler = EchoHandler()
        entry = AuditLogEntry(id="1", installation_id="i", action="test:echo", target="t")

        assert handler.supports_revert is False
        with pytest.raises(NotImplementedError):
            await handler.revert(entry, None)

    @pytest.mark.asyncio
    async def test_revert_supported_when_overridden(self):
        """Test that overriding revert enables rollback."""
        handler = ReversibleHandler()
        entry = AuditLogEntry(
            id="1",
            installation_id="i",
            action="test:reversible",
            target="t",
            before_state={"v": 1},
        )

        assert handler.supports_revert is True
        result = await handler.revert(entry, None)
        assert result.data == {"v": 1}

    def test_repr(self):
        """Test string representation."""
        assert repr(EchoHandler()) == "<EchoHandler type='test:echo'>"


class TestFunctionHandler:
    """Tests for FunctionHandler."""

    @pytest.mark.asyncio
    async def test_sync_function(self, context):
        """Test wrapping a synchronous function."""

        def double(params, ctx):
            """Double a number."""
            return {"success": True, "data": params["n"] * 2}

        handler = FunctionHandler("math:double", double)
        result, _ = await handler.run({"n": 4}, context)

        assert result.data == 8
        assert handler.type == "math:double"
        assert handler.description == "Double a number."

    @pytest.mark.asyncio
    async def test_async_function(self, context):
        """Test wrapping a coroutine function."""

        async def fetch(params, ctx):
            return ActionResult.ok("fetched")

        result, _ = await FunctionHandler("fetch", fetch).run({}, context)
        assert result.data == "fetched"

    @pytest.mark.asyncio
    async def test_reverter(self):
        """Test supplying an inverse function."""
        calls = []

        def undo(entry, ctx):
            calls.append(entry.id)
            return ActionResult.ok()

        handler = FunctionHandler("x", lambda p, c: None, reverter=undo)
        entry = AuditLogEntry(id="log-1", installation_id="i", action="x", target="t")

        assert handler.supports_revert is True
        assert (await handler.revert(entry, None)).success is True
        assert calls == ["log-1"]

    @pytest.mark.asyncio
    async def test_no_reverter(self):
        """Test that a function handler without inverse cannot revert."""
        handler = FunctionHandler("x", lambda p, c: None)
        entry = AuditLogEntry(id="log-1", installation_id="i", action="x", target="t")

        assert handler.supports_revert is False
        with pytest.raises(NotImplementedError):
            await handler.revert(entry, None)
