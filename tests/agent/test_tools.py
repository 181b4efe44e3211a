"""
Tests for the tool registry, input validation and scoping policies.
"""

import asyncio

import pytest

from src.nexus.agent.domain.entities import SideEffectClass
from src.nexus.agent.exceptions import ToolExecutionError, ToolValidationError
from src.nexus.agent.tools import (
    TOOL_PROFILES,
    ToolPolicy,
    ToolProfile,
    ToolRegistry,
    build_text_tool_prompt,
    is_tool_allowed,
)


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    def test_register_and_lookup(self, registry):
        definition = registry.get("delete_file")

        assert definition.side_effect_class == SideEffectClass.DESTRUCTIVE
        assert registry.side_effect_of("read_file") == SideEffectClass.READ_ONLY
        assert "write_file" in registry
        assert len(registry) == 4

    def test_side_effect_of_unknown_tool(self, registry):
        with pytest.raises(ToolValidationError, match="Unknown tool"):
            registry.side_effect_of("nope")

    def test_register_replaces_existing(self, registry):
        registry.register(
            "read_file", "Read v2", {"type": "object"}, SideEffectClass.MUTATING, lambda: "x"
        )

        assert registry.get("read_file").description == "Read v2"
        assert registry.side_effect_of("read_file") == SideEffectClass.MUTATING
        assert len(registry) == 4

    def test_unregister(self, registry):
        assert registry.unregister("explode") is True
        assert registry.unregister("explode") is False
        assert "explode" not in registry

    def test_resolve_tools_filters_by_scope(self, registry):
        scope = ToolPolicy.scoped(["read_file", "write_file"])

        names = [t.name for t in registry.resolve_tools(scope)]

        assert names == ["read_file", "write_file"]

    def test_resolve_tools_excludes(self, registry):
        names = [t.name for t in registry.resolve_tools(exclude={"explode"})]

        assert names == ["read_file", "write_file", "delete_file"]

    def test_text_prompt_lists_tools_and_protocol(self, registry):
        prompt = build_text_tool_prompt(registry.resolve_tools())

        assert "**delete_file** [destructive]" in prompt
        assert "path (string, required)" in prompt
        assert '"type": "final_answer"' in prompt


class TestExecute:
    @pytest.mark.asyncio
    async def test_async_handler(self, registry, tool_log):
        output = await registry.execute("read_file", {"path": "a.txt"})

        assert output == "contents of a.txt"
        assert tool_log == [("read_file", "a.txt")]

    @pytest.mark.asyncio
    async def test_sync_handler(self, registry):
        output = await registry.execute("write_file", {"path": "a", "content": "abc"})

        assert output == {"written": 3}

    @pytest.mark.asyncio
    async def test_handler_exception_wrapped(self, registry):
        with pytest.raises(ToolExecutionError, match="boom"):
            await registry.execute("explode", {"reason": "boom"})

    @pytest.mark.asyncio
    async def test_timeout_wrapped(self):
        registry = ToolRegistry()

        async def slow() -> str:
            await asyncio.sleep(10)
            return "late"

        registry.register(
            "slow", "Slow", {"type": "object"}, SideEffectClass.READ_ONLY, slow,
            timeout_seconds=0.01,
        )

        with pytest.raises(ToolExecutionError, match="timed out"):
            await registry.execute("slow", {})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        with pytest.raises(ToolValidationError, match="Unknown tool: 'missing'"):
            await registry.execute("missing", {})

    @pytest.mark.asyncio
    async def test_invalid_params_never_reach_handler(self, registry, tool_log):
        with pytest.raises(ToolValidationError):
            await registry.execute("read_file", {"path": 42})

        assert tool_log == []


# =============================================================================
# Validation
# =============================================================================


@pytest.fixture
def typed_registry():
    registry = ToolRegistry()
    registry.register(
        "configure",
        "Configure a service",
        {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "replicas": {"type": "integer", "default": 1},
                "ratio": {"type": "number"},
                "enabled": {"type": "boolean"},
                "mode": {"type": "string", "enum": ["fast", "safe"]},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["name"],
        },
        SideEffectClass.MUTATING,
        lambda **params: params,
    )
    return registry


class TestValidation:
    def test_defaults_applied(self, typed_registry):
        params = typed_registry.validate("configure", {"name": "web"})

        assert params == {"name": "web", "replicas": 1}

    def test_missing_required(self, typed_registry):
        with pytest.raises(ToolValidationError) as exc_info:
            typed_registry.validate("configure", {})

        assert "name" in exc_info.value.message

    @pytest.mark.parametrize(
        "params",
        [
            {"name": "web", "replicas": "3"},
            {"name": "web", "enabled": 1},
            {"name": 7},
            {"name": "web", "mode": "turbo"},
            {"name": "web", "tags": [1, 2]},
        ],
    )
    def test_type_mismatches_rejected(self, typed_registry, params):
        with pytest.raises(ToolValidationError):
            typed_registry.validate("configure", params)

    def test_number_accepts_int_and_float(self, typed_registry):
        assert typed_registry.validate("configure", {"name": "a", "ratio": 2})["ratio"] == 2
        assert typed_registry.validate("configure", {"name": "a", "ratio": 0.5})["ratio"] == 0.5

    def test_extra_properties_rejected(self, typed_registry):
        with pytest.raises(ToolValidationError):
            typed_registry.validate("configure", {"name": "web", "unexpected": True})

    def test_extra_properties_allowed_when_declared(self):
        registry = ToolRegistry()
        registry.register(
            "loose",
            "Loose",
            {
                "type": "object",
                "properties": {"id": {"type": "string"}},
                "additionalProperties": True,
            },
            SideEffectClass.READ_ONLY,
            lambda **params: params,
        )

        assert registry.validate("loose", {"id": "x", "extra": 1}) == {"id": "x", "extra": 1}

    def test_non_object_params(self, typed_registry):
        with pytest.raises(ToolValidationError, match="must be an object"):
            typed_registry.validate("configure", ["web"])


# =============================================================================
# Policies
# =============================================================================


class TestToolPolicy:
    def test_no_policy_allows_everything(self):
        assert is_tool_allowed("anything", None)

    def test_full_profile_allows_everything_not_denied(self):
        policy = ToolPolicy(deny=["shell"])

        assert policy.is_allowed("read_file")
        assert not policy.is_allowed("shell")

    def test_deny_beats_allow(self):
        policy = ToolPolicy(allow=["shell"], deny=["shell"])

        assert not policy.is_allowed("shell")

    def test_allow_list_is_exclusive(self):
        policy = ToolPolicy.scoped(["read_file", "read_file"])

        assert policy.allow == ["read_file"]
        assert policy.is_allowed("read_file")
        assert not policy.is_allowed("write_file")

    def test_profile_with_also_allow(self):
        policy = ToolPolicy(profile=ToolProfile.BASIC, also_allow=["git"])

        assert policy.is_allowed("web_fetch")
        assert policy.is_allowed("git")
        assert not policy.is_allowed("shell")

    def test_coding_profile_extends_basic(self):
        assert TOOL_PROFILES[ToolProfile.BASIC] < TOOL_PROFILES[ToolProfile.CODING]

    def test_dict_round_trip(self):
        policy = ToolPolicy(profile=ToolProfile.MESSAGING, deny=["send_whatsapp"])

        assert ToolPolicy.from_dict(policy.to_dict()) == policy
        assert ToolPolicy.from_dict(None) is None
