from __future__ import annotations

import pytest

from castor.errors import ConfigurationError
from castor.hooks import HookRunner, Hooks

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_absent_hook_is_a_no_op() -> None:
    runner = HookRunner()
    assert await runner.run("before_each_tool", tool_name="x", args="{}") is None


@pytest.mark.asyncio
async def test_sync_and_async_hooks_receive_one_context_dict() -> None:
    seen: list[tuple[str, dict]] = []

    async def after(ctx):
        seen.append(("after", ctx))

    runner = HookRunner(
        Hooks(
            before_each_tool=lambda ctx: seen.append(("before", ctx)),
            after_each_tool=after,
        )
    )
    await runner.run("before_each_tool", tool_name="roll", args="{}")
    await runner.run("after_each_tool", tool_name="roll", args="{}", result="4")

    assert seen == [
        ("before", {"tool_name": "roll", "args": "{}"}),
        ("after", {"tool_name": "roll", "args": "{}", "result": "4"}),
    ]


@pytest.mark.asyncio
async def test_dict_hooks_are_accepted() -> None:
    calls = []
    runner = HookRunner({"on_tool_error": calls.append})
    await runner.run("on_tool_error", error="x")
    assert calls == [{"error": "x"}]


def test_unknown_hook_names_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Unknown hook"):
        Hooks.from_dict({"before_everything": print})
