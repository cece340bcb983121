"""Unit tests for the MCP elicitation approval dialog and prompter.

FakeContext stands in for fastmcp's Context: elicit() answers from a
script (and blocks forever once the script runs out), info()/warning()
are recorded.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from mcp_claude_bypass.coordinator.interfaces import ApprovalUIUnavailableError
from mcp_claude_bypass.coordinator.permission_coordinator import (
    GRANTED_MESSAGE,
    NOT_GRANTED_MESSAGE,
    PermissionCoordinator,
)
from mcp_claude_bypass.models.permission import CoordinatorState, RetryChoice
from mcp_claude_bypass.ui.elicitation import (
    APPROVAL_MESSAGE,
    FAILED_MESSAGE,
    VERIFYING_MESSAGE,
    ApprovalOption,
    ElicitationApprovalUI,
    ElicitationSurface,
)

from .conftest import FakeLauncher, wait_for


@dataclass
class ElicitResult:
    action: str
    data: Any = None


@dataclass
class ElicitationRecord:
    """Record of a single elicit() call."""

    message: str
    response_type: Any


class FakeContext:
    """Scripted stand-in for the MCP tool context."""

    def __init__(self, responses: list[ElicitResult | Exception] | None = None) -> None:
        self.responses = list(responses or [])
        self.elicitations: list[ElicitationRecord] = []
        self.infos: list[str] = []
        self.warnings: list[str] = []

    async def elicit(self, message: str, response_type: Any = None) -> ElicitResult:
        self.elicitations.append(ElicitationRecord(message, response_type))
        if not self.responses:
            # Client never answers
            await asyncio.Event().wait()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def info(self, message: str) -> None:
        self.infos.append(message)

    async def warning(self, message: str) -> None:
        self.warnings.append(message)


@dataclass
class Callbacks:
    """Records which approval callback fired."""

    accept_results: list[bool] = field(default_factory=lambda: [True])
    calls: list[str] = field(default_factory=list)

    async def on_accept(self) -> bool:
        self.calls.append("accept")
        return self.accept_results.pop(0)

    def on_cancel(self) -> None:
        self.calls.append("cancel")

    def on_dispose(self) -> None:
        self.calls.append("dispose")

    def show(self, ui: ElicitationApprovalUI) -> None:
        ui.show(self.on_accept, self.on_cancel, self.on_dispose)


class TestElicitationApprovalUI:
    """Test mapping of elicitation results to approval callbacks."""

    @pytest.mark.asyncio
    async def test_accept(self):
        ctx = FakeContext([ElicitResult("accept", "Accept")])
        callbacks = Callbacks()
        ui = ElicitationApprovalUI(ctx)

        callbacks.show(ui)
        await wait_for(lambda: callbacks.calls == ["accept"])
        await asyncio.sleep(0.02)

        assert len(ctx.elicitations) == 1
        assert ctx.elicitations[0].message == APPROVAL_MESSAGE
        assert ctx.elicitations[0].response_type == ["Accept", "Cancel"]
        assert ctx.infos == [VERIFYING_MESSAGE]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [ElicitResult("accept", "Cancel"), ElicitResult("decline")],
        ids=["cancel-option", "decline"],
    )
    async def test_cancel(self, response):
        ctx = FakeContext([response])
        callbacks = Callbacks()

        callbacks.show(ElicitationApprovalUI(ctx))
        await wait_for(lambda: callbacks.calls == ["cancel"])

    @pytest.mark.asyncio
    async def test_dismissed_dialog_disposes(self):
        ctx = FakeContext([ElicitResult("cancel")])
        callbacks = Callbacks()

        callbacks.show(ElicitationApprovalUI(ctx))
        await wait_for(lambda: callbacks.calls == ["dispose"])

    @pytest.mark.asyncio
    async def test_elicitation_error_disposes(self):
        ctx = FakeContext([RuntimeError("client does not support elicitation")])
        callbacks = Callbacks()

        callbacks.show(ElicitationApprovalUI(ctx))
        await wait_for(lambda: callbacks.calls == ["dispose"])

    @pytest.mark.asyncio
    async def test_failed_accept_asks_again(self):
        """A grant that does not stick is reported and the dialog re-asked."""
        ctx = FakeContext([ElicitResult("accept", "Accept"), ElicitResult("accept", "Accept")])
        callbacks = Callbacks(accept_results=[False, True])

        callbacks.show(ElicitationApprovalUI(ctx))
        await wait_for(lambda: callbacks.calls == ["accept", "accept"])

        assert ctx.warnings == [FAILED_MESSAGE]
        assert ctx.elicitations[1].message.startswith(FAILED_MESSAGE)
        assert APPROVAL_MESSAGE in ctx.elicitations[1].message

    @pytest.mark.asyncio
    async def test_close_while_waiting(self):
        ctx = FakeContext()
        callbacks = Callbacks()
        ui = ElicitationApprovalUI(ctx)

        callbacks.show(ui)
        await wait_for(lambda: len(ctx.elicitations) == 1)

        ui.close()
        ui.close()
        await asyncio.sleep(0.02)

        assert ui.closed is True
        assert callbacks.calls == []

    @pytest.mark.asyncio
    async def test_show_after_close_fails(self):
        ui = ElicitationApprovalUI(FakeContext())
        ui.close()

        with pytest.raises(ApprovalUIUnavailableError):
            Callbacks().show(ui)

    @pytest.mark.asyncio
    async def test_show_twice_fails(self):
        ui = ElicitationApprovalUI(FakeContext())
        Callbacks().show(ui)

        try:
            with pytest.raises(ApprovalUIUnavailableError):
                Callbacks().show(ui)
        finally:
            ui.close()

    def test_approval_options(self):
        assert ApprovalOption.all_options() == ["Accept", "Cancel"]


class TestElicitationSurface:
    """Test the prompter side of the elicitation surface."""

    def test_create_ui_without_context_fails(self):
        with pytest.raises(ApprovalUIUnavailableError):
            ElicitationSurface().create_approval_ui()

    def test_bind_none_keeps_context(self):
        ctx = FakeContext()
        surface = ElicitationSurface()

        surface.bind(ctx)
        surface.bind(None)

        assert surface.ctx is ctx
        assert surface.create_approval_ui().ctx is ctx

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,expected",
        [
            (ElicitResult("accept", "Try Again"), RetryChoice.TRY_AGAIN),
            (ElicitResult("accept", "Opt Out"), RetryChoice.OPT_OUT),
            (ElicitResult("accept", "Abandon"), RetryChoice.ABANDON),
            (ElicitResult("accept", "Something else"), None),
            (ElicitResult("decline"), None),
            (ElicitResult("cancel"), RetryChoice.ABANDON),
        ],
    )
    async def test_ask_retry(self, response, expected):
        ctx = FakeContext([response])
        surface = ElicitationSurface()
        surface.bind(ctx)

        assert await surface.ask_retry(NOT_GRANTED_MESSAGE) is expected
        assert ctx.elicitations[0].message == NOT_GRANTED_MESSAGE
        assert ctx.elicitations[0].response_type == RetryChoice.all_options()

    @pytest.mark.asyncio
    async def test_ask_retry_without_context_abandons(self):
        assert await ElicitationSurface().ask_retry("?") is RetryChoice.ABANDON

    @pytest.mark.asyncio
    async def test_ask_retry_error_abandons(self):
        surface = ElicitationSurface()
        surface.bind(FakeContext([RuntimeError("transport closed")]))

        assert await surface.ask_retry("?") is RetryChoice.ABANDON

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,expected",
        [
            (ElicitResult("accept", True), True),
            (ElicitResult("accept", False), False),
            (ElicitResult("decline"), False),
            (ElicitResult("cancel"), False),
        ],
    )
    async def test_confirm_opt_out(self, response, expected):
        ctx = FakeContext([response])
        surface = ElicitationSurface()
        surface.bind(ctx)

        assert await surface.confirm_opt_out("Sure?") is expected
        assert ctx.elicitations[0].response_type is bool

    @pytest.mark.asyncio
    async def test_confirm_opt_out_without_context(self):
        assert await ElicitationSurface().confirm_opt_out("Sure?") is False

    @pytest.mark.asyncio
    async def test_warn_and_notify(self):
        ctx = FakeContext()
        surface = ElicitationSurface()
        surface.bind(ctx)

        await surface.warn("revoked")
        await surface.notify("granted")

        assert ctx.warnings == ["revoked"]
        assert ctx.infos == ["granted"]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self):
        ctx = FakeContext()

        async def broken(message):
            raise RuntimeError("session closed")

        ctx.warning = broken
        ctx.info = broken
        surface = ElicitationSurface()
        surface.bind(ctx)

        await surface.warn("revoked")
        await surface.notify("granted")

    @pytest.mark.asyncio
    async def test_warn_without_context(self):
        surface = ElicitationSurface()
        await surface.warn("revoked")
        await surface.notify("granted")


class TestCoordinatorWithElicitation:
    """Coordinator driven end to end through the elicitation surface."""

    @pytest.mark.asyncio
    async def test_accept_grants_permission(self, store, cache):
        ctx = FakeContext([ElicitResult("accept", "Accept")])
        surface = ElicitationSurface()
        surface.bind(ctx)
        launcher = FakeLauncher()
        coordinator = PermissionCoordinator(
            store=store,
            cache=cache,
            ui_factory=surface.create_approval_ui,
            launcher=launcher,
            prompter=surface,
        )

        try:
            assert await coordinator.initialize_permissions() is True
            assert await store.read() is True
            assert coordinator.state is CoordinatorState.GRANTED
            assert launcher.handles[0].dispose_count == 1
            await wait_for(lambda: GRANTED_MESSAGE in ctx.infos)
            assert ctx.infos[0] == VERIFYING_MESSAGE
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_cancel_then_abandon(self, store, cache):
        ctx = FakeContext([ElicitResult("accept", "Cancel"), ElicitResult("accept", "Abandon")])
        surface = ElicitationSurface()
        surface.bind(ctx)
        coordinator = PermissionCoordinator(
            store=store,
            cache=cache,
            ui_factory=surface.create_approval_ui,
            launcher=FakeLauncher(),
            prompter=surface,
        )

        try:
            assert await coordinator.initialize_permissions() is False
            assert [e.message for e in ctx.elicitations] == [APPROVAL_MESSAGE, NOT_GRANTED_MESSAGE]
            assert coordinator.state is CoordinatorState.GAVE_UP
            assert await store.read() is False
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_external_grant_closes_open_dialog(self, store, cache, config_path):
        """The pending elicitation is abandoned once the flag shows up on disk."""
        ctx = FakeContext()
        surface = ElicitationSurface()
        surface.bind(ctx)
        coordinator = PermissionCoordinator(
            store=store,
            cache=cache,
            ui_factory=surface.create_approval_ui,
            launcher=FakeLauncher(),
            prompter=surface,
        )

        try:
            assert await coordinator.check_permission() is False
            task = asyncio.create_task(coordinator.show_approval_flow())
            await wait_for(lambda: len(ctx.elicitations) == 1)

            await store.write(True)
            await cache.refresh()

            assert await task is True
            assert coordinator.session is None
        finally:
            await coordinator.dispose()
