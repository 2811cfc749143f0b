"""
Lifecycle hooks - observe and intercept every gateway operation.

Ordering is fixed and awaited sequentially:

    before:  global on_before  -> operation-specific before hook
    after:   operation-specific after hook -> global on_after
    error:   global on_error (observer only)

Hooks may be plain functions or coroutines. Returning ``None`` means
"proceed unchanged".
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from structlog import get_logger

from unipay.models.payment import GatewayName, OperationType

logger = get_logger(__name__)

P = TypeVar("P")
R = TypeVar("R")


@dataclass
class HookContext(Generic[P]):
    """Per-invocation context shared by every hook of one operation."""

    gateway: GatewayName
    operation: OperationType
    params: P
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BeforeHookResult(Generic[P]):
    """Outcome of a before hook."""

    proceed: bool = True
    params: P | None = None
    abort_reason: str | None = None


@dataclass(frozen=True)
class AfterHookResult(Generic[R]):
    """Outcome of an after hook. ``proceed=False`` fails the operation."""

    proceed: bool = True
    modified_result: R | None = None


BeforeHookReturn = BeforeHookResult[Any] | None
AfterHookReturn = AfterHookResult[Any] | None

BeforeHook = Callable[[HookContext[Any]], BeforeHookReturn | Awaitable[BeforeHookReturn]]
AfterHook = Callable[[HookContext[Any], Any], AfterHookReturn | Awaitable[AfterHookReturn]]
ErrorHook = Callable[[HookContext[Any], Exception], Awaitable[None] | None]
WebhookReceivedHook = Callable[[GatewayName, Any], Awaitable[None] | None]
WebhookVerifiedHook = Callable[[Any], Awaitable[None] | None]
WebhookFailedHook = Callable[[Any, Exception], Awaitable[None] | None]


@dataclass
class PaymentHooks:
    """Hook configuration supplied by the embedding application."""

    # Global hooks (all gateways, all operations)
    on_before: BeforeHook | None = None
    on_after: AfterHook | None = None
    on_error: ErrorHook | None = None

    # Operation-specific hooks
    before_create_payment: BeforeHook | None = None
    after_create_payment: AfterHook | None = None
    before_capture: BeforeHook | None = None
    after_capture: AfterHook | None = None
    before_refund: BeforeHook | None = None
    after_refund: AfterHook | None = None

    # Webhook observers
    on_webhook_received: WebhookReceivedHook | None = None
    on_webhook_verified: WebhookVerifiedHook | None = None
    on_webhook_failed: WebhookFailedHook | None = None


# Operation -> (before slot, after slot). Operations absent here only get global hooks.
SPECIFIC_HOOK_SLOTS: dict[OperationType, tuple[str, str]] = {
    OperationType.CREATE_PAYMENT: ("before_create_payment", "after_create_payment"),
    OperationType.CAPTURE_PAYMENT: ("before_capture", "after_capture"),
    OperationType.REFUND_PAYMENT: ("before_refund", "after_refund"),
}

HOOK_NAMES = frozenset(f.name for f in fields(PaymentHooks))


async def _call(hook: Callable[..., Any], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class HooksManager:
    """
    Runs registered hooks in their fixed order.

    One manager is shared by every gateway a client builds.
    """

    def __init__(self, hooks: PaymentHooks | None = None) -> None:
        self.hooks = hooks or PaymentHooks()

    def register(self, name: str, handler: Callable[..., Any] | None) -> None:
        """
        Register (or replace) a hook at runtime.

        Args:
            name: Hook slot name, e.g. ``"before_refund"``
            handler: Callable to install, or None to remove

        Raises:
            ValueError: If the slot name is unknown
        """
        if name not in HOOK_NAMES:
            raise ValueError(f"Unknown hook: {name}")
        setattr(self.hooks, name, handler)
        logger.debug("hook_registered", hook=name, removed=handler is None)

    def _specific(self, operation: OperationType, index: int) -> Callable[..., Any] | None:
        slots = SPECIFIC_HOOK_SLOTS.get(operation)
        if slots is None:
            return None
        hook: Callable[..., Any] | None = getattr(self.hooks, slots[index])
        return hook

    async def run_before(self, ctx: HookContext[P]) -> BeforeHookResult[P]:
        """
        Run the global then the operation-specific before hook.

        Returns:
            Result whose ``params`` are the params execution should use
        """
        if self.hooks.on_before is not None:
            result = await _call(self.hooks.on_before, ctx)
            if result is not None:
                if not result.proceed:
                    return result
                if result.params is not None:
                    ctx.params = result.params

        specific = self._specific(ctx.operation, 0)
        if specific is not None:
            result = await _call(specific, ctx)
            if result is not None:
                if not result.proceed:
                    return result
                if result.params is not None:
                    return BeforeHookResult(proceed=True, params=result.params)

        return BeforeHookResult(proceed=True, params=ctx.params)

    async def run_after(self, ctx: HookContext[P], result: R) -> AfterHookResult[R]:
        """Run the operation-specific then the global after hook."""
        final_result = result

        specific = self._specific(ctx.operation, 1)
        if specific is not None:
            hook_result = await _call(specific, ctx, final_result)
            if hook_result is not None:
                if not hook_result.proceed:
                    return hook_result
                if hook_result.modified_result is not None:
                    final_result = hook_result.modified_result

        if self.hooks.on_after is not None:
            hook_result = await _call(self.hooks.on_after, ctx, final_result)
            if hook_result is not None:
                if not hook_result.proceed:
                    return hook_result
                if hook_result.modified_result is not None:
                    final_result = hook_result.modified_result

        return AfterHookResult(proceed=True, modified_result=final_result)

    async def run_error(self, ctx: HookContext[Any], error: Exception) -> None:
        """Notify the global error observer. Cannot alter the error."""
        if self.hooks.on_error is not None:
            await _call(self.hooks.on_error, ctx, error)

    async def run_webhook_received(self, gateway: GatewayName, payload: Any) -> None:
        if self.hooks.on_webhook_received is not None:
            await _call(self.hooks.on_webhook_received, gateway, payload)

    async def run_webhook_verified(self, event: Any) -> None:
        if self.hooks.on_webhook_verified is not None:
            await _call(self.hooks.on_webhook_verified, event)

    async def run_webhook_failed(self, payload: Any, error: Exception) -> None:
        if self.hooks.on_webhook_failed is not None:
            await _call(self.hooks.on_webhook_failed, payload, error)
