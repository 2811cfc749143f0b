"""
Operation pipeline - wraps every gateway call with validation and hooks.

    validate -> before hooks -> executor -> after hooks
    on failure: map error -> error hook -> raise

Adapters compose this function with their own executor and error mapper
instead of inheriting a template method.
"""

import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from structlog import get_logger

from unipay.exceptions import InvalidRequestError, PaymentAbortedError, PaymentError
from unipay.models.payment import GatewayName, OperationType
from unipay.observability.logging import log_context
from unipay.observability.metrics import metrics
from unipay.observability.tracing import add_span_attributes, trace_operation
from unipay.services.hooks import HookContext, HooksManager

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
R = TypeVar("R")

ErrorMapper = Callable[[Exception], Exception]


def default_map_error(error: Exception) -> Exception:
    """Generic mapping: SDK errors and unknown errors pass through unchanged."""
    return error


def validate_params(schema: type[ModelT], params: Any, operation: OperationType | str) -> ModelT:
    """
    Validate operation params against a pydantic schema.

    Raises:
        InvalidRequestError: With the structured field errors
    """
    label = operation.value if isinstance(operation, OperationType) else operation
    if isinstance(params, schema):
        return params
    if isinstance(params, BaseModel):
        params = params.model_dump()
    if not isinstance(params, Mapping):
        raise InvalidRequestError(
            f"Validation failed for {label}: params must be a mapping or model"
        )
    try:
        return schema.model_validate(params)
    except ValidationError as exc:
        raise InvalidRequestError(
            f"Validation failed for {label}",
            exc.errors(include_url=False),
        ) from exc


async def execute_with_hooks(
    hooks: HooksManager,
    *,
    gateway: GatewayName,
    operation: OperationType,
    params: Any,
    executor: Callable[[Any], Awaitable[R]],
    map_error: ErrorMapper | None = None,
    schema: type[BaseModel] | None = None,
) -> R:
    """
    Run one gateway operation through the hook pipeline.

    Args:
        hooks: Shared hooks manager
        gateway: Gateway executing the operation
        operation: Operation kind (selects operation-specific hooks)
        params: Raw or validated params
        executor: Provider call taking the final params
        map_error: Gateway error mapper (falls back to pass-through)
        schema: Optional pydantic model to validate params against

    Returns:
        The executor result, possibly replaced by after hooks

    Raises:
        PaymentAbortedError: If a before or after hook aborts
        PaymentError: Mapped provider, network or validation failure
    """
    mapper = map_error or default_map_error
    started = time.perf_counter()
    ctx: HookContext[Any] = HookContext(gateway=gateway, operation=operation, params=params)

    with log_context(gateway=gateway.value, operation=operation.value), trace_operation(
        f"unipay.{operation.value}", gateway=gateway.value
    ) as span:
        try:
            if schema is not None:
                ctx.params = validate_params(schema, params, operation)

            before = await hooks.run_before(ctx)
            if not before.proceed:
                metrics.record_hook_abort(gateway.value, operation.value, "before")
                logger.info("operation_aborted_by_hook", stage="before", reason=before.abort_reason)
                raise PaymentAbortedError(before.abort_reason)

            final_params = before.params if before.params is not None else ctx.params
            result = await executor(final_params)

            ctx.params = final_params
            after = await hooks.run_after(ctx, result)
            if not after.proceed:
                metrics.record_hook_abort(gateway.value, operation.value, "after")
                logger.warning("operation_rejected_by_after_hook")
                raise PaymentAbortedError("Operation rejected by after hook")

            final_result: R = (
                after.modified_result if after.modified_result is not None else result
            )
        except Exception as exc:
            mapped = mapper(exc)
            duration = time.perf_counter() - started
            metrics.record_operation(gateway.value, operation.value, False, duration)
            metrics.record_error(gateway.value, type(mapped).__name__, operation.value)
            logger.warning(
                "gateway_operation_failed",
                error_type=type(mapped).__name__,
                code=getattr(mapped, "code", None),
                error=str(mapped),
                duration_ms=round(duration * 1000, 2),
            )
            if isinstance(mapped, PaymentError):
                add_span_attributes(span, error_code=mapped.code)
            await hooks.run_error(ctx, mapped)
            if mapped is exc:
                raise
            raise mapped from exc

        duration = time.perf_counter() - started
        metrics.record_operation(gateway.value, operation.value, True, duration)
        logger.info("gateway_operation_completed", duration_ms=round(duration * 1000, 2))
        return final_result


async def call_with_error_mapping(call: Awaitable[R], map_error: ErrorMapper) -> R:
    """Await a provider call outside the hook pipeline, narrowing its errors."""
    try:
        return await call
    except Exception as exc:
        mapped = map_error(exc)
        if mapped is exc:
            raise
        raise mapped from exc
