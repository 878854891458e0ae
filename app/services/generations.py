"""Metered batch generation: reserve, fan out to the provider, settle, persist."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from beanie import PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pagination import Page, paginate
from app.models.generation import Generation
from app.providers.base import ImageProvider, ProviderTaskFailure, extract_image_url
from app.services import credits as credits_service

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_inflight: set[asyncio.Task] = set()


@dataclass(frozen=True)
class GenerationTask:
    key: str
    prompt: str


class TaskResult(BaseModel):
    key: str
    image_url: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    variant: str
    requested: int
    succeeded: int
    charged: int
    results: list[TaskResult]
    warnings: list[dict[str, Any]] = Field(default_factory=list)


class SingleResult(BaseModel):
    key: str
    variant: str
    image_url: str | None = None
    error: str | None = None
    charged: int
    warnings: list[dict[str, Any]] = Field(default_factory=list)


async def run_in_windows(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    window: int = 3,
) -> list[R | BaseException]:
    """
    Run worker over items, `window` at a time; the next window starts only after
    the current one has fully resolved. Outcomes come back in input order, with
    exceptions returned in place of results.
    """
    window = max(1, window)
    outcomes: list[R | BaseException] = []
    for i in range(0, len(items), window):
        chunk = items[i:i + window]
        outcomes.extend(await asyncio.gather(*(worker(x) for x in chunk), return_exceptions=True))
    return outcomes


async def run_detached(coro: Awaitable[T]) -> T:
    """Await coro, but let it run to completion if the caller is cancelled (client disconnect)."""
    task = asyncio.ensure_future(coro)
    _inflight.add(task)
    task.add_done_callback(_forget_task)
    return await asyncio.shield(task)


def _forget_task(task: asyncio.Task) -> None:
    _inflight.discard(task)
    if not task.cancelled() and task.exception() is not None:
        log.debug("detached_task_error", error=str(task.exception()))


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return "Generation cancelled"
    return str(exc) or exc.__class__.__name__


async def execute_batch(
    user_id: PydanticObjectId,
    tasks: Sequence[GenerationTask],
    cost_per_task: int,
    input_image: str,
    provider: ImageProvider,
    variant: str = "boy",
) -> BatchResult:
    """
    Charge only for tasks the provider completed.

    Reserves len(tasks) * cost_per_task up front (InsufficientCreditsError aborts
    before any provider call), runs the tasks in fixed windows, settles the
    reservation to the successes, then stores one Generation per success.
    Settlement and storage problems after that point become warnings.
    """
    if cost_per_task < 0:
        raise ValueError("cost_per_task must be >= 0")
    requested = len(tasks)
    if requested == 0:
        return BatchResult(variant=variant, requested=0, succeeded=0, charged=0, results=[])

    settings = get_settings()
    timeout = settings.provider_timeout_seconds
    reservation = await credits_service.reserve(
        user_id, requested * cost_per_task, unit_cost=cost_per_task, reference=f"batch:{variant}"
    )

    async def worker(task: GenerationTask) -> str:
        try:
            out = await asyncio.wait_for(provider.generate(task.prompt, input_image), timeout)
        except asyncio.TimeoutError:
            raise ProviderTaskFailure(f"Generation timed out after {timeout:g}s")
        url = extract_image_url(out)
        if not url:
            raise ProviderTaskFailure("No image URL in provider output")
        return url

    outcomes = await run_in_windows(tasks, worker, settings.generation_concurrency)

    results: list[TaskResult] = []
    for task, outcome in zip(tasks, outcomes):
        if isinstance(outcome, BaseException):
            log.warning(
                "generation_task_failed",
                user_id=str(user_id),
                key=task.key,
                reservation_id=str(reservation.id),
                error=_error_text(outcome),
            )
            results.append(TaskResult(key=task.key, error=_error_text(outcome)))
        else:
            results.append(TaskResult(key=task.key, image_url=outcome))
    successes = [r for r in results if r.image_url]
    charged = len(successes) * cost_per_task
    warnings: list[dict[str, Any]] = []

    try:
        await credits_service.settle(reservation, charged)
    except PyMongoError as e:
        # the sweep in settle_stale_reservations picks this reservation up later
        log.error("settlement_failed", reservation_id=str(reservation.id), charged=charged, error=str(e))
        warnings.append({"code": "settlement_failed", "message": "Unused credits will be returned shortly"})

    for r in successes:
        try:
            await append_generation(Generation(
                user_id=user_id,
                hero_key=r.key,
                variant=variant,
                image_url=r.image_url,
                reservation_id=reservation.id,
            ))
        except PyMongoError as e:
            log.error("generation_record_failed", user_id=str(user_id), key=r.key, error=str(e))
            warnings.append({"code": "record_not_saved", "key": r.key})

    log.info(
        "generation_batch_done",
        user_id=str(user_id),
        variant=variant,
        requested=requested,
        succeeded=len(successes),
        charged=charged,
    )
    await log_event(
        str(user_id),
        "generation_batch",
        "reservation",
        str(reservation.id),
        {"variant": variant, "requested": requested, "succeeded": len(successes), "charged": charged},
    )
    return BatchResult(
        variant=variant,
        requested=requested,
        succeeded=len(successes),
        charged=charged,
        results=results,
        warnings=warnings,
    )


async def execute_single(
    user_id: PydanticObjectId,
    task: GenerationTask,
    cost_per_task: int,
    input_image: str,
    provider: ImageProvider,
    variant: str = "boy",
) -> SingleResult:
    """One-task batch: charges cost_per_task on success, nothing on failure."""
    batch = await execute_batch(user_id, [task], cost_per_task, input_image, provider, variant=variant)
    result = batch.results[0]
    return SingleResult(
        key=result.key,
        variant=variant,
        image_url=result.image_url,
        error=result.error,
        charged=batch.charged,
        warnings=batch.warnings,
    )


async def append_generation(record: Generation) -> Generation:
    """Store a new generation record. Stored records are never modified."""
    if record.id is not None:
        raise ValueError("generation records are append-only")
    await record.insert()
    return record


async def list_generations(user_id: PydanticObjectId, limit: int = 20, offset: int = 0) -> Page[Generation]:
    """Owner's generations, newest first, with the owner's total count."""
    limit, offset = paginate(limit, offset, max_limit=get_settings().generations_page_max)
    total = await Generation.find(Generation.user_id == user_id).count()
    items = (
        await Generation.find(Generation.user_id == user_id)
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    return Page[Generation](total=total, limit=limit, offset=offset, items=items)
