"""
Executor: runs a scheduled changeset against a provider.

Independent steps run concurrently on a thread pool.  Each finished node is
written to the state store right away (under that node's lock), so a failed
run keeps everything that did succeed and the next run picks up from there.
"""
import concurrent.futures
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from converge.config import Settings
from converge.core.differ import make_lookup
from converge.core.graph import ResourceGraph
from converge.core.scheduler import Schedule, Step, StepKind
from converge.errors import (
    ConvergeError,
    DeclarationError,
    ProviderTimeoutError,
    ProviderTransientError,
)
from converge.expressions import EvalContext, ExpressionError, evaluate_value
from converge.models.change import Action, Change
from converge.models.state import AppliedRecord
from converge.providers.base import Provider, ProviderResult
from converge.state.store import StateStore

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"


def state_reader(store: StateStore) -> Callable[[str, str], Any]:
    """Read resource attributes from applied records, for apply-time resolution."""

    def read(address: str, attribute: str) -> Any:
        record = store.get(address)
        if record is None:
            raise ExpressionError(f"{address} has not been applied")
        values = record.values()
        if attribute not in values:
            raise ExpressionError(f"{address} has no attribute '{attribute}'")
        return values[attribute]

    return read


@dataclass
class StepResult:
    step: Step
    status: str
    error: Optional[str] = None
    attempts: int = 0
    duration: float = 0.0


@dataclass
class ApplyResult:
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def _addresses(self, status: str) -> List[str]:
        seen: Dict[str, None] = {}
        for r in self.steps:
            if r.status == status:
                seen.setdefault(r.step.address, None)
        return list(seen)

    @property
    def succeeded(self) -> List[str]:
        failed = set(self.failed) | set(self.skipped)
        return [a for a in self._addresses(SUCCEEDED) if a not in failed]

    @property
    def failed(self) -> List[str]:
        return self._addresses(FAILED)

    @property
    def skipped(self) -> List[str]:
        return [a for a in self._addresses(SKIPPED) if a not in set(self.failed)]

    @property
    def errors(self) -> Dict[str, str]:
        return {r.step.address: r.error or "" for r in self.steps if r.status == FAILED}

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class Executor:
    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self._calls: Optional[concurrent.futures.ThreadPoolExecutor] = None

    # ------------------------------------------------------------------ provider calls
    def _with_timeout(self, fn: Callable[..., Any], *args: Any) -> Any:
        pool = self._calls or concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(fn, *args)
            return future.result(timeout=self.settings.call_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ProviderTimeoutError(
                f"call timed out after {self.settings.call_timeout:g}s"
            ) from None
        finally:
            if pool is not self._calls:
                # a timed-out call keeps its thread; do not wait for it
                pool.shutdown(wait=False)

    def _backoff(self, attempt: int) -> float:
        delay = min(self.settings.backoff_max, self.settings.backoff_base * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay * 0.2)

    def call(
        self,
        what: str,
        fn: Callable[..., Any],
        *args: Any,
        result: Optional[StepResult] = None,
        idempotent: bool = True,
    ) -> Any:
        """
        Invoke a provider operation; transient failures are retried with backoff.

        A call that timed out may still finish on the provider side, so it is
        only retried when *idempotent*.
        """
        attempt = 0
        while True:
            attempt += 1
            if result is not None:
                result.attempts += 1
            try:
                return self._with_timeout(fn, *args)
            except ProviderTransientError as exc:
                if isinstance(exc, ProviderTimeoutError) and not idempotent:
                    logger.error("%s: %s, not retried", what, exc)
                    raise
                if attempt > self.settings.max_retries:
                    logger.error("%s failed after %d attempt(s): %s", what, attempt, exc)
                    raise
                wait = self._backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    what, attempt, self.settings.max_retries + 1, wait, exc,
                )
                self._sleep(wait)

    # ------------------------------------------------------------------ resolution
    def _resolve(self, graph: ResourceGraph, change: Change) -> Dict[str, Any]:
        node = change.node
        ctx = EvalContext(
            variables=graph.variables,
            count_index=node.index,
            address=node.address,
            lookup=make_lookup(graph, state_reader(self.store)),
        )
        try:
            attrs = evaluate_value(node.attributes, ctx)
        except ExpressionError as exc:
            raise DeclarationError(f"{node.address}: {exc}", node.source_file) from exc
        if change.record is not None:
            for attr in node.lifecycle.ignore_changes:
                if attr in change.record.attributes:
                    attrs[attr] = change.record.attributes[attr]
        return attrs

    def _record(self, graph: ResourceGraph, change: Change, attrs: Dict[str, Any], res: ProviderResult,
                deposed: List[Dict[str, Any]]) -> AppliedRecord:
        node = change.node
        return AppliedRecord(
            address=node.address,
            resource_type=node.resource_type,
            resource_id=res.resource_id,
            attributes=attrs,
            outputs=dict(res.outputs),
            dependencies=graph.dependencies(node.address),
            order=node.order,
            create_before_destroy=node.lifecycle.create_before_destroy,
            deposed=deposed,
        )

    # ------------------------------------------------------------------ steps
    def _apply(self, graph: ResourceGraph, change: Change, result: StepResult) -> None:
        address = change.address
        rt = self.provider.resource_type(change.resource_type)
        attrs = self._resolve(graph, change)

        with self.store.node_lock(address):
            current = self.store.get(address)

            if change.action == Action.UPDATE and current is not None:
                ignored = set(self.settings.computed_only) | set(rt.schema.computed) | set(
                    change.node.lifecycle.ignore_changes
                )
                changed = [
                    k for k in attrs
                    if k not in ignored and attrs.get(k) != current.attributes.get(k)
                ] + [k for k in current.attributes if k not in attrs and k not in ignored]
                if changed:
                    res = self.call(f"update {address}", rt.update, current.resource_id, attrs, changed, result=result)
                else:
                    res = ProviderResult(current.resource_id, current.outputs)
                self.store.put(self._record(graph, change, attrs, res, list(current.deposed)))
                return

            # create, or the create half of a replacement
            deposed: List[Dict[str, Any]] = []
            if current is not None:
                deposed = list(current.deposed)
                if change.action == Action.REPLACE and change.create_before_destroy:
                    deposed.append({
                        "id": current.resource_id,
                        "type": current.resource_type,
                        "attributes": current.attributes,
                        "dependencies": current.dependencies,
                    })
            res = self.call(f"create {address}", rt.create, attrs, result=result, idempotent=False)
            self.store.put(self._record(graph, change, attrs, res, deposed))

    def _destroy(self, change: Change, result: StepResult) -> None:
        address = change.address
        with self.store.node_lock(address):
            current = self.store.get(address)
            if current is None:
                return
            self._delete_deposed(current, result)
            rt = self.provider.resource_type(current.resource_type)
            self.call(f"destroy {address}", rt.delete, current.resource_id, result=result)
            self.store.remove(address)

    def _delete_deposed(self, current: AppliedRecord, result: StepResult) -> AppliedRecord:
        remaining = list(current.deposed)
        for obj in list(remaining):
            rt = self.provider.resource_type(obj["type"])
            self.call(f"destroy deposed {current.address} ({obj['id']})", rt.delete, obj["id"], result=result)
            remaining.remove(obj)
            current = replace(current, deposed=list(remaining))
            self.store.put(current)
        return current

    def _destroy_deposed(self, change: Change, result: StepResult) -> None:
        with self.store.node_lock(change.address):
            current = self.store.get(change.address)
            if current is not None:
                self._delete_deposed(current, result)

    def _run_step(self, graph: ResourceGraph, changes: Dict[str, Change], step: Step) -> StepResult:
        result = StepResult(step=step, status=SUCCEEDED)
        change = changes[step.address]
        started = time.monotonic()
        try:
            if step.kind == StepKind.APPLY:
                self._apply(graph, change, result)
            elif step.kind == StepKind.DESTROY:
                self._destroy(change, result)
            else:
                self._destroy_deposed(change, result)
        except ConvergeError as exc:
            result.status = FAILED
            result.error = str(exc)
            logger.error("%s failed: %s", step, exc)
        except Exception as exc:
            result.status = FAILED
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s failed unexpectedly", step)
        result.duration = time.monotonic() - started
        if result.status == SUCCEEDED:
            logger.info("%s done in %.2fs", step, result.duration)
        return result

    # ------------------------------------------------------------------ run
    def run(self, graph: ResourceGraph, changes: List[Change], schedule: Schedule) -> ApplyResult:
        """Run every step of *schedule*; failed steps skip what depends on them."""
        by_address = {c.address: c for c in changes}
        results: Dict[Step, StepResult] = {}
        remaining = {s: len(schedule.requires[s]) for s in schedule}

        workers = self.settings.parallelism
        self._calls = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge-call")
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge") as pool:
                running: Dict[concurrent.futures.Future, Step] = {}

                def submit(candidates: List[Step]) -> None:
                    for s in sorted(candidates, key=schedule.position):
                        if s not in results:
                            running[pool.submit(self._run_step, graph, by_address, s)] = s

                submit([s for s, n in remaining.items() if n == 0])
                while running:
                    done, _ = concurrent.futures.wait(running, return_when=concurrent.futures.FIRST_COMPLETED)
                    ready: List[Step] = []
                    for future in done:
                        step = running.pop(future)
                        res = future.result()
                        results[step] = res
                        if res.status == SUCCEEDED:
                            for s in schedule.dependents(step):
                                remaining[s] -= 1
                                if remaining[s] == 0:
                                    ready.append(s)
                            continue
                        for s in schedule.downstream(step):
                            if s not in results:
                                results[s] = StepResult(step=s, status=SKIPPED, error=f"depends on failed {step}")
                                logger.warning("skipping %s: depends on failed %s", s, step)
                    submit(ready)
        finally:
            # timed-out calls may still hold threads; do not wait for them
            self._calls.shutdown(wait=False)
            self._calls = None

        return ApplyResult(steps=[results[s] for s in schedule if s in results])

