"""Change executor for template-based orchestration.

Runs a change set against the control-plane through resource providers.
Independent changes run concurrently on a bounded worker pool; a change is
submitted only once every change it waits for has completed. Stack state is
flushed after each completed change so a failed run can be resumed by the
next apply.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import ActionResult, call_with_retry
from config import DriverConfig
from intrinsics import Evaluator, TemplateError, TemplateReferenceError, pseudo_parameters
from providers import APIError, ProviderError, ProviderRegistry, ResourceRequest, TransientAPIError
from reporting.report import ApplyReport
from stack_opr.diff import (
    CREATE,
    DELETE,
    REPLACE,
    UPDATE,
    Change,
    ChangeSet,
    compute_destroy_changes,
    referenced_resources,
)
from stack_opr.state import ResourceState, StackState
from template import RenderedTemplate

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class StackExecutor:
    """Executes change sets against a stack.

    Attributes:
        state: Stack state (updated and saved as changes complete)
        registry: Resource providers by type
        config: Driver configuration (concurrency, on_error, retry, region)
        rendered: Rendered template (None for destroy)
        dry_run: If True, preview changes without executing
        json_output: If True, suppress human-readable previews
        cancel_event: Set to stop scheduling new changes (e.g. on SIGINT)
    """
    state: StackState
    registry: ProviderRegistry
    config: DriverConfig
    rendered: Optional[RenderedTemplate] = None
    dry_run: bool = False
    json_output: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def apply(self, changeset: ChangeSet, report: Optional[ApplyReport] = None) -> ApplyReport:
        """Execute a change set, then evaluate and store outputs."""
        report = report or ApplyReport(stack=self.state.stack_name, operation='apply')
        report.start()

        if self.dry_run:
            report.dry_run = True
            self._preview(changeset, 'APPLY')
            report.finish(True)
            return report

        if self.rendered is not None:
            self.state.description = self.rendered.template.description
            self.state.parameters = dict(self.rendered.parameters)
        self._sync_unchanged(changeset)

        success = self._run(changeset, report)

        if self.rendered is not None:
            self.state.outputs = self._evaluate_outputs()
            report.outputs = dict(self.state.outputs)
        self.state.save()

        report.finish(success)
        return report

    def destroy(self, report: Optional[ApplyReport] = None) -> ApplyReport:
        """Delete every recorded resource in reverse dependency order."""
        report = report or ApplyReport(stack=self.state.stack_name, operation='destroy')
        report.start()
        changeset = compute_destroy_changes(self.state)

        if self.dry_run:
            report.dry_run = True
            self._preview(changeset, 'DESTROY')
            report.finish(True)
            return report

        success = self._run(changeset, report)
        if self.state.is_empty:
            self.state.outputs = {}
        self.state.save()

        report.finish(success)
        return report

    def _run(self, changeset: ChangeSet, report: ApplyReport) -> bool:
        """Schedule changes on the worker pool. Returns True if every change completed."""
        on_error = self.config.on_error
        statuses = {change.name: PENDING for change in changeset.changes}
        pending = list(changeset.changes)
        completed: list[tuple[Change, ActionResult]] = []
        halted: Optional[str] = None

        logger.info(f"Executing {len(pending)} change(s) on stack '{self.state.stack_name}' "
                    f"(concurrency={self.config.concurrency}, on_error={on_error})")

        with ThreadPoolExecutor(max_workers=self.config.concurrency,
                                thread_name_prefix='stack-driver') as pool:
            in_flight: dict[Future, Change] = {}

            while True:
                if halted is None and self.cancel_event.is_set():
                    halted = 'not started: cancelled'
                    report.cancelled = True
                    logger.warning("Cancellation requested, waiting for in-flight changes to finish")

                if halted is None:
                    waiting: list[Change] = []
                    for change in pending:
                        blockers = [n for n in change.waits_for if statuses[n] in (FAILED, SKIPPED)]
                        if blockers:
                            statuses[change.name] = SKIPPED
                            report.skip(change.name, change.action,
                                        f"dependency '{blockers[0]}' did not complete")
                            logger.warning(f"[{change.action}] Skipping '{change.name}': "
                                           f"dependency '{blockers[0]}' did not complete")
                            continue
                        if any(statuses[n] != COMPLETED for n in change.waits_for):
                            waiting.append(change)
                            continue
                        if halted is not None or len(in_flight) >= self.config.concurrency:
                            waiting.append(change)
                            continue

                        try:
                            request = self._build_request(change)
                        except (TemplateError, ProviderError) as e:
                            statuses[change.name] = FAILED
                            report.fail(change.name, change.action, str(e), attempts=0)
                            logger.error(f"[{change.action}] '{change.name}' failed: {e}")
                            if on_error in ('stop', 'rollback'):
                                halted = f"not started: stopped after failure of '{change.name}'"
                            continue

                        statuses[change.name] = RUNNING
                        logger.info(f"[{change.action}] {change.name} ({change.type})")
                        in_flight[pool.submit(self._execute, change, request)] = change
                    pending = waiting

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    change = in_flight.pop(future)
                    result = future.result()
                    if result.success:
                        statuses[change.name] = COMPLETED
                        self._record(change, result)
                        completed.append((change, result))
                        report.complete(change.name, change.action, result.message,
                                        result.duration, result.attempts, result.physical_id)
                        logger.info(f"[{change.action}] {change.name}: {result.message} "
                                    f"({result.duration:.1f}s)")
                        if change.action in (UPDATE, REPLACE):
                            for refresh in self._refresh_dependents(change, result, changeset):
                                statuses[refresh.name] = PENDING
                                pending.append(refresh)
                    else:
                        statuses[change.name] = FAILED
                        report.fail(change.name, change.action, result.message,
                                    result.duration, result.attempts)
                        logger.error(f"[{change.action}] '{change.name}' failed: {result.message}")
                        if on_error in ('stop', 'rollback') and halted is None:
                            halted = f"not started: stopped after failure of '{change.name}'"

        for change in pending:
            statuses[change.name] = SKIPPED
            report.skip(change.name, change.action, halted or 'not started')

        success = not report.failed and not report.skipped
        if not success and on_error == 'rollback' and completed:
            self._rollback(completed, report)
        return success

    def _refresh_dependents(self, change: Change, result: ActionResult, changeset: ChangeSet) -> list[Change]:
        """Plan updates for unchanged resources that read an identifier this change altered."""
        previous = change.previous
        id_changed = result.physical_id != previous.physical_id
        attrs_changed = {
            key for key in set(previous.attributes) | set(result.attributes)
            if previous.attributes.get(key) != result.attributes.get(key)
        }
        if not id_changed and not attrs_changed:
            return []

        refreshes = []
        for desired in list(changeset.unchanged):
            stale = any(
                name == change.name and (attr in attrs_changed if attr else id_changed)
                for name, attr in referenced_resources(desired.properties)
            )
            if not stale:
                continue
            changeset.unchanged.remove(desired)
            refresh = Change(
                action=UPDATE,
                name=desired.name,
                type=desired.type,
                desired=desired,
                previous=self.state.get_resource(desired.name),
                waits_for=[d for d in desired.dependencies if d in changeset.names],
                refreshes=[change.name],
            )
            changeset.changes.append(refresh)
            refreshes.append(refresh)
            logger.info(f"'{desired.name}' reads new identifiers of '{change.name}', scheduling update")
        return refreshes

    def _sync_unchanged(self, changeset: ChangeSet) -> None:
        """Refresh recorded dependencies and deletion policy of unchanged resources."""
        for desired in changeset.unchanged:
            try:
                recorded = self.state.get_resource(desired.name)
            except KeyError:
                continue
            recorded.dependencies = list(desired.dependencies)
            recorded.deletion_policy = desired.deletion_policy

    def _pseudo(self) -> dict:
        if self.rendered is not None:
            return self.rendered.pseudo
        return pseudo_parameters(self.state.stack_name, self.config.region, self.config.account_id)

    def _resolve(self, name: str, attr: Optional[str]) -> Any:
        """Materialise a resource reference from recorded state."""
        try:
            recorded = self.state.get_resource(name)
        except KeyError:
            raise TemplateReferenceError(f"Resource '{name}' has not been created") from None
        if attr is None:
            return recorded.physical_id
        if attr not in recorded.attributes:
            raise TemplateReferenceError(
                f"Resource '{name}' ({recorded.type}) has no attribute '{attr}'"
            )
        return recorded.attributes[attr]

    def _materialize(self, properties: dict, owner: str) -> dict:
        """Apply pass: replace symbolic resource references with recorded values."""
        names = set(self.state.resources)
        if self.rendered is not None:
            names.update(self.rendered.resource_names)
        evaluator = Evaluator({}, self._pseudo(), {}, resources=frozenset(names), resolver=self._resolve)
        return evaluator.evaluate(properties, f'Resources.{owner}.Properties')

    def _build_request(self, change: Change) -> ResourceRequest:
        previous = change.previous
        if change.action == DELETE:
            properties = dict(previous.properties)
        else:
            properties = self._materialize(change.properties, change.name)
        return ResourceRequest(
            logical_name=change.name,
            resource_type=change.type,
            properties=properties,
            stack_name=self.state.stack_name,
            region=self.config.region,
            account_id=self.config.account_id,
            physical_id=previous.physical_id if previous is not None else None,
            previous_properties=dict(previous.properties) if previous is not None else None,
            previous_attributes=dict(previous.attributes) if previous is not None else {},
        )

    def _with_retry(self, func: Callable[[], Any], description: str) -> tuple[Any, int]:
        return call_with_retry(func, self.config.retry, (TransientAPIError,), description, self.sleep)

    def _execute(self, change: Change, request: ResourceRequest) -> ActionResult:
        """Run one change in a worker thread."""
        start = time.time()
        attempts = 0
        provider = self.registry.get(change.type)
        try:
            if change.action == DELETE:
                if change.deletion_policy == 'Retain':
                    return ActionResult(success=True, message='retained (DeletionPolicy: Retain)',
                                        duration=time.time() - start, attempts=0)
                existed, attempts = self._with_retry(lambda: provider.delete(request), f"delete {change.name}")
                return ActionResult(
                    success=True,
                    message='deleted' if existed else 'already gone',
                    duration=time.time() - start,
                    attempts=attempts,
                )

            if change.action == REPLACE:
                old_provider = self.registry.get(change.previous.type)
                old_request = ResourceRequest(
                    logical_name=change.name,
                    resource_type=change.previous.type,
                    properties=dict(change.previous.properties),
                    stack_name=request.stack_name,
                    region=request.region,
                    account_id=request.account_id,
                    physical_id=change.previous.physical_id,
                )
                if change.previous.deletion_policy != 'Retain':
                    self._with_retry(lambda: old_provider.delete(old_request), f"delete {change.name}")
                request.physical_id = None
                request.previous_attributes = {}

            if change.action == UPDATE:
                result, attempts = self._with_retry(lambda: provider.update(request), f"update {change.name}")
                message = 'updated'
            else:
                result, attempts = self._with_retry(lambda: provider.create(request), f"create {change.name}")
                message = 'created' if change.action == CREATE else 'replaced'

            return ActionResult(
                success=True,
                message=f"{message} {result.physical_id}",
                duration=time.time() - start,
                physical_id=result.physical_id,
                attributes=result.attributes,
                attempts=attempts,
            )
        except TransientAPIError as e:
            return ActionResult(success=False, message=f"{e} (gave up after retries)",
                                duration=time.time() - start, attempts=self.config.retry.max_attempts)
        except (APIError, ProviderError) as e:
            return ActionResult(success=False, message=str(e),
                                duration=time.time() - start, attempts=attempts or 1)
        except Exception as e:
            logger.exception(f"Unexpected error during {change.action} of '{change.name}'")
            return ActionResult(success=False, message=f"Unexpected error: {e}",
                                duration=time.time() - start, attempts=attempts or 1)

    def _record(self, change: Change, result: ActionResult) -> None:
        """Record a completed change in state and flush it to disk."""
        if change.action == DELETE:
            self.state.remove_resource(change.name)
        else:
            desired = change.desired
            self.state.set_resource(ResourceState(
                name=change.name,
                type=change.type,
                properties=desired.properties,
                physical_id=result.physical_id,
                attributes=dict(result.attributes),
                dependencies=list(desired.dependencies),
                deletion_policy=desired.deletion_policy,
            ))
        self.state.save()

    def _evaluate_outputs(self) -> dict:
        """Evaluate active outputs against the final state."""
        evaluator = self.rendered.evaluator(resolver=self._resolve)
        outputs: dict[str, Any] = {}
        for output in self.rendered.active_outputs():
            try:
                outputs[output.name] = evaluator.evaluate(output.value, f'Outputs.{output.name}')
            except TemplateError as e:
                logger.warning(f"Output '{output.name}' unavailable: {e}")
        return outputs

    def _rollback(self, completed: list[tuple[Change, ActionResult]], report: ApplyReport) -> None:
        """Undo changes completed in this run, in reverse order."""
        logger.info(f"Rolling back {len(completed)} completed change(s)...")
        for change, result in reversed(completed):
            try:
                self._undo(change, result)
            except (APIError, ProviderError, TemplateError) as e:
                logger.error(f"Rollback of {change.action} '{change.name}' failed: {e}")
                continue
            report.rolled_back.append(change.name)
            self.state.save()

    def _undo(self, change: Change, result: ActionResult) -> None:
        previous = change.previous

        if change.action in (CREATE, REPLACE):
            provider = self.registry.get(change.type)
            current = ResourceRequest(
                logical_name=change.name,
                resource_type=change.type,
                properties={},
                stack_name=self.state.stack_name,
                region=self.config.region,
                account_id=self.config.account_id,
                physical_id=result.physical_id,
            )
            self._with_retry(lambda: provider.delete(current), f"rollback delete {change.name}")
            self.state.remove_resource(change.name)
            logger.info(f"[rollback] Deleted '{change.name}'")
            if change.action == CREATE:
                return

        if change.action == DELETE and previous.deletion_policy == 'Retain':
            self.state.set_resource(previous)
            return

        # Restore the previous resource from its recorded properties
        provider = self.registry.get(previous.type)
        request = ResourceRequest(
            logical_name=change.name,
            resource_type=previous.type,
            properties=self._materialize(previous.properties, change.name),
            stack_name=self.state.stack_name,
            region=self.config.region,
            account_id=self.config.account_id,
            physical_id=result.physical_id if change.action == UPDATE else None,
            previous_attributes=dict(previous.attributes),
        )
        if change.action == UPDATE:
            restored, _ = self._with_retry(lambda: provider.update(request), f"rollback update {change.name}")
        else:
            restored, _ = self._with_retry(lambda: provider.create(request), f"rollback create {change.name}")
        self.state.set_resource(ResourceState(
            name=previous.name,
            type=previous.type,
            properties=previous.properties,
            physical_id=restored.physical_id,
            attributes=restored.attributes,
            dependencies=list(previous.dependencies),
            deletion_policy=previous.deletion_policy,
        ))
        logger.info(f"[rollback] Restored '{change.name}'")

    def _preview(self, changeset: ChangeSet, operation: str) -> None:
        """Preview changes without executing."""
        if self.json_output:
            return
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {operation}: {self.state.stack_name}")
        print(f"  Concurrency: {self.config.concurrency}  On error: {self.config.on_error}")
        print("=" * 65)
        print("")
        if not changeset.has_changes:
            print("  No changes.")
        for change in changeset.changes:
            waits = f" (after: {', '.join(change.waits_for)})" if change.waits_for else ""
            print(f"  {change.action:<8} {change.name}: {change.type}{waits}")
        print("")
