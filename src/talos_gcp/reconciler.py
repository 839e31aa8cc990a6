"""
Reconciler: diff desired vs. observed per kind and execute the difference.

A pass walks the kinds in dependency order. For each kind it reads a fresh
snapshot, plans Create/Update/Replace/Delete actions by name, and runs the
creates and updates (concurrently), then the replaces (one at a time).
Deletes, and updates that take something away, are collected and run after
all forward work, deletes in reverse kind order, behind an optional
confirmation callback. A caller that converges kinds in several slices
defers them with ``defer_deletes`` and runs them once through ``finish``.
"""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace

from tenacity import Retrying

from .core import ACTION_RETRY_CONFIG, CLUSTER_LABEL
from .errors import ConflictError, SafetyViolation, TalosGCPError
from .logger import logger
from .provider import Provider
from .schemas.actions import ActionFailure, ActionType, ReconcileAction, ReconcileReport
from .schemas.base import KIND_ORDER, ResourceKind, ResourceSpec

Selector = Callable[[ResourceSpec], bool]
ConfirmDeletes = Callable[[list[ReconcileAction]], bool]


def select_all(_spec: ResourceSpec) -> bool:
    return True


def _delete_order(spec: ResourceSpec) -> tuple[str, int, str]:
    # Indexed pool members go highest index first
    index = getattr(spec, "index", None)
    pool = getattr(spec, "pool", "")
    return (pool or "", -index if index is not None else 0, spec.name)


def plan_kind(
    kind: ResourceKind, desired: list[ResourceSpec], actual: list[ResourceSpec]
) -> list[ReconcileAction]:
    """Pure diff of one kind. Deletes come last, highest pool index first."""
    actual_by_name = {a.name: a for a in actual}
    desired_names = {d.name for d in desired}
    actions: list[ReconcileAction] = []

    for spec in desired:
        current = actual_by_name.get(spec.name)
        if current is None:
            actions.append(ReconcileAction(ActionType.CREATE, spec, "missing"))
            continue
        mutable, immutable = spec.drift(current)
        if immutable:
            actions.append(
                ReconcileAction(
                    ActionType.REPLACE,
                    spec,
                    f"immutable field drift: {', '.join(immutable)}",
                    actual=current,
                    fields=tuple(immutable),
                )
            )
        elif mutable:
            actions.append(
                ReconcileAction(
                    ActionType.UPDATE,
                    spec,
                    f"drift: {', '.join(mutable)}",
                    actual=current,
                    fields=tuple(mutable),
                )
            )

    excess = sorted((a for a in actual if a.name not in desired_names), key=_delete_order)
    for spec in excess:
        reason = "excess count" if getattr(spec, "index", None) is not None else "not desired"
        actions.append(ReconcileAction(ActionType.DELETE, spec, reason, actual=spec))
    return actions


def _split(actions: list[ReconcileAction]) -> tuple[list[ReconcileAction], list[ReconcileAction]]:
    """
    Separates the work that runs now from the work that waits for the end
    of the pass: deletes, and the narrowing half of any update that drops
    something (a subnet range) resources of later kinds may still use.
    """
    now: list[ReconcileAction] = []
    later: list[ReconcileAction] = []
    for action in actions:
        if action.action == ActionType.DELETE:
            later.append(action)
            continue
        widened = None
        if action.action == ActionType.UPDATE and action.actual is not None:
            widened = action.spec.widened(action.actual)
        if widened is None:
            now.append(action)
            continue
        mutable, _ = widened.drift(action.actual)
        if mutable:
            now.append(
                ReconcileAction(
                    ActionType.UPDATE,
                    widened,
                    f"drift: {', '.join(mutable)} (keeping what is still in use)",
                    actual=action.actual,
                    fields=tuple(mutable),
                )
            )
        later.append(replace(action, actual=widened))
    return now, later


class Reconciler:
    def __init__(
        self,
        provider: Provider,
        cluster: str,
        max_workers: int = 8,
        retry_config: dict | None = None,
    ):
        self.provider = provider
        self.cluster = cluster
        self.max_workers = max_workers
        self.retry_config = retry_config if retry_config is not None else ACTION_RETRY_CONFIG

    # --- planning -------------------------------------------------------

    def _kinds(self, kinds: Iterable[ResourceKind] | None) -> list[ResourceKind]:
        wanted = set(kinds) if kinds is not None else set(KIND_ORDER)
        return [k for k in KIND_ORDER if k in wanted]

    def _observe(self, kind: ResourceKind, selector: Selector) -> list[ResourceSpec]:
        snapshot = self.provider.read(self.cluster, [kind])
        return [s for s in snapshot.of_kind(kind) if selector(s)]

    def plan(
        self,
        desired: list[ResourceSpec],
        kinds: Iterable[ResourceKind] | None = None,
        selector: Selector = select_all,
    ) -> list[ReconcileAction]:
        """Read-only diff across kinds, for diagnose."""
        actions: list[ReconcileAction] = []
        for kind in self._kinds(kinds):
            want = [s for s in desired if s.kind == kind and selector(s)]
            actions += plan_kind(kind, want, self._observe(kind, selector))
        return actions

    # --- execution ------------------------------------------------------

    def reconcile(
        self,
        desired: list[ResourceSpec],
        kinds: Iterable[ResourceKind] | None = None,
        selector: Selector = select_all,
        confirm: ConfirmDeletes | None = None,
        defer_deletes: bool = False,
    ) -> ReconcileReport:
        """
        Converges the selected kinds towards ``desired``.

        ``selector`` narrows both sides to a subset (e.g. all instances but
        the bastion). ``confirm`` sees every pending delete once and may
        decline them, in which case they are reported as declined.

        With ``defer_deletes`` only the forward work runs; deletes and
        narrowing updates stay in ``report.deferred`` until ``finish`` is
        called with this and any later reports of the same pass.
        """
        report = ReconcileReport(cluster=self.cluster)
        failed: set[str] = set()

        for kind in self._kinds(kinds):
            want = [s for s in desired if s.kind == kind and selector(s)]
            have = self._observe(kind, selector)
            report.observed += have
            actions = plan_kind(kind, want, have)
            report.planned += actions
            if actions:
                logger.info(
                    f"{kind.value}: {len(actions)} action(s) "
                    f"({', '.join(a.describe() for a in actions)})"
                )

            forward, later = _split(actions)
            self._run_forward(forward, report, failed)
            report.deferred += later

        if defer_deletes:
            return report
        return self._finish(report, confirm)

    def finish(
        self, reports: list[ReconcileReport], confirm: ConfirmDeletes | None = None
    ) -> ReconcileReport:
        """Runs the work deferred by earlier passes. Returns the combined report."""
        combined = ReconcileReport(cluster=self.cluster)
        for report in reports:
            combined.extend(report)
        return self._finish(combined, confirm)

    def _finish(self, report: ReconcileReport, confirm: ConfirmDeletes | None) -> ReconcileReport:
        later, report.deferred = report.deferred, []
        failed = {f.action.name for f in report.failed} | {a.name for a in report.blocked}

        narrowing = sorted(
            (a for a in later if a.action != ActionType.DELETE and a.name not in failed),
            key=lambda a: KIND_ORDER.index(a.kind),
        )
        self._run_forward(narrowing, report, failed)

        pending = sorted(
            (a for a in later if a.action == ActionType.DELETE),
            key=lambda a: -KIND_ORDER.index(a.kind),
        )
        if not pending:
            return report

        if confirm is not None and not confirm(pending):
            logger.warning(f"{len(pending)} delete(s) declined")
            report.declined += pending
            return report

        self._run_deletes(pending, report.observed, report)
        return report

    def delete_resources(
        self, specs: list[ResourceSpec], confirm: ConfirmDeletes | None = None
    ) -> ReconcileReport:
        """
        Deletes exactly ``specs`` (observed resources), reverse dependency
        order, with the same label check and confirmation as a reconcile.
        """
        report = ReconcileReport(cluster=self.cluster)
        pending = [
            ReconcileAction(ActionType.DELETE, spec, "orphaned", actual=spec)
            for kind in reversed(KIND_ORDER)
            for spec in sorted((s for s in specs if s.kind == kind), key=_delete_order)
        ]
        report.planned += pending
        if not pending:
            return report
        if confirm is not None and not confirm(pending):
            report.declined += pending
            return report
        self._run_deletes(pending, specs, report)
        return report

    def _blocked(self, action: ReconcileAction, failed: set[str]) -> bool:
        return any(dep in failed for dep in action.spec.depends_on)

    def _run_forward(
        self, actions: list[ReconcileAction], report: ReconcileReport, failed: set[str]
    ) -> None:
        runnable = []
        for action in actions:
            if self._blocked(action, failed):
                logger.warning(f"Skipping {action.describe()}: a dependency failed")
                report.blocked.append(action)
                failed.add(action.name)
            else:
                runnable.append(action)

        parallel = [a for a in runnable if a.action != ActionType.REPLACE]
        serial = [a for a in runnable if a.action == ActionType.REPLACE]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._execute, a): a for a in parallel}
            for future in as_completed(futures):
                action = futures[future]
                self._record(action, future.exception(), report, failed)

        for action in serial:
            self._record(action, self._try(action), report, failed)

    def _run_deletes(
        self,
        pending: list[ReconcileAction],
        observed: list[ResourceSpec],
        report: ReconcileReport,
    ) -> None:
        """
        Deletes in the given (reverse dependency) order. A resource is not
        deleted while something that depends on it failed to go away.
        Indexed instances go one by one, stopping at the first failure so the
        surviving indices stay contiguous.
        """
        dependents: dict[str, set[str]] = {}
        for spec in observed:
            for dep in spec.depends_on:
                dependents.setdefault(dep, set()).add(spec.name)
        survived: set[str] = set()

        def blocked(action: ReconcileAction) -> bool:
            return bool(dependents.get(action.name, set()) & survived)

        by_kind: dict[ResourceKind, list[ReconcileAction]] = {}
        for action in pending:
            by_kind.setdefault(action.kind, []).append(action)

        for actions in by_kind.values():
            indexed, others = [], []
            for action in actions:
                if getattr(action.spec, "index", None) is not None:
                    indexed.append(action)
                else:
                    others.append(action)

            halted = False
            for action in indexed:
                if halted or blocked(action):
                    report.blocked.append(action)
                    survived.add(action.name)
                    continue
                error = self._try(action)
                self._record(action, error, report, survived)
                halted = error is not None

            runnable = []
            for action in others:
                if blocked(action):
                    report.blocked.append(action)
                    survived.add(action.name)
                else:
                    runnable.append(action)
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {executor.submit(self._execute, a): a for a in runnable}
                for future in as_completed(futures):
                    self._record(futures[future], future.exception(), report, survived)

    def _try(self, action: ReconcileAction) -> BaseException | None:
        try:
            self._execute(action)
        except Exception as e:
            return e
        return None

    def _record(
        self,
        action: ReconcileAction,
        error: BaseException | None,
        report: ReconcileReport,
        failed: set[str],
    ) -> None:
        if error is None:
            logger.info(f"[green]Done[/green] {action.describe()}")
            report.applied.append(action)
            return
        if not isinstance(error, Exception):
            raise error
        if isinstance(error, TalosGCPError) and error.kind is None:
            error.kind, error.name = action.kind.value, action.name
        logger.error(f"Failed {action.describe()}: {error}")
        report.failed.append(ActionFailure(action, error))
        failed.add(action.name)

    # --- single actions -------------------------------------------------

    def _with_retry(self, fn: Callable[..., None], *args: ResourceSpec) -> None:
        for attempt in Retrying(**self.retry_config):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying {fn.__name__} {args[0].kind.value}/{args[0].name} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                fn(*args)

    def _check_owned(self, spec: ResourceSpec) -> None:
        owner = spec.labels.get(CLUSTER_LABEL)
        if owner != self.cluster:
            raise SafetyViolation(
                f"refusing to delete: labeled cluster={owner!r}, reconciling {self.cluster!r}",
                kind=spec.kind.value,
                name=spec.name,
            )

    def _delete(self, spec: ResourceSpec) -> None:
        self._check_owned(spec)
        self._with_retry(self.provider.delete, spec)

    def _create(self, spec: ResourceSpec) -> None:
        try:
            self._with_retry(self.provider.create, spec)
        except ConflictError:
            # Name taken: replace it only if it is ours
            existing = self.provider.describe(spec.kind, spec.name)
            if existing is None or existing.labels.get(CLUSTER_LABEL) != self.cluster:
                raise SafetyViolation(
                    "name already taken by a resource this cluster does not own",
                    kind=spec.kind.value,
                    name=spec.name,
                ) from None
            logger.info(f"{spec.kind.value}/{spec.name} exists with different fields; replacing")
            self._delete(existing)
            self._with_retry(self.provider.create, spec)

    def _execute(self, action: ReconcileAction) -> None:
        if action.action == ActionType.CREATE:
            self._create(action.spec)
        elif action.action == ActionType.UPDATE:
            assert action.actual is not None
            self._with_retry(self.provider.update, action.spec, action.actual)
        elif action.action == ActionType.REPLACE:
            assert action.actual is not None
            self._delete(action.actual)
            self._create(action.spec)
        elif action.action == ActionType.DELETE:
            self._delete(action.spec)
