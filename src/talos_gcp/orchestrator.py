"""
Phase orchestrator: drives a cluster from nothing to Ready in five phases.

Each phase reconciles its slice of the desired state and then performs the
side effects that depend on it (images, machine configs, bootstrap). The
last completed phase is recorded in ``<output>/<cluster>/phase-state.json``
so an interrupted ``create`` resumes where it stopped. Every phase is safe
to re-run because the reconciler is idempotent.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path

from pydantic import BaseModel, Field
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from .addons import AddonInstaller
from .bastion import wait_for_bastion
from .bootstrap import TalosBootstrapper
from .compiler import Names, compile_desired_state
from .config import ClusterConfig
from .errors import ConfigurationError, PhaseTimeoutError, ProviderError, TalosGCPError
from .images import ImageBuilder
from .logger import logger
from .provider import Provider
from .reconciler import ConfirmDeletes, Reconciler, Selector, select_all
from .schemas.actions import ReconcileReport
from .schemas.base import ResourceKind, ResourceSpec
from .schemas.compute import InstanceSpec, StaticAddressSpec


class Phase(IntEnum):
    RESOURCES = 1
    INFRASTRUCTURE = 2
    WAIT_READY = 3
    BASTION_SETUP = 4
    BOOTSTRAP_REGISTER = 5

    @property
    def label(self) -> str:
        return {
            Phase.RESOURCES: "Resources",
            Phase.INFRASTRUCTURE: "Infrastructure",
            Phase.WAIT_READY: "WaitReady",
            Phase.BASTION_SETUP: "BastionSetup",
            Phase.BOOTSTRAP_REGISTER: "BootstrapRegister",
        }[self]


NETWORK_KINDS = [
    ResourceKind.NETWORK,
    ResourceKind.SUBNET,
    ResourceKind.ROUTER,
    ResourceKind.NAT,
    ResourceKind.FIREWALL_RULE,
    ResourceKind.STATIC_ADDRESS,
]
NODE_KINDS = [ResourceKind.INSTANCE_GROUP, ResourceKind.INSTANCE, ResourceKind.LOAD_BALANCER]


def is_bastion(spec: ResourceSpec) -> bool:
    return isinstance(spec, InstanceSpec) and spec.role == "bastion"


def not_bastion(spec: ResourceSpec) -> bool:
    return not is_bastion(spec)


def lookup_endpoint_ip(provider: Provider, config: ClusterConfig) -> str:
    """Address of the internal control-plane load balancer."""
    name = Names(config.cluster_name).cp_ilb_ip
    snapshot = provider.read(config.cluster_name, [ResourceKind.STATIC_ADDRESS])
    spec = snapshot.get(ResourceKind.STATIC_ADDRESS, name)
    if not isinstance(spec, StaticAddressSpec) or not spec.address:
        raise ProviderError(
            "control-plane address has not been allocated",
            kind=ResourceKind.STATIC_ADDRESS.value,
            name=name,
        )
    return spec.address


class PhaseState(BaseModel):
    cluster: str
    completed: int = Field(default=0, description="Highest phase number completed")
    failed_phase: int | None = None
    last_error: str | None = None
    updated_at: datetime | None = None

    @property
    def next_phase(self) -> Phase | None:
        if self.completed >= Phase.BOOTSTRAP_REGISTER:
            return None
        return Phase(self.completed + 1)


class PhaseStateStore:
    """JSON phase marker on local disk."""

    def __init__(self, config: ClusterConfig):
        self.cluster = config.cluster_name
        self.path: Path = config.output_dir / "phase-state.json"

    def load(self) -> PhaseState:
        if not self.path.is_file():
            return PhaseState(cluster=self.cluster)
        try:
            return PhaseState.model_validate_json(self.path.read_text())
        except ValueError as e:
            logger.warning(f"Ignoring unreadable phase marker {self.path}: {e}")
            return PhaseState(cluster=self.cluster)

    def save(self, state: PhaseState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        state = state.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self.path.write_text(state.model_dump_json(indent=2))

    def mark_completed(self, phase: Phase) -> None:
        state = self.load()
        self.save(
            state.model_copy(
                update={
                    "completed": max(state.completed, int(phase)),
                    "failed_phase": None,
                    "last_error": None,
                }
            )
        )

    def mark_failed(self, phase: Phase, reason: str) -> None:
        state = self.load()
        self.save(state.model_copy(update={"failed_phase": int(phase), "last_error": reason}))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass(frozen=True)
class PipelineResult:
    ready: bool
    phase: Phase | None = None
    reason: str = ""
    error: TalosGCPError | None = None

    @classmethod
    def done(cls) -> "PipelineResult":
        return cls(ready=True)

    @classmethod
    def failed(cls, phase: Phase, error: TalosGCPError) -> "PipelineResult":
        return cls(ready=False, phase=phase, reason=str(error), error=error)

    def describe(self) -> str:
        if self.ready:
            return "Ready"
        assert self.phase is not None
        return f"Failed in {self.phase.label}: {self.reason}"


class Orchestrator:
    def __init__(
        self,
        config: ClusterConfig,
        provider: Provider,
        reconciler: Reconciler | None = None,
        image_builder: ImageBuilder | None = None,
        bootstrapper: TalosBootstrapper | None = None,
        addons: AddonInstaller | None = None,
        confirm: ConfirmDeletes | None = None,
        store: PhaseStateStore | None = None,
    ):
        self.config = config
        self.provider = provider
        self.reconciler = reconciler or Reconciler(
            provider, config.cluster_name, max_workers=config.max_parallel
        )
        self.image_builder = image_builder or ImageBuilder(config)
        self.bootstrapper = bootstrapper or TalosBootstrapper(config)
        self.addons = addons or AddonInstaller(config)
        self.confirm = confirm
        self.store = store or PhaseStateStore(config)
        self.names = Names(config.cluster_name)
        self._desired: list[ResourceSpec] | None = None

        self.phases: dict[Phase, Callable[[], None]] = {
            Phase.RESOURCES: self.resources,
            Phase.INFRASTRUCTURE: self.infrastructure,
            Phase.WAIT_READY: self.wait_ready,
            Phase.BASTION_SETUP: self.bastion_setup,
            Phase.BOOTSTRAP_REGISTER: self.bootstrap_register,
        }

    @property
    def desired(self) -> list[ResourceSpec]:
        if self._desired is None:
            self._desired = compile_desired_state(self.config)
        return self._desired

    # --- driving --------------------------------------------------------

    def run(self, resume: bool = True) -> PipelineResult:
        """
        Runs the pipeline. With ``resume`` it starts from the first phase
        the marker does not record as completed; otherwise from phase 1.
        """
        start = Phase.RESOURCES
        if resume:
            state = self.store.load()
            if state.next_phase is None:
                logger.info("All phases completed previously; re-checking the last phase")
                start = Phase.BOOTSTRAP_REGISTER
            else:
                start = state.next_phase
                if start > Phase.RESOURCES:
                    logger.info(f"Resuming at phase {int(start)} ({start.label})")

        for phase in Phase:
            if phase < start:
                continue
            result = self._execute(phase)
            if not result.ready:
                return result
        return PipelineResult.done()

    def run_phase(self, phase: Phase) -> PipelineResult:
        """Runs exactly one phase. Its predecessor must already be complete."""
        if phase > Phase.RESOURCES and self.store.load().completed < phase - 1:
            previous = Phase(phase - 1)
            return PipelineResult.failed(
                phase,
                ConfigurationError(
                    f"phase {int(previous)} ({previous.label}) has not completed",
                    phase=phase.label,
                ),
            )
        return self._execute(phase)

    def _execute(self, phase: Phase) -> PipelineResult:
        logger.info(f"[bold]Phase {int(phase)}: {phase.label}[/bold]")
        try:
            self.phases[phase]()
        except TalosGCPError as e:
            error = e.with_phase(phase.label)
            logger.error(f"Phase {phase.label} failed: {error}")
            self.store.mark_failed(phase, str(error))
            return PipelineResult.failed(phase, error)
        self.store.mark_completed(phase)
        return PipelineResult.done()

    def _reconcile(
        self,
        kinds: list[ResourceKind],
        selector: Selector = select_all,
        defer_deletes: bool = False,
    ) -> ReconcileReport:
        report = self.reconciler.reconcile(
            self.desired,
            kinds=kinds,
            selector=selector,
            confirm=self.confirm,
            defer_deletes=defer_deletes,
        )
        return self._check(report)

    def _check(self, report: ReconcileReport) -> ReconcileReport:
        logger.info(report.summary())
        if not report.converged:
            reasons = [f.describe() for f in report.failed]
            if report.declined:
                reasons.append(f"{len(report.declined)} delete(s) declined")
            if report.blocked:
                reasons.append(f"{len(report.blocked)} action(s) blocked by failed dependencies")
            first = report.failed[0].error if report.failed else None
            # Keep the class of the first failure so retryable stays meaningful
            error_cls = type(first) if isinstance(first, TalosGCPError) else ProviderError
            raise error_cls(
                f"out of sync: {', '.join(report.out_of_sync)} ({'; '.join(reasons)})"
            )
        return report

    # --- lookups --------------------------------------------------------

    def endpoint_ip(self) -> str:
        return lookup_endpoint_ip(self.provider, self.config)

    def node_specs(self) -> list[InstanceSpec]:
        return [s for s in self.desired if isinstance(s, InstanceSpec) and not is_bastion(s)]

    def observed_nodes(self) -> dict[str, InstanceSpec]:
        snapshot = self.provider.read(self.config.cluster_name, [ResourceKind.INSTANCE])
        return {
            s.name: s for s in snapshot.of_kind(ResourceKind.INSTANCE) if isinstance(s, InstanceSpec)
        }

    def bootstrap_node_ip(self) -> str:
        first = self.names.instance("cp", 0)
        node = self.observed_nodes().get(first)
        if node is None or not node.internal_ip:
            raise ProviderError(
                "first control-plane node has no internal IP",
                kind=ResourceKind.INSTANCE.value,
                name=first,
            )
        return node.internal_ip

    # --- phases ---------------------------------------------------------

    def resources(self) -> None:
        self._reconcile([ResourceKind.SERVICE_ACCOUNT, ResourceKind.BUCKET])
        created = self.image_builder.ensure_images()
        if created:
            logger.info(f"Created image(s): {', '.join(created)}")

    def infrastructure(self) -> None:
        # Removals wait until the nodes have moved off what is being removed
        network = self._reconcile(NETWORK_KINDS, defer_deletes=True)
        self.bootstrapper.prepare_configs(self.endpoint_ip())
        nodes = self._reconcile(NODE_KINDS, selector=not_bastion, defer_deletes=True)
        self._check(self.reconciler.finish([network, nodes], confirm=self.confirm))

    def _not_running(self) -> list[str]:
        observed = self.observed_nodes()
        return sorted(
            spec.name
            for spec in self.node_specs()
            if spec.name not in observed or observed[spec.name].status != "RUNNING"
        )

    def wait_ready(self) -> None:
        retrying = Retrying(
            stop=stop_after_delay(self.config.ready_timeout),
            wait=wait_fixed(self.config.poll_interval),
            retry=retry_if_result(bool),
            before_sleep=lambda state: logger.info(
                f"Waiting for {len(state.outcome.result())} instance(s) to run..."
            ),
        )
        try:
            retrying(self._not_running)
        except RetryError as e:
            pending = e.last_attempt.result()
            raise PhaseTimeoutError(
                f"instances not RUNNING after {self.config.ready_timeout}s: {', '.join(pending)}"
            ) from None
        logger.info(f"All {len(self.node_specs())} node instance(s) are RUNNING")

    def bastion_setup(self) -> None:
        self._reconcile([ResourceKind.INSTANCE], selector=is_bastion)
        wait_for_bastion(self.config)
        self.bootstrapper.push_to_bastion()
        # The schedule also covers the bastion, so it can only attach now
        self._reconcile([ResourceKind.SCHEDULE_POLICY])

    def bootstrap_register(self) -> None:
        node_ip = self.bootstrap_node_ip()
        self.bootstrapper.bootstrap(node_ip)
        self.bootstrapper.fetch_kubeconfig(node_ip)
        self.bootstrapper.wait_registered([s.name for s in self.node_specs()])
        installed = self.addons.ensure_installed()
        if installed:
            logger.info(f"Add-ons in place: {', '.join(installed)}")
        self.bootstrapper.finalize_bastion(self.endpoint_ip())
