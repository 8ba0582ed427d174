"""
DeploymentOrchestrator — pull → build → start → validate.

Stages run in order within one deployment; per-image pulls and
per-service builds run one at a time so progress and logs stay
ordered.

    pull      every pre-built image for the selection; failures are
              recorded per image and do not stop the pipeline
    build     every locally built service; same continue-on-error rule
    start     remove orphans and stale containers that would collide by
              name, then ``compose up`` with retry on transient errors
    validate  after a settle delay, every expected container must exist
              and be running; otherwise the deployment failed even
              though ``compose up`` succeeded

Structural problems (unknown profiles, services missing from the
descriptor) fail immediately without retries.  ``deploy()`` never
raises for orchestration failures: it returns a result dict carrying
the stage, the failing services and remediation steps.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from src.core.catalog import profiles as catalog
from src.core.errors import (
    DeploymentError,
    InfrastructureError,
    OrchestratorError,
    ValidationError,
)
from src.core.models.settings import OrchestratorSettings
from src.core.models.wizard_state import Phase
from src.core.persistence.state_file import WizardStateStore
from src.core.reliability.retry import RetryPolicy, retry_operation
from src.core.services.compose import ComposeClient
from src.core.services.event_bus import EventBus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]

# Retry policy for pulls and builds: transient registry/network errors only.
FETCH_RETRY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0)


class DeploymentOrchestrator:
    """Drives the compose tool through one deployment."""

    def __init__(
        self,
        client: ComposeClient,
        *,
        settings: OrchestratorSettings | None = None,
        state_store: WizardStateStore | None = None,
        bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.settings = settings or OrchestratorSettings()
        self.state_store = state_store
        self.bus = bus
        self.sleep = sleep

    # ── Helpers ─────────────────────────────────────────────────

    def _progress(
        self,
        on_progress: ProgressCallback | None,
        stage: str,
        message: str,
        *,
        current: int = 0,
        total: int = 0,
        item: str = "",
        **extra: Any,
    ) -> None:
        payload = {
            "stage": stage,
            "current": current,
            "total": total,
            "item": item,
            "message": message,
            **extra,
        }
        logger.info("[%s] %s", stage, message)
        if self.bus is not None:
            self.bus.publish("deploy:progress", key=stage, data=payload)
        if on_progress is not None:
            on_progress(payload)

    def _phase(self, phase: Phase) -> None:
        if self.state_store is None:
            return
        if self.state_store.load().is_complete:
            logger.debug("Installation already complete; phase %s not recorded", phase)
            return
        self.state_store.update_phase(phase)

    def _record_service(self, name: str, status: str, message: str = "") -> None:
        if self.state_store is not None:
            self.state_store.update_service_status(name, status, message)

    def _container_names(self, services: list[str]) -> dict[str, str]:
        descriptor = self.client.descriptor()
        return {s: (descriptor.container_for(s) if descriptor else s) for s in services}

    # ── Stages ──────────────────────────────────────────────────

    def pull_images(self, profiles: list[str], on_progress: ProgressCallback | None = None) -> dict[str, Any]:
        """Pull every pre-built image for the selection, continuing past failures."""
        images = catalog.images_for(profiles)
        results: list[dict[str, Any]] = []
        for i, image in enumerate(images, start=1):
            self._progress(on_progress, "pull", f"Pulling {image}", current=i, total=len(images), item=image)
            try:
                retry_operation(
                    lambda image=image: self.client.pull_image(image, timeout=self.settings.pull_timeout_s),
                    policy=FETCH_RETRY,
                    sleep=self.sleep,
                    label=f"pull {image}",
                )
                results.append({"image": image, "success": True})
            except InfrastructureError as e:
                logger.warning("Pull of %s failed: %s", image, e.message)
                results.append({
                    "image": image,
                    "success": False,
                    "error": e.message,
                    "kind": e.kind.value,
                    "suggestion": e.suggestion,
                })
        failed = [r["image"] for r in results if not r["success"]]
        return {"success": not failed, "results": results, "failed": failed}

    def build_services(self, profiles: list[str], on_progress: ProgressCallback | None = None) -> dict[str, Any]:
        """Build every locally built service, continuing past failures."""
        services = catalog.build_services_for(profiles)
        results: list[dict[str, Any]] = []
        for i, service in enumerate(services, start=1):
            self._progress(on_progress, "build", f"Building {service}", current=i, total=len(services), item=service)
            try:
                retry_operation(
                    lambda service=service: self.client.build_service(service, timeout=self.settings.build_timeout_s),
                    policy=FETCH_RETRY,
                    sleep=self.sleep,
                    label=f"build {service}",
                )
                results.append({"service": service, "success": True})
            except InfrastructureError as e:
                logger.warning("Build of %s failed: %s", service, e.message)
                self._record_service(service, "failed", e.message)
                results.append({
                    "service": service,
                    "success": False,
                    "error": e.message,
                    "kind": e.kind.value,
                    "suggestion": e.suggestion,
                })
        failed = [r["service"] for r in results if not r["success"]]
        return {"success": not failed, "results": results, "failed": failed}

    def required_services_declared(self, profiles: list[str]) -> None:
        """Raise if the descriptor does not declare every expected service."""
        descriptor = self.client.descriptor()
        if descriptor is None:
            return
        missing = [s for s in catalog.services_for(profiles) if s not in descriptor.declared()]
        if missing:
            err = ValidationError(
                f"Services not declared in {descriptor.path.name}: {', '.join(missing)}",
                stage="start",
                service=missing[0],
                details={"missing_services": missing},
            )
            err.code = "SERVICE_NOT_FOUND"
            raise err

    def start_services(self, profiles: list[str], on_progress: ProgressCallback | None = None) -> list[str]:
        """Clear stale containers and bring the selection up.

        Raises:
            ValidationError: A service is not declared (not retried).
            InfrastructureError: ``compose up`` failed after retries.
        """
        services = catalog.services_for(profiles)
        self.required_services_declared(profiles)

        self._progress(on_progress, "start", "Removing orphaned containers")
        try:
            self.client.down(remove_orphans=True)
        except InfrastructureError as e:
            logger.debug("compose down failed (ignored): %s", e.message)

        # Container names are global; a leftover from a prior run blocks ``up``
        for service, container in self._container_names(services).items():
            try:
                self.client.remove_container(container)
            except InfrastructureError as e:
                logger.debug("No stale container %s for %s: %s", container, service, e.message)

        policy = RetryPolicy(
            max_retries=self.settings.start_retries,
            initial_delay=self.settings.start_retry_delay_s,
            max_delay=self.settings.start_retry_delay_s * 4,
        )

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._progress(
                on_progress, "start",
                f"Start failed ({error}); retrying in {delay:.1f}s",
                current=attempt, total=policy.max_retries, retrying=True,
            )

        self._progress(on_progress, "start", f"Starting {len(services)} service(s)", total=len(services))
        retry_operation(
            lambda: self.client.up(services, timeout=self.settings.start_timeout_s),
            policy=policy,
            on_retry=_on_retry,
            sleep=self.sleep,
            label="compose up",
        )
        return services

    def validate_services(self, profiles: list[str]) -> dict[str, Any]:
        """Compare expected containers with what is actually running."""
        services = catalog.services_for(profiles)
        names = self._container_names(services)
        containers = self.client.containers()

        status: dict[str, dict[str, Any]] = {}
        failed: list[str] = []
        for service in services:
            info = containers.get(names[service])
            state = info["state"] if info else "missing"
            running = state == "running"
            status[service] = {"container": names[service], "running": running, "state": state}
            if not running:
                failed.append(service)
            self._record_service(service, "running" if running else "failed", "" if running else state)

        return {"all_running": not failed, "services": status, "failed": failed}

    # ── Pipeline ────────────────────────────────────────────────

    def deploy(self, profiles: list[str], on_progress: ProgressCallback | None = None) -> dict[str, Any]:
        """Run the full pipeline for a profile selection.

        Returns:
            ``{success, stage, profiles, pull, build, validation}`` plus
            ``error``, ``code``, ``failed_services`` and ``remediation``
            on failure.
        """
        resolution = catalog.resolve(profiles)
        result: dict[str, Any] = {
            "success": False,
            "stage": "resolve",
            "profiles": list(resolution.normalized_ids),
            "pull": None,
            "build": None,
            "validation": None,
        }
        if not resolution.ok:
            err = ValidationError(
                "; ".join(e.message for e in resolution.errors),
                stage="resolve",
                details={"errors": [e.to_dict() for e in resolution.errors]},
            )
            return self._failed(result, err, [])

        selected = list(resolution.normalized_ids)
        services = catalog.services_for(selected)
        started = False
        try:
            self._phase(Phase.BUILDING)
            result["stage"] = "pull"
            result["pull"] = self.pull_images(selected, on_progress)
            result["stage"] = "build"
            result["build"] = self.build_services(selected, on_progress)

            self._phase(Phase.STARTING)
            result["stage"] = "start"
            self.start_services(selected, on_progress)
            started = True

            self._phase(Phase.VALIDATING)
            result["stage"] = "validate"
            self._progress(on_progress, "validate", "Waiting for services to settle")
            self.sleep(self.settings.settle_delay_s)
            validation = self.validate_services(selected)
            result["validation"] = validation
            if validation["failed"]:
                raise DeploymentError(
                    f"Services not running after start: {', '.join(validation['failed'])}",
                    stage="validate",
                    service=validation["failed"][0],
                    failed_services=validation["failed"],
                )
        except OrchestratorError as e:
            failed = getattr(e, "failed_services", None) or ([e.service] if e.service else [])
            if started and self.settings.teardown_on_failure:
                result["torn_down"] = self._teardown(services)
            return self._failed(result, e, failed)

        self._progress(on_progress, "validate", "All services running")
        result["success"] = True
        result["stage"] = "complete"
        result["failed_services"] = []
        return result

    def _failed(self, result: dict[str, Any], err: OrchestratorError, failed: list[str]) -> dict[str, Any]:
        logger.error("Deployment failed at %s: %s", err.stage or result["stage"], err.message)
        result.update({
            "success": False,
            "stage": err.stage or result["stage"],
            "error": err.message,
            "code": err.code,
            "failed_services": failed,
            "details": err.details,
            "remediation": err.remediation(),
        })
        if isinstance(err, InfrastructureError):
            result["kind"] = err.kind.value
            result["suggestion"] = err.suggestion
        if self.bus is not None:
            self.bus.publish("deploy:failed", key=result["stage"], data={
                "error": err.message, "failed_services": failed,
            })
        return result

    def _teardown(self, services: list[str]) -> bool:
        """Stop and remove the containers of a failed start."""
        try:
            self.client.remove(services)
            logger.info("Tore down partially started services: %s", ", ".join(services))
            for service in services:
                self._record_service(service, "stopped", "removed after failed start")
            return True
        except InfrastructureError as e:
            logger.warning("Teardown after failed start did not complete: %s", e.message)
            return False

    # ── Day-2 operations ────────────────────────────────────────

    def status(self, profiles: list[str]) -> dict[str, Any]:
        """Running state of every service in the selection (never raises)."""
        try:
            return {"ok": True, **self.validate_services(catalog.migrate_profile_ids(profiles))}
        except InfrastructureError as e:
            return {"ok": False, **e.to_dict()}

    def stop(self, profiles: list[str]) -> dict[str, Any]:
        services = catalog.services_for(profiles)
        try:
            self.client.stop(services)
        except InfrastructureError as e:
            return {"ok": False, **e.to_dict()}
        for service in services:
            self._record_service(service, "stopped")
        return {"ok": True, "stopped": services}

    def remove(self, profiles: list[str]) -> dict[str, Any]:
        services = catalog.services_for(profiles)
        try:
            self.client.remove(services)
        except InfrastructureError as e:
            return {"ok": False, **e.to_dict()}
        return {"ok": True, "removed": services}

    def logs(self, service: str, tail: int = 100) -> dict[str, Any]:
        try:
            return {"ok": True, "service": service, "logs": self.client.logs(service, tail=tail)}
        except InfrastructureError as e:
            return {"ok": False, **e.to_dict()}
