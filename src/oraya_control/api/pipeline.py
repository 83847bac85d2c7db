"""Admin mutation pipeline.

Every superadmin write goes through the same stages::

    AUTHENTICATE -> AUTHORIZE -> VALIDATE -> MUTATE -> AUDIT -> DONE

Authentication and authorization happen in the ``require_admin_role``
dependency; holding an :class:`AdminContext` is proof that both passed, so a
pipeline starts at AUTHORIZE. The remaining stages run inside the request's
database transaction:

* validators raise ``ControlPlaneError`` subclasses to reject the request,
* the primary write runs next,
* dependent writes follow. A critical one aborts the request; a best-effort
  one is rolled back to a savepoint, logged and reported in ``warnings``,
* one audit row is written in a savepoint. Failing to write it is logged and
  reported in ``warnings`` but never fails the request.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from oraya_control.api.admin.deps import AdminContext
from oraya_control.api.errors import ControlPlaneError, UnexpectedError
from oraya_control.api.services.audit import AuditService
from oraya_control.api.utils.logging import redact_sensitive, sanitize_for_log
from oraya_control.models.audit import AuditAction, AuditResourceType

logger = logging.getLogger(__name__)

Validator = Callable[[], Awaitable[None]]


class PipelineStage(enum.IntEnum):
    AUTHENTICATE = 1
    AUTHORIZE = 2
    VALIDATE = 3
    MUTATE = 4
    AUDIT = 5
    DONE = 6


@dataclass
class DependentStep:
    """A write that follows the primary write and receives its result."""

    name: str
    action: Callable[[Any], Awaitable[Any]]
    critical: bool = False


@dataclass
class StepOutcome:
    name: str
    ok: bool
    critical: bool
    result: Any = None
    error: Optional[str] = None


@dataclass
class AuditRecord:
    resource_id: Optional[str]
    changes: Optional[dict[str, Any]] = None


@dataclass
class MutationOutcome:
    result: Any
    steps: list[StepOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    audit_log_id: Optional[str] = None

    def step(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        return None


class AdminMutationPipeline:
    """Runs one superadmin mutation through validation, writes and audit."""

    def __init__(
        self,
        ctx: AdminContext,
        action: AuditAction | str,
        resource_type: AuditResourceType | str,
    ):
        self.ctx = ctx
        self.action = action.value if isinstance(action, AuditAction) else action
        self.resource_type = (
            resource_type.value
            if isinstance(resource_type, AuditResourceType)
            else resource_type
        )
        self.stage = PipelineStage.AUTHORIZE

    def _advance(self, stage: PipelineStage) -> None:
        if stage < self.stage:
            raise RuntimeError(
                f"Pipeline cannot move back from {self.stage.name} to {stage.name}"
            )
        self.stage = stage

    async def execute(
        self,
        mutate: Callable[[], Awaitable[Any]],
        validate: Sequence[Validator] = (),
        dependents: Sequence[DependentStep] = (),
        audit: Optional[Callable[[Any], AuditRecord]] = None,
    ) -> MutationOutcome:
        self._advance(PipelineStage.VALIDATE)
        for validator in validate:
            await self._guarded(validator)

        self._advance(PipelineStage.MUTATE)
        result = await self._guarded(mutate)
        outcome = MutationOutcome(result=result)

        for step in dependents:
            step_outcome = await self._run_dependent(step, result)
            outcome.steps.append(step_outcome)
            if not step_outcome.ok:
                outcome.warnings.append(f"{step.name} failed: {step_outcome.error}")

        self._advance(PipelineStage.AUDIT)
        if audit is not None:
            await self._write_audit(audit(result), outcome)

        self._advance(PipelineStage.DONE)
        for warning in outcome.warnings:
            logger.warning("%s completed with warning: %s", self.action, warning)
        return outcome

    async def _guarded(self, func: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await func()
        except ControlPlaneError:
            raise
        except Exception as exc:
            logger.exception(
                "%s failed during %s", self.action, self.stage.name.lower()
            )
            raise UnexpectedError(str(exc) or "Internal server error") from exc

    async def _run_dependent(self, step: DependentStep, result: Any) -> StepOutcome:
        if step.critical:
            value = await self._guarded(lambda: step.action(result))
            return StepOutcome(step.name, ok=True, critical=True, result=value)

        try:
            async with self.ctx.db.begin_nested():
                value = await step.action(result)
        except Exception as exc:
            logger.warning(
                "%s: best-effort step %s failed: %s",
                self.action,
                step.name,
                sanitize_for_log(str(exc)),
            )
            return StepOutcome(
                step.name, ok=False, critical=False, error=str(exc) or type(exc).__name__
            )
        return StepOutcome(step.name, ok=True, critical=False, result=value)

    async def _write_audit(self, record: AuditRecord, outcome: MutationOutcome) -> None:
        try:
            async with self.ctx.db.begin_nested():
                entry = await AuditService(self.ctx.db).log(
                    action=self.action,
                    resource_type=self.resource_type,
                    resource_id=record.resource_id,
                    admin_id=self.ctx.admin_id,
                    admin_email=self.ctx.admin_email,
                    changes=record.changes,
                    ip_address=self.ctx.ip_address,
                    user_agent=self.ctx.user_agent,
                )
            outcome.audit_log_id = str(entry.id)
        except Exception as exc:
            logger.error(
                "Audit write failed for %s %s:%s (%s): %s",
                self.action,
                self.resource_type,
                record.resource_id,
                redact_sensitive(record.changes),
                sanitize_for_log(str(exc)),
            )
            outcome.warnings.append("audit log write failed")
