"""Batch execution of decoded requests against the host backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from host_relay.bus.actions import (
    AddComponent,
    AddPrimitive,
    AddWidget,
    CheckStatus,
    CreateContext,
    ForceCompile,
    decode_command,
)
from host_relay.bus.errors import ActionDecodeError, ContextError, HostOperationError
from host_relay.bus.host import HostBackend
from host_relay.bus.models import (
    BatchTranscript,
    CommandOutcome,
    CommandStatus,
    ContextSpec,
    FailurePolicy,
    RawCommand,
    Request,
    utc_now,
)

logger = logging.getLogger(__name__)

CompileRequestedHook = Callable[[str | None], None]


class BatchExecutor:
    """Run one request's commands in order and report every outcome.

    Handlers are looked up by action type in a fixed registry and only ever see
    the typed fields of their own action.  Host errors fail the current command;
    whether the batch goes on afterwards is decided by the failure policy.  The
    host is saved once, after the last command, and only when something
    actually changed.
    """

    def __init__(
        self,
        host: HostBackend,
        *,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
        on_compile_requested: CompileRequestedHook | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.host = host
        self.failure_policy = failure_policy
        self._on_compile_requested = on_compile_requested or (lambda _correlation_id: None)
        self._clock = clock
        self._handlers: dict[type, Callable[[Any, Request], str]] = {
            CreateContext: self._create_context,
            AddWidget: self._add_widget,
            AddPrimitive: self._add_primitive,
            AddComponent: self._add_component,
            ForceCompile: self._force_compile,
            CheckStatus: self._check_status,
        }

    def execute(self, request: Request, *, request_name: str, raw_content: str = "") -> BatchTranscript:
        transcript = BatchTranscript(
            request_name=request_name,
            started_at=self._clock(),
            correlation_id=request.correlation_id,
            raw_content=raw_content,
        )

        if request.context is not None:
            try:
                transcript.context_message = self._prepare_context(request.context)
            except ContextError as error:
                transcript.error = str(error)
                transcript.ended_at = self._clock()
                logger.error("Request %s rejected: %s", request_name, error)
                return transcript

        mutated = False
        for index, raw in enumerate(request.commands):
            if transcript.aborted:
                transcript.outcomes.append(
                    CommandOutcome(
                        index=index,
                        action=raw.action or "<missing>",
                        status=CommandStatus.SKIPPED,
                        message="Skipped after an earlier command failed",
                        inputs=dict(raw.fields),
                    ),
                )
                continue
            outcome, mutating = self._run_command(index, raw, request)
            transcript.outcomes.append(outcome)
            if outcome.status == CommandStatus.SUCCEEDED:
                mutated = mutated or mutating
            elif self.failure_policy == FailurePolicy.ABORT:
                transcript.aborted = True

        if mutated and not transcript.aborted:
            self._save(transcript)

        transcript.ended_at = self._clock()
        logger.info(
            "Request %s finished: %d succeeded, %d failed, saved=%s",
            request_name,
            transcript.succeeded,
            transcript.failed,
            transcript.saved,
        )
        return transcript

    def _prepare_context(self, spec: ContextSpec) -> str:
        try:
            if self.host.context_exists(spec.name):
                self.host.open_context(spec.name)
                return f"Opened context '{spec.name}'"
            if not spec.create:
                raise ContextError(f"Context '{spec.name}' not found and create is disabled")
            self.host.create_context(
                spec.name,
                path=spec.path,
                template=spec.template,
                add_to_build=False,
            )
        except HostOperationError as error:
            raise ContextError(f"Context '{spec.name}' unavailable: {error}") from error
        return f"Created context '{spec.name}'"

    def _run_command(self, index: int, raw: RawCommand, request: Request) -> tuple[CommandOutcome, bool]:
        started = time.perf_counter()
        outcome = CommandOutcome(
            index=index,
            action=raw.action or "<missing>",
            status=CommandStatus.FAILED,
            message="",
            inputs=dict(raw.fields),
        )
        mutating = False
        try:
            decoded = decode_command(raw)
            outcome.notes = [f"Ignored unknown field '{name}'" for name in decoded.ignored_fields]
            mutating = decoded.spec.mutates
            outcome.message = self._handlers[type(decoded.action)](decoded.action, request)
            outcome.status = CommandStatus.SUCCEEDED
        except (ActionDecodeError, HostOperationError) as error:
            outcome.message = str(error)
        except Exception as error:
            logger.exception("Command %d (%s) crashed", index, raw.action)
            outcome.message = f"Unexpected error: {error}"
        outcome.duration_ms = int((time.perf_counter() - started) * 1000)
        if outcome.status == CommandStatus.FAILED:
            logger.warning("Command %d (%s) failed: %s", index, outcome.action, outcome.message)
        return outcome, mutating

    def _save(self, transcript: BatchTranscript) -> None:
        try:
            self.host.save()
        except Exception as error:
            logger.exception("Saving after request %s failed", transcript.request_name)
            transcript.error = f"Save failed: {error}"
            return
        transcript.saved = True

    # -- handlers --------------------------------------------------------------

    def _create_context(self, action: CreateContext, _request: Request) -> str:
        if self.host.context_exists(action.name):
            raise HostOperationError(f"Context '{action.name}' already exists")
        self.host.create_context(
            action.name,
            path=action.path,
            template=action.template,
            add_to_build=action.add_to_build,
        )
        return f"Created context '{action.name}' at {action.path}"

    def _add_widget(self, action: AddWidget, _request: Request) -> str:
        self.host.add_node(
            action.name,
            parent=action.parent,
            kind=action.kind,
            attributes={
                "text": action.text,
                "width": action.width,
                "height": action.height,
                "anchor": action.anchor,
            },
        )
        return f"Added {action.kind} '{action.name}' under '{action.parent or self.host.active_context()}'"

    def _add_primitive(self, action: AddPrimitive, _request: Request) -> str:
        self.host.add_node(
            action.name,
            parent=action.parent,
            kind=action.shape,
            attributes={
                "position": list(action.position),
                "rotation": list(action.rotation),
                "scale": list(action.scale),
            },
        )
        return f"Added {action.shape} '{action.name}'"

    def _add_component(self, action: AddComponent, _request: Request) -> str:
        self.host.attach_component(
            action.target,
            component_type=action.component_type,
            properties=dict(action.properties),
        )
        return f"Attached {action.component_type} to '{action.target}'"

    def _force_compile(self, action: ForceCompile, request: Request) -> str:
        self.host.request_compile()
        self._on_compile_requested(request.correlation_id)
        if action.reason:
            return f"Compile requested: {action.reason}"
        return "Compile requested"

    def _check_status(self, _action: CheckStatus, _request: Request) -> str:
        state = "compiling" if self.host.is_compiling() else "idle"
        return f"Host is {state}; active context: {self.host.active_context() or '<none>'}"
