"""Host backend interface and an in-memory reference host."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from host_relay.bus.errors import HostOperationError
from host_relay.bus.models import CompilerMessage


class HostBackend(Protocol):
    """Domain operations the bus drives; every call happens on the affinity thread."""

    def context_exists(self, name: str) -> bool:
        """Return whether a context with this name exists."""

    def create_context(
        self,
        name: str,
        *,
        path: str,
        template: str,
        add_to_build: bool,
    ) -> None:
        """Create a context and make it active."""

    def open_context(self, name: str) -> None:
        """Make an existing context active."""

    def active_context(self) -> str | None:
        """Name of the active context, if any."""

    def available_names(self) -> list[str]:
        """Names usable as a parent in the active context."""

    def add_node(
        self,
        name: str,
        *,
        parent: str | None,
        kind: str,
        attributes: dict[str, Any],
    ) -> None:
        """Add an object under ``parent`` (context root when None)."""

    def attach_component(
        self,
        target: str,
        *,
        component_type: str,
        properties: dict[str, Any],
    ) -> None:
        """Attach a component to an existing object."""

    def save(self) -> None:
        """Persist pending context changes."""

    def request_compile(self) -> None:
        """Ask the host to recompile."""

    def is_compiling(self) -> bool:
        """Current compile flag, polled every tick."""

    def compile_messages(self) -> list[CompilerMessage]:
        """Diagnostics of the most recent compile."""

    def on_tick(self) -> None:
        """Host-side housekeeping, called once per tick before anything else."""


@dataclass(slots=True)
class SimulatedNode:
    name: str
    parent: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    components: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


@dataclass(slots=True)
class SimulatedContext:
    name: str
    path: str
    template: str
    add_to_build: bool = False
    nodes: dict[str, SimulatedNode] = field(default_factory=dict)
    dirty: bool = False


class SimulatedHost:
    """In-memory host with a tick-driven compiler.

    The first thread that mutates the host becomes its owner; a mutation from
    any other thread raises ``HostOperationError``, which makes affinity
    violations visible in tests.
    """

    def __init__(self, *, compile_ticks: int = 3, strict_affinity: bool = True) -> None:
        self.contexts: dict[str, SimulatedContext] = {}
        self.save_count = 0
        self.saved: list[list[str]] = []
        self.compile_ticks = compile_ticks
        self.strict_affinity = strict_affinity
        self.next_compile_messages: list[CompilerMessage] = []
        self._active: str | None = None
        self._owner: int | None = None
        self._compile_pending = False
        self._ticks_remaining = 0
        self._messages: list[CompilerMessage] = []

    # -- contexts --------------------------------------------------------------

    def context_exists(self, name: str) -> bool:
        return name in self.contexts

    def create_context(
        self,
        name: str,
        *,
        path: str = "contexts",
        template: str = "default",
        add_to_build: bool = False,
    ) -> None:
        self._check_thread()
        if name in self.contexts:
            raise HostOperationError(f"Context '{name}' already exists")
        self.contexts[name] = SimulatedContext(
            name=name,
            path=path,
            template=template,
            add_to_build=add_to_build,
            dirty=True,
        )
        self._active = name

    def open_context(self, name: str) -> None:
        self._check_thread()
        if name not in self.contexts:
            raise HostOperationError(f"Context '{name}' not found")
        self._active = name

    def active_context(self) -> str | None:
        return self._active

    def available_names(self) -> list[str]:
        if self._active is None:
            return []
        return [self._active, *self.contexts[self._active].nodes]

    # -- objects ---------------------------------------------------------------

    def add_node(
        self,
        name: str,
        *,
        parent: str | None = None,
        kind: str = "panel",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self._check_thread()
        context = self._require_active()
        if name in context.nodes or name == context.name:
            raise HostOperationError(f"Object '{name}' already exists in '{context.name}'")
        resolved_parent = parent or context.name
        if resolved_parent != context.name and resolved_parent not in context.nodes:
            raise HostOperationError(
                f"Parent '{resolved_parent}' not found. "
                f"Available: {', '.join(self.available_names())}",
            )
        context.nodes[name] = SimulatedNode(
            name=name,
            parent=resolved_parent,
            kind=kind,
            attributes=dict(attributes or {}),
        )
        context.dirty = True

    def attach_component(
        self,
        target: str,
        *,
        component_type: str,
        properties: dict[str, Any] | None = None,
    ) -> None:
        self._check_thread()
        context = self._require_active()
        node = context.nodes.get(target)
        if node is None:
            raise HostOperationError(
                f"Target '{target}' not found. Available: {', '.join(context.nodes) or '<none>'}",
            )
        node.components.append((component_type, dict(properties or {})))
        context.dirty = True

    def save(self) -> None:
        self._check_thread()
        written = [context.name for context in self.contexts.values() if context.dirty]
        for context in self.contexts.values():
            context.dirty = False
        self.save_count += 1
        self.saved.append(written)

    # -- compiler --------------------------------------------------------------

    def request_compile(self) -> None:
        self._check_thread()
        self._compile_pending = True

    def is_compiling(self) -> bool:
        return self._ticks_remaining > 0

    def compile_messages(self) -> list[CompilerMessage]:
        return list(self._messages)

    def on_tick(self) -> None:
        if self._ticks_remaining > 0:
            self._ticks_remaining -= 1
            if self._ticks_remaining == 0:
                self._messages = list(self.next_compile_messages)
            return
        if self._compile_pending and self.compile_ticks > 0:
            self._compile_pending = False
            self._ticks_remaining = self.compile_ticks
            self._messages = []
        elif self._compile_pending:
            # Zero-length compile: nothing to rebuild, the flag never rises.
            self._compile_pending = False

    # -- helpers ---------------------------------------------------------------

    def _require_active(self) -> SimulatedContext:
        if self._active is None:
            raise HostOperationError("No active context; create or open one first")
        return self.contexts[self._active]

    def _check_thread(self) -> None:
        if not self.strict_affinity:
            return
        current = threading.get_ident()
        if self._owner is None:
            self._owner = current
        elif self._owner != current:
            raise HostOperationError("Host state mutated outside the affinity thread")
