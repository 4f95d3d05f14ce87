"""Closed action registry and typed decoding of request commands.

Every action tag maps to one frozen dataclass and an explicit table of the
JSON fields it accepts.  Decoding walks that table only; fields the table does
not list are reported back as ignored instead of being assigned dynamically.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from host_relay.bus.errors import ActionDecodeError
from host_relay.bus.models import RawCommand

Vector3 = tuple[float, float, float]
Scalar = str | int | float | bool

WIDGET_KINDS = ("panel", "button", "text", "canvas", "scrollview")
PRIMITIVE_SHAPES = ("cube", "sphere", "plane", "cylinder", "capsule")
ANCHORS = (
    "top-left",
    "top-center",
    "top-right",
    "middle-left",
    "middle-center",
    "middle-right",
    "bottom-left",
    "bottom-center",
    "bottom-right",
    "stretch",
)


@dataclass(slots=True, frozen=True)
class CreateContext:
    name: str
    path: str = "contexts"
    template: str = "default"
    add_to_build: bool = False


@dataclass(slots=True, frozen=True)
class AddWidget:
    name: str
    parent: str | None = None
    kind: str = "panel"
    text: str = ""
    width: float = 100.0
    height: float = 100.0
    anchor: str = "middle-center"


@dataclass(slots=True, frozen=True)
class AddPrimitive:
    name: str
    shape: str = "cube"
    parent: str | None = None
    position: Vector3 = (0.0, 0.0, 0.0)
    rotation: Vector3 = (0.0, 0.0, 0.0)
    scale: Vector3 = (1.0, 1.0, 1.0)


@dataclass(slots=True, frozen=True)
class AddComponent:
    target: str
    component_type: str
    properties: dict[str, Scalar] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ForceCompile:
    reason: str = ""


@dataclass(slots=True, frozen=True)
class CheckStatus:
    pass


Action = CreateContext | AddWidget | AddPrimitive | AddComponent | ForceCompile | CheckStatus


@dataclass(slots=True, frozen=True)
class FieldSpec:
    """One accepted JSON field: its key, the dataclass attribute and the typed coercer."""

    key: str
    attr: str
    coerce: Callable[[str, Any], Any]
    required: bool = False


@dataclass(slots=True, frozen=True)
class ActionSpec:
    tag: str
    action_type: type
    fields: tuple[FieldSpec, ...]
    mutates: bool


@dataclass(slots=True)
class DecodedCommand:
    action: Action
    spec: ActionSpec
    ignored_fields: list[str]


def _string(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ActionDecodeError(f"'{key}' must be a non-empty string")
    return value.strip()


def _text(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ActionDecodeError(f"'{key}' must be a string")
    return value


def _optional_string(key: str, value: Any) -> str | None:
    if value is None or value == "":
        return None
    return _string(key, value)


def _number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ActionDecodeError(f"'{key}' must be a number")
    return float(value)


def _boolean(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ActionDecodeError(f"'{key}' must be a boolean")
    return value


def _vector3(key: str, value: Any) -> Vector3:
    if not isinstance(value, list | tuple) or len(value) != 3:
        raise ActionDecodeError(f"'{key}' must be an array of 3 numbers")
    x, y, z = (_number(key, item) for item in value)
    return (x, y, z)


def _choice(*allowed: str) -> Callable[[str, Any], str]:
    def coerce(key: str, value: Any) -> str:
        text = _string(key, value).lower()
        if text not in allowed:
            raise ActionDecodeError(
                f"'{key}' must be one of {', '.join(allowed)}; got {value!r}",
            )
        return text

    return coerce


def _properties(key: str, value: Any) -> dict[str, Scalar]:
    if not isinstance(value, dict):
        raise ActionDecodeError(f"'{key}' must be an object")
    result: dict[str, Scalar] = {}
    for name, item in value.items():
        if not isinstance(item, str | int | float | bool):
            raise ActionDecodeError(f"'{key}.{name}' must be a string, number or boolean")
        result[str(name)] = item
    return result


ACTION_SPECS: dict[str, ActionSpec] = {
    spec.tag: spec
    for spec in (
        ActionSpec(
            tag="create-context",
            action_type=CreateContext,
            fields=(
                FieldSpec("name", "name", _string, required=True),
                FieldSpec("path", "path", _string),
                FieldSpec("template", "template", _string),
                FieldSpec("addToBuild", "add_to_build", _boolean),
            ),
            mutates=True,
        ),
        ActionSpec(
            tag="add-widget",
            action_type=AddWidget,
            fields=(
                FieldSpec("name", "name", _string, required=True),
                FieldSpec("parent", "parent", _optional_string),
                FieldSpec("kind", "kind", _choice(*WIDGET_KINDS)),
                FieldSpec("text", "text", _text),
                FieldSpec("width", "width", _number),
                FieldSpec("height", "height", _number),
                FieldSpec("anchor", "anchor", _choice(*ANCHORS)),
            ),
            mutates=True,
        ),
        ActionSpec(
            tag="add-primitive",
            action_type=AddPrimitive,
            fields=(
                FieldSpec("name", "name", _string, required=True),
                FieldSpec("shape", "shape", _choice(*PRIMITIVE_SHAPES)),
                FieldSpec("parent", "parent", _optional_string),
                FieldSpec("position", "position", _vector3),
                FieldSpec("rotation", "rotation", _vector3),
                FieldSpec("scale", "scale", _vector3),
            ),
            mutates=True,
        ),
        ActionSpec(
            tag="add-component",
            action_type=AddComponent,
            fields=(
                FieldSpec("target", "target", _string, required=True),
                FieldSpec("componentType", "component_type", _string, required=True),
                FieldSpec("properties", "properties", _properties),
            ),
            mutates=True,
        ),
        ActionSpec(
            tag="force-compile",
            action_type=ForceCompile,
            fields=(FieldSpec("reason", "reason", _text),),
            mutates=False,
        ),
        ActionSpec(
            tag="check-status",
            action_type=CheckStatus,
            fields=(),
            mutates=False,
        ),
    )
}


def supported_actions() -> tuple[str, ...]:
    return tuple(ACTION_SPECS)


def decode_command(raw: RawCommand) -> DecodedCommand:
    """Build the typed action for one raw command or raise ActionDecodeError."""

    if raw.problem is not None:
        raise ActionDecodeError(raw.problem)
    spec = ACTION_SPECS.get(raw.action)
    if spec is None:
        raise ActionDecodeError(
            f"Unknown action: {raw.action!r}. Supported: {', '.join(ACTION_SPECS)}",
        )

    kwargs: dict[str, Any] = {}
    for field_spec in spec.fields:
        if field_spec.key not in raw.fields or raw.fields[field_spec.key] is None:
            if field_spec.required:
                raise ActionDecodeError(f"{spec.tag} requires '{field_spec.key}'")
            continue
        kwargs[field_spec.attr] = field_spec.coerce(field_spec.key, raw.fields[field_spec.key])

    known = {field_spec.key for field_spec in spec.fields}
    ignored = sorted(key for key in raw.fields if key not in known)
    return DecodedCommand(action=spec.action_type(**kwargs), spec=spec, ignored_fields=ignored)
