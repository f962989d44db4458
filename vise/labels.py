"""Label sets, label values and units of measurement."""

from __future__ import annotations

import dataclasses
import enum
import math
import re
from collections.abc import Callable, Mapping, Sequence
from datetime import timedelta
from typing import Any

from vise.validation import assert_label_name

__all__ = [
    "Unit",
    "RenameRule",
    "DurationAsSecs",
    "label_field",
    "label_set",
    "label_value",
    "encode_label_value",
    "encode_label_set",
    "map_labels",
]

_FIELD_KEY = "vise"
_SET_ATTR = "__vise_label_set__"
_VALUE_ATTR = "__vise_label_value__"
_OVERRIDES_ATTR = "__label_names__"


class Unit(str, enum.Enum):
    """Unit of measurement for a metric or a label."""

    AMPERES = "amperes"
    BYTES = "bytes"
    CELSIUS = "celsius"
    GRAMS = "grams"
    JOULES = "joules"
    METERS = "meters"
    RATIOS = "ratios"
    SECONDS = "seconds"
    VOLTS = "volts"


_WORD_START = re.compile(r"(?<!^)(?=[A-Z])")


class RenameRule(str, enum.Enum):
    """Transformation of PascalCase enum member names into label values."""

    LOWERCASE = "lowercase"
    UPPERCASE = "UPPERCASE"
    CAMEL_CASE = "camelCase"
    SNAKE_CASE = "snake_case"
    SCREAMING_SNAKE_CASE = "SCREAMING_SNAKE_CASE"
    KEBAB_CASE = "kebab-case"
    SCREAMING_KEBAB_CASE = "SCREAMING-KEBAB-CASE"

    def apply(self, name: str) -> str:
        """Rename a PascalCase name; every uppercase letter starts a new word."""
        if not name.isascii():
            raise ValueError(f"name `{name}` must consist of ASCII chars to be renamed")
        if self is RenameRule.LOWERCASE:
            return name.lower()
        if self is RenameRule.UPPERCASE:
            return name.upper()
        if self is RenameRule.CAMEL_CASE:
            return name[:1].lower() + name[1:]

        if self in (RenameRule.SNAKE_CASE, RenameRule.SCREAMING_SNAKE_CASE):
            separator = "_"
        else:
            separator = "-"
        renamed = _WORD_START.sub(separator, name).lower()
        if self in (RenameRule.SCREAMING_SNAKE_CASE, RenameRule.SCREAMING_KEBAB_CASE):
            return renamed.upper()
        return renamed


@dataclasses.dataclass(frozen=True, order=True)
class DurationAsSecs:
    """Duration encoded as a label value in fractional seconds."""

    duration: timedelta


@dataclasses.dataclass(frozen=True)
class _FieldOptions:
    skip: Callable[[Any], bool] | None
    unit: Unit | None


@dataclasses.dataclass(frozen=True)
class _LabelField:
    attr: str
    label: str
    skip: Callable[[Any], bool] | None

    def encode(self, owner: object) -> tuple[str, str] | None:
        value = getattr(owner, self.attr)
        if value is None:
            return None
        if self.skip is not None and self.skip(value):
            return None
        return self.label, encode_label_value(value)


@dataclasses.dataclass(frozen=True)
class _LabelSetSpec:
    label: str | None
    fields: tuple[_LabelField, ...] = ()

    def encode(self, owner: object) -> list[tuple[str, str]]:
        if self.label is not None:
            return [(self.label, _encode_own_value(owner))]
        return [pair for pair in (f.encode(owner) for f in self.fields) if pair]


@dataclasses.dataclass(frozen=True)
class _LabelValueSpec:
    fmt: str = "{}"
    names: Mapping[Any, str] | None = None

    def encode(self, value: object) -> str:
        if self.names is not None:
            return self.names[value]
        return self.fmt.format(value)


def label_field(*, skip: Callable[[Any], bool] | None = None, unit: Unit | str | None = None):
    """Declare a dataclass field of a label set with extra options.

    `skip` is a predicate; the label is left out when it returns true for the value.
    `unit` appends the unit as a suffix to the label name.
    """
    options = _FieldOptions(skip=skip, unit=Unit(unit) if unit is not None else None)
    return dataclasses.field(metadata={_FIELD_KEY: options})


def label_set(cls: type | None = None, *, label: str | None = None):
    """Mark a class as a set of labels.

    With `label`, each instance is a single label with that name. Otherwise the
    class must be a dataclass, and each field becomes a label; fields set to
    `None` are left out.
    """

    def decorate(target: type) -> type:
        if label is not None:
            assert_label_name(label)
            spec = _LabelSetSpec(label=label)
        else:
            if not dataclasses.is_dataclass(target):
                raise TypeError(
                    f"{target.__name__} must be a dataclass or specify a single `label`"
                )
            spec = _LabelSetSpec(
                label=None,
                fields=tuple(_field_spec(f) for f in dataclasses.fields(target)),
            )
        setattr(target, _SET_ATTR, spec)
        return target

    return decorate if cls is None else decorate(cls)


def _field_spec(field: dataclasses.Field) -> _LabelField:
    options = field.metadata.get(_FIELD_KEY, _FieldOptions(skip=None, unit=None))
    label = field.name if options.unit is None else f"{field.name}_{options.unit.value}"
    assert_label_name(label)
    return _LabelField(attr=field.name, label=label, skip=options.skip)


def label_value(
    cls: type | None = None,
    *,
    rename_all: RenameRule | str | None = None,
    fmt: str | None = None,
):
    """Mark a class as a label value.

    `fmt` is a `str.format` template applied to the value (default `"{}"`).
    `rename_all` applies to enums: member names are renamed by the rule; a
    class attribute `__label_names__` maps member names to explicit values.
    """
    if rename_all is not None and fmt is not None:
        raise TypeError("`rename_all` and `fmt` are mutually exclusive")

    def decorate(target: type) -> type:
        if rename_all is None:
            spec = _LabelValueSpec(fmt="{}" if fmt is None else fmt)
        else:
            if not (isinstance(target, type) and issubclass(target, enum.Enum)):
                raise TypeError("`rename_all` can only be used on enums")
            rule = RenameRule(rename_all)
            overrides = dict(target.__dict__.get(_OVERRIDES_ATTR, {}))
            unknown = set(overrides) - set(target.__members__)
            if unknown:
                raise ValueError(f"unknown members in {_OVERRIDES_ATTR}: {sorted(unknown)}")
            names = {
                member: overrides.get(member.name, rule.apply(member.name))
                for member in target
            }
            spec = _LabelValueSpec(names=names)
        setattr(target, _VALUE_ATTR, spec)
        return target

    return decorate if cls is None else decorate(cls)


def _encode_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        text = f"{mantissa}e{int(exponent)}"
    return text


def _encode_own_value(value: object) -> str:
    spec = getattr(type(value), _VALUE_ATTR, None)
    if spec is not None:
        return spec.encode(value)
    return str(value)


def encode_label_value(value: object) -> str:
    """Encode a single label value as text."""
    spec = getattr(type(value), _VALUE_ATTR, None)
    if spec is not None:
        return spec.encode(value)
    if isinstance(value, DurationAsSecs):
        return _encode_float(value.duration.total_seconds())
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(int(value))
    if isinstance(value, float):
        return _encode_float(value)
    if isinstance(value, str):
        return str.__str__(value)
    return str(value)


def encode_label_set(labels: object) -> list[tuple[str, str]]:
    """Encode a label set as an ordered list of `(name, value)` pairs.

    Accepts `None` or `()` (no labels), objects marked with `label_set`,
    mappings and sequences of `(name, value)` pairs.
    """
    if labels is None:
        return []
    spec = getattr(type(labels), _SET_ATTR, None)
    if spec is not None:
        return spec.encode(labels)
    if isinstance(labels, Mapping):
        return [(str(name), encode_label_value(value)) for name, value in labels.items()]
    if isinstance(labels, Sequence) and not isinstance(labels, (str, bytes)):
        pairs = []
        for item in labels:
            if not (isinstance(item, tuple) and len(item) == 2):
                raise TypeError(f"expected a (name, value) pair, got {item!r}")
            name, value = item
            pairs.append((str(name), encode_label_value(value)))
        return pairs
    raise TypeError(f"{type(labels).__name__} cannot be encoded as a label set")


def map_labels(names: Sequence[str] | None, values: object) -> list[tuple[str, str]]:
    """Pair label names with label values.

    With no names, `values` is encoded as a label set itself. With one name,
    `values` is a single value; with several, a tuple of the same length.
    """
    if not names:
        return encode_label_set(values)
    names = tuple(names)
    if len(names) == 1:
        return [(names[0], encode_label_value(values))]
    if not isinstance(values, tuple) or len(values) != len(names):
        raise ValueError(
            f"expected a tuple of {len(names)} label values for labels {list(names)}, "
            f"got {values!r}"
        )
    return [(name, encode_label_value(value)) for name, value in zip(names, values)]