"""Validation of metric names, metric prefixes and label names."""

from __future__ import annotations

from collections.abc import Iterable

__all__ = [
    "NameValidationError",
    "validate_name",
    "assert_label_name",
    "assert_label_names",
    "assert_metric_name",
    "assert_metric_prefix",
]

_CLIP_LENGTH = 32
_CLIP_MARKER = "…"


class NameValidationError(ValueError):
    """Raised when a metric or label name does not follow the naming rules."""


def _is_valid_start_char(ch: str) -> bool:
    return ch == "_" or "a" <= ch <= "z"


def _is_valid_char(ch: str) -> bool:
    return ch == "_" or "a" <= ch <= "z" or "0" <= ch <= "9"


def validate_name(name: str) -> str:
    """Check that `name` consists of `[_a-z0-9]` and doesn't start with a digit.

    Returns the name unchanged; raises `NameValidationError` otherwise.
    Positions in error messages are byte offsets in the UTF-8 encoding.
    """
    if not name:
        raise NameValidationError("name cannot be empty")

    for pos, byte in enumerate(name.encode("utf-8")):
        if byte > 127:
            raise NameValidationError(
                f"name contains non-ASCII chars, first at position {pos}"
            )
        ch = chr(byte)
        if pos == 0 and not _is_valid_start_char(ch):
            raise NameValidationError(
                f"name starts with disallowed char '{ch}'; allowed chars are [_a-z]"
            )
        if not _is_valid_char(ch):
            raise NameValidationError(
                f"name contains a disallowed char '{ch}' at position {pos}; "
                "allowed chars are [_a-z0-9]"
            )
    return name


def _clip(name: str) -> str:
    if len(name) <= _CLIP_LENGTH:
        return name
    return name[:_CLIP_LENGTH] + _CLIP_MARKER


def _check(kind: str, name: str) -> None:
    try:
        validate_name(name)
    except NameValidationError as err:
        raise NameValidationError(f"{kind} `{_clip(name)}` is invalid: {err}") from err


def assert_label_name(name: str) -> None:
    """Raise `NameValidationError` if `name` is not a valid label name."""
    _check("Label name", name)


def assert_label_names(names: Iterable[str]) -> None:
    """Same as `assert_label_name`, but for several names."""
    for name in names:
        assert_label_name(name)


def assert_metric_name(name: str) -> None:
    """Raise `NameValidationError` if `name` is not a valid metric name."""
    _check("Metric name", name)


def assert_metric_prefix(name: str) -> None:
    """Raise `NameValidationError` if `name` is not a valid metric prefix."""
    _check("Metric prefix", name)