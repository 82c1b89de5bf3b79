from typing import Any, Optional, Union


def coerce_int(
    value: Any, default: Optional[int] = None, *, reject_bool: bool = True
) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool):
        return default if reject_bool else int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return default
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            pass
    return default


def coerce_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "y", "on"}:
            return True
        if lowered in {"false", "0", "no", "n", "off"}:
            return False
    return default


def coerce_str(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return default
    return str(value)


def coerce_id(value: Any) -> Optional[Union[int, str]]:
    """Numeric ids become ints; other non-empty scalars stay strings."""
    as_int = coerce_int(value)
    if as_int is not None and not isinstance(value, float):
        return as_int
    if isinstance(value, str) and value.strip():
        return value.strip()
    return as_int
