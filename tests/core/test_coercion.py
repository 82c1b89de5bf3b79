from __future__ import annotations

import pytest

from flatmate_chat.core.coercion import coerce_bool, coerce_id, coerce_int, coerce_str


@pytest.mark.parametrize(
    ("value", "expected"),
    [(5, 5), ("7", 7), (" 8 ", 8), ("9.0", 9), (3.7, 3), (True, None), ("x", None), (None, None)],
)
def test_coerce_int(value, expected) -> None:
    assert coerce_int(value) == expected


def test_coerce_bool_accepts_common_spellings() -> None:
    assert coerce_bool("yes") is True
    assert coerce_bool("OFF") is False
    assert coerce_bool(0) is False
    assert coerce_bool("maybe", default=True) is True


def test_coerce_id_keeps_temp_ids_as_strings() -> None:
    assert coerce_id("999") == 999
    assert coerce_id(999) == 999
    assert coerce_id(" tmp-abc ") == "tmp-abc"
    assert coerce_id("") is None
    assert coerce_id(None) is None


def test_coerce_str_rejects_containers() -> None:
    assert coerce_str(12) == "12"
    assert coerce_str(["a"], "fallback") == "fallback"
