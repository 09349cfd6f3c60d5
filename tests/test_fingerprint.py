"""Tests for snapshot fingerprints and canonical JSON."""
from __future__ import annotations

import math

from boardsync.serialization.fingerprint import (
    canonical_json,
    fingerprint,
    is_unserializable,
    payload_size,
)
from boardsync.serialization.board import BoardNode


def test_key_order_does_not_change_fingerprint() -> None:
    first = {"nodes": [{"id": "a", "position": {"x": 1, "y": 2}}], "edges": []}
    second = {"edges": [], "nodes": [{"position": {"y": 2, "x": 1}, "id": "a"}]}

    assert fingerprint(first) == fingerprint(second)


def test_different_content_changes_fingerprint() -> None:
    assert fingerprint({"nodes": [{"id": "a"}]}) != fingerprint({"nodes": [{"id": "b"}]})


def test_list_order_is_significant() -> None:
    assert fingerprint([1, 2]) != fingerprint([2, 1])


def test_none_snapshot_has_no_fingerprint() -> None:
    assert fingerprint(None) is None


def test_unserializable_snapshot_gets_unique_sentinel() -> None:
    snapshot = {"value": object()}

    first = fingerprint(snapshot)
    second = fingerprint(snapshot)

    assert is_unserializable(first)
    assert first != second
    assert not is_unserializable(fingerprint({"value": 1}))


def test_nan_is_treated_as_unserializable() -> None:
    assert is_unserializable(fingerprint({"x": math.nan}))


def test_objects_with_to_payload_are_encoded() -> None:
    node = BoardNode(id="a")

    assert canonical_json([node]) == canonical_json([node.to_payload()])


def test_canonical_json_is_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_payload_size_counts_utf8_bytes() -> None:
    assert payload_size({"t": "é"}) == len('{"t":"é"}'.encode("utf-8"))


def test_failing_to_payload_hook_gets_sentinel() -> None:
    class DisposedCard:
        def to_payload(self):
            raise AttributeError("card was disposed")

    assert is_unserializable(fingerprint({"nodes": [DisposedCard()]}))
