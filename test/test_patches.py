"""Tests for the merge strategies and replace preparation."""

import copy

import pytest

from cnpg_errors import StructuralMismatch
from cnpg_patches import (
    AppendToArray,
    Create,
    MergeMap,
    SetField,
    ToggleAnnotation,
    apply_strategy,
    changed_paths,
    lookup,
    prepare_for_replace,
)
from fakes import make_cluster


@pytest.fixture
def cluster():
    document = make_cluster()
    document["metadata"]["resourceVersion"] = "41"
    return document


class TestSetField:
    def test_overwrites_value_and_leaves_input_untouched(self, cluster):
        original = copy.deepcopy(cluster)
        result = apply_strategy(cluster, SetField(("spec", "instances"), 5))

        assert result["spec"]["instances"] == 5
        assert cluster == original

    def test_other_keys_are_preserved(self, cluster):
        result = apply_strategy(cluster, SetField(("spec", "instances"), 5))

        assert changed_paths(cluster, result) == [("spec", "instances")]
        result["spec"]["instances"] = 3
        assert result == cluster

    def test_last_write_wins(self, cluster):
        path = ("spec", "instances")
        first = apply_strategy(cluster, SetField(path, 4))
        final = apply_strategy(first, SetField(path, 7))

        assert lookup(final, path) == 7
        assert changed_paths(cluster, final) == [path]

    def test_creates_intermediate_maps(self, cluster):
        result = apply_strategy(cluster, SetField(("spec", "pgbouncer", "poolMode"), "transaction"))
        assert result["spec"]["pgbouncer"] == {"poolMode": "transaction"}

    def test_traversing_a_scalar_is_a_mismatch(self, cluster):
        with pytest.raises(StructuralMismatch):
            apply_strategy(cluster, SetField(("spec", "instances", "count"), 5))

    def test_missing_root_is_a_mismatch(self):
        with pytest.raises(StructuralMismatch, match="no 'spec' section"):
            apply_strategy({"metadata": {"name": "x"}}, SetField(("spec", "instances"), 2))


class TestToggleAnnotation:
    def test_on_creates_annotation_map(self, cluster):
        result = apply_strategy(cluster, ToggleAnnotation("cnpg.io/hibernation", True, "on"))
        assert result["metadata"]["annotations"] == {"cnpg.io/hibernation": "on"}

    def test_off_removes_key_and_keeps_map(self, cluster):
        cluster["metadata"]["annotations"] = {"cnpg.io/hibernation": "on", "owner": "dba"}
        result = apply_strategy(cluster, ToggleAnnotation("cnpg.io/hibernation", False))
        assert result["metadata"]["annotations"] == {"owner": "dba"}

    def test_off_leaves_empty_map_in_place(self, cluster):
        cluster["metadata"]["annotations"] = {"cnpg.io/hibernation": "on"}
        result = apply_strategy(cluster, ToggleAnnotation("cnpg.io/hibernation", False))
        assert result["metadata"]["annotations"] == {}

    def test_off_without_annotations_creates_empty_map(self, cluster):
        assert "annotations" not in cluster["metadata"]
        result = apply_strategy(cluster, ToggleAnnotation("cnpg.io/hibernation", False))
        assert result["metadata"]["annotations"] == {}
        assert changed_paths(cluster, result) == [("metadata", "annotations")]


class TestAppendToArray:
    def test_absent_list_is_created(self, cluster):
        element = {"name": "analytics", "storage": {"size": "5Gi"}}
        result = apply_strategy(cluster, AppendToArray(("spec", "tablespaces"), element))
        assert result["spec"]["tablespaces"] == [element]

    def test_appending_twice_yields_two_entries(self, cluster):
        strategy = AppendToArray(("spec", "bootstrap", "initdb", "postInitApplicationSQL"), "CREATE EXTENSION x")
        once = apply_strategy(cluster, strategy)
        twice = apply_strategy(once, strategy)

        assert twice["spec"]["bootstrap"]["initdb"]["postInitApplicationSQL"] == [
            "CREATE EXTENSION x",
            "CREATE EXTENSION x",
        ]

    def test_appending_to_a_map_is_a_mismatch(self, cluster):
        with pytest.raises(StructuralMismatch, match="expected a list"):
            apply_strategy(cluster, AppendToArray(("spec", "storage"), "x"))


class TestMergeMap:
    def test_sibling_keys_untouched(self, cluster):
        result = apply_strategy(cluster, MergeMap(("spec", "postgresql", "parameters"), {"max_connections": "200"}))
        assert result["spec"]["postgresql"]["parameters"] == {
            "max_connections": "200",
            "shared_buffers": "256MB",
        }

    def test_merging_into_a_scalar_is_a_mismatch(self, cluster):
        with pytest.raises(StructuralMismatch, match="expected a map"):
            apply_strategy(cluster, MergeMap(("spec", "instances"), {"a": 1}))


def test_create_returns_an_independent_copy():
    template = {"spec": {"instances": 1}}
    result = apply_strategy({}, Create(template))
    result["spec"]["instances"] = 9
    assert template["spec"]["instances"] == 1


def test_prepare_for_replace_strips_status_and_keeps_version(cluster):
    body = prepare_for_replace(cluster)
    assert "status" not in body
    assert body["metadata"]["resourceVersion"] == "41"
    assert "status" in cluster


def test_changed_paths_and_lookup_handle_dotted_keys(cluster):
    result = apply_strategy(cluster, ToggleAnnotation("kubectl.kubernetes.io/restartedAt", True, "2024-05-01T10:00:00Z"))

    paths = changed_paths(cluster, result)
    assert paths == [("metadata", "annotations")]

    key = ("metadata", "annotations", "kubectl.kubernetes.io/restartedAt")
    assert lookup(result, key) == "2024-05-01T10:00:00Z"
    assert lookup(cluster, key, "(unset)") == "(unset)"
