"""
Tests for the diff engine — structural comparison and action choice.
"""

import pytest

from converge.core.engine.differ import (
    ActionKind,
    changed_attributes,
    check_prevent_destroy,
    diff_instance,
    keep_ignored,
    normalize,
    values_equal,
)
from converge.core.engine.expander import ResourceInstance
from converge.core.errors import ProtectedResourceError
from converge.core.models.address import InstanceAddress
from converge.core.models.declaration import Declaration, LifecyclePolicy
from converge.core.models.expressions import Deferred, Known
from converge.core.models.state import StateRecord


def _instance(attributes: dict, lifecycle: LifecyclePolicy | None = None) -> ResourceInstance:
    decl = Declaration("compute_instance", "web", lifecycle=lifecycle or LifecyclePolicy())
    return ResourceInstance(
        address=InstanceAddress("compute_instance", "web"),
        declaration=decl,
        attributes={k: v if isinstance(v, Deferred) else Known(v) for k, v in attributes.items()},
    )


def _record(attributes: dict) -> StateRecord:
    return StateRecord(
        address="compute_instance.web",
        resource_type="compute_instance",
        provider="compute",
        external_id="i-1",
        attributes=attributes,
    )


def _never(_type: str, _attr: str) -> bool:
    return False


def _image_forces_new(_type: str, attr: str) -> bool:
    return attr == "image"


# ── Structural equality ──────────────────────────────────────────────


class TestValuesEqual:
    def test_sets_ignore_order(self):
        assert values_equal(frozenset({"a", "b"}), ["b", "a"])

    def test_lists_keep_order(self):
        assert not values_equal([1, 2], [2, 1])

    def test_bool_never_equals_number(self):
        assert not values_equal(True, 1)
        assert not values_equal(0, False)
        assert values_equal(True, True)

    def test_nested_maps(self):
        assert values_equal({"a": {"b": [1]}}, {"a": {"b": [1]}})
        assert not values_equal({"a": 1}, {"a": 1, "b": 2})

    def test_set_vs_scalar(self):
        assert not values_equal(frozenset({"a"}), "a")

    def test_normalize_sorts_sets(self):
        assert normalize({"tags": frozenset({"b", "a"})}) == {"tags": ["a", "b"]}


class TestChangedAttributes:
    def test_computed_attributes_ignored(self):
        desired = {"name": Known("web")}
        prior = {"name": "web", "id": "i-1", "self_link": "x"}
        assert changed_attributes(desired, prior) == []

    def test_deferred_always_changes(self):
        changes = changed_attributes({"network": Deferred("compute_network.main.id")}, {"network": "n-1"})
        assert [c[0] for c in changes] == ["network"]

    def test_ignore_whole_attribute(self):
        desired = {"tags": Known({"env": "dev"})}
        assert changed_attributes(desired, {"tags": {"env": "hacked"}}, ["tags"]) == []

    def test_ignore_nested_key(self):
        desired = {"tags": Known({"env": "dev", "owner": "me"})}
        prior = {"tags": {"env": "dev", "owner": "someone-else"}}
        assert changed_attributes(desired, prior, ["tags.owner"]) == []
        prior["tags"]["env"] = "prod"
        assert [c[0] for c in changed_attributes(desired, prior, ["tags.owner"])] == ["tags"]

    def test_ignore_all(self):
        assert changed_attributes({"a": Known(1)}, {"a": 2}, ["all"]) == []


class TestKeepIgnored:
    def test_nested_key_taken_from_prior(self):
        desired = {"env": "prod", "team": "a"}
        prior = {"env": "dev", "team": "ops"}
        assert keep_ignored("labels", desired, prior, {"labels.team"}) == {"env": "prod", "team": "ops"}

    def test_nested_key_absent_in_prior_dropped(self):
        assert keep_ignored("labels", {"env": "prod", "team": "a"}, {"env": "dev"}, {"labels.team"}) == {
            "env": "prod"
        }

    def test_deep_path(self):
        desired = {"net": {"mtu": 1500, "ttl": 1}}
        prior = {"net": {"mtu": 9000, "ttl": 5}}
        assert keep_ignored("spec", desired, prior, {"spec.net.mtu"}) == {"net": {"mtu": 9000, "ttl": 1}}

    def test_other_attributes_untouched(self):
        assert keep_ignored("size", 3, 1, {"labels.team"}) == 3
        assert keep_ignored("labels", {"team": "a"}, None, {"labels.team"}) == {"team": "a"}


# ── Action choice ────────────────────────────────────────────────────


class TestDiffInstance:
    def test_create(self):
        diff = diff_instance(_instance({"name": "web"}), None, requires_replacement=_never)
        assert diff.action == ActionKind.CREATE

    def test_destroy(self):
        diff = diff_instance(None, _record({}), requires_replacement=_never)
        assert diff.action == ActionKind.DESTROY

    def test_neither(self):
        with pytest.raises(ValueError):
            diff_instance(None, None, requires_replacement=_never)

    def test_noop(self):
        diff = diff_instance(_instance({"size": 2}), _record({"size": 2, "id": "i-1"}), requires_replacement=_never)
        assert diff.action == ActionKind.NOOP
        assert diff.changes == []

    def test_update(self):
        diff = diff_instance(_instance({"size": 4}), _record({"size": 2}), requires_replacement=_image_forces_new)
        assert diff.action == ActionKind.UPDATE
        assert diff.changes[0].before == 2
        assert diff.changes[0].after == 4

    def test_replace_on_force_new(self):
        diff = diff_instance(
            _instance({"image": "v2", "size": 4}),
            _record({"image": "v1", "size": 2}),
            requires_replacement=_image_forces_new,
        )
        assert diff.action == ActionKind.REPLACE
        assert "image cannot be updated in place" in diff.reasons
        assert {c.attribute: c.requires_replacement for c in diff.changes} == {"image": True, "size": False}

    def test_forced_replace(self):
        diff = diff_instance(
            _instance({"size": 2}),
            _record({"size": 2}),
            requires_replacement=_never,
            forced_replace="replace_triggered_by compute_image.base (replace)",
        )
        assert diff.action == ActionKind.REPLACE
        assert diff.reasons == ["replace_triggered_by compute_image.base (replace)"]

    def test_drift_hidden_by_ignore_changes(self):
        policy = LifecyclePolicy(ignore_changes=frozenset({"tags"}))
        diff = diff_instance(
            _instance({"tags": {"env": "dev"}}, policy),
            _record({"tags": {"env": "hacked"}}),
            requires_replacement=_never,
        )
        assert diff.action == ActionKind.NOOP

    def test_change_to_dict_renders_deferred(self):
        diff = diff_instance(
            _instance({"network": Deferred("compute_network.main.id")}),
            _record({"network": "n-1"}),
            requires_replacement=_never,
        )
        data = diff.changes[0].to_dict()
        assert data["before"] == "n-1"
        assert "known after apply" in data["after"]


class TestPreventDestroy:
    def test_violations_listed(self):
        with pytest.raises(ProtectedResourceError) as exc:
            check_prevent_destroy([
                ("b", ActionKind.REPLACE, True),
                ("a", ActionKind.DESTROY, True),
                ("c", ActionKind.UPDATE, True),
                ("d", ActionKind.DESTROY, False),
            ])
        assert exc.value.addresses == ["a", "b"]

    def test_non_destroying_actions_allowed(self):
        check_prevent_destroy([("a", ActionKind.UPDATE, True), ("b", ActionKind.NOOP, True)])
