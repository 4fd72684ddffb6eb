"""Tests for core models."""

import pytest

from infraplan.models import (
    Action,
    ApplyResult,
    EngineOptions,
    Phase,
    Plan,
    PlanStep,
    Ref,
    Resource,
    ResourceId,
    StateRecord,
    StepFailure,
    substitute_refs,
    validate_identifier,
    walk_refs,
)


class TestIdentifiers:
    """Tests for resource ids and references."""

    def test_resource_id_str_and_parse(self):
        rid = ResourceId("network", "main")
        assert str(rid) == "network.main"
        assert ResourceId.parse("network.main") == rid

    @pytest.mark.parametrize("value", ["network", "a.b.c", "net work.main", ".main"])
    def test_resource_id_parse_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            ResourceId.parse(value)

    def test_validate_identifier_allows_hyphen_and_underscore(self):
        assert validate_identifier("web-1_a", "name") == "web-1_a"

    def test_validate_identifier_rejects_leading_digit(self):
        with pytest.raises(ValueError, match="not a valid identifier"):
            validate_identifier("1web", "name")

    def test_resource_ids_sort_by_kind_then_name(self):
        ids = [ResourceId("b", "a"), ResourceId("a", "z"), ResourceId("a", "b")]
        assert [str(r) for r in sorted(ids)] == ["a.b", "a.z", "b.a"]

    def test_ref_parse(self):
        ref = Ref.parse("subnet.a.id")
        assert ref.resource == ResourceId("subnet", "a")
        assert ref.attribute == "id"
        assert str(ref) == "subnet.a.id"

    def test_ref_parse_requires_attribute(self):
        with pytest.raises(ValueError, match="kind.name.attribute"):
            Ref.parse("subnet.a")


class TestReferenceHelpers:
    """Tests for walking and substituting nested references."""

    def test_walk_refs_reports_nested_paths(self):
        attrs = {
            "network_id": Ref.parse("network.main.id"),
            "tags": {"zone": Ref.parse("zone.a.name")},
            "rules": [{"target": Ref.parse("sg.web.id")}],
            "plain": "value",
        }
        found = {path: str(ref) for path, ref in walk_refs(attrs)}
        assert found == {
            "network_id": "network.main.id",
            "tags.zone": "zone.a.name",
            "rules[0].target": "sg.web.id",
        }

    def test_substitute_refs_replaces_every_ref(self):
        attrs = {"a": Ref.parse("x.y.id"), "b": [Ref.parse("x.y.arn"), 3], "c": {"d": "e"}}
        values = {"id": "x-1", "arn": "arn:x"}
        result = substitute_refs(attrs, lambda ref: values[ref.attribute])
        assert result == {"a": "x-1", "b": ["arn:x", 3], "c": {"d": "e"}}

    def test_substitute_refs_does_not_mutate_input(self):
        ref = Ref.parse("x.y.id")
        attrs = {"a": ref}
        substitute_refs(attrs, lambda r: "resolved")
        assert attrs["a"] is ref


class TestResource:
    """Tests for resource declarations."""

    def test_declare(self):
        resource = Resource.declare(
            "subnet",
            "a",
            {"network_id": Ref.parse("network.main.id")},
            depends_on=["gateway.main"],
            prevent_destroy=True,
        )
        assert resource.id == ResourceId("subnet", "a")
        assert resource.depends_on == (ResourceId("gateway", "main"),)
        assert resource.prevent_destroy is True
        assert [str(ref) for _, ref in resource.references()] == ["network.main.id"]

    def test_declare_rejects_invalid_name(self):
        with pytest.raises(ValueError):
            Resource.declare("subnet", "a.b")


class TestStateRecord:
    """Tests for state records."""

    def test_value_prefers_outputs(self):
        record = StateRecord(attributes={"id": "declared", "size": 1}, outputs={"id": "net-1"})
        assert record.value("id") == "net-1"
        assert record.value("size") == 1

    def test_value_missing_raises_key_error(self):
        with pytest.raises(KeyError):
            StateRecord().value("id")

    def test_dict_round_trip_with_deposed(self):
        old = StateRecord(attributes={"cidr": "a"}, outputs={"id": "n-1"}, serial=3)
        record = StateRecord(
            attributes={"cidr": "b"},
            outputs={"id": "n-2"},
            dependencies=(ResourceId("zone", "a"),),
            serial=4,
            updated_at="2024-01-01T00:00:00Z",
            deposed=old,
        )
        data = record.to_dict()
        assert data["dependencies"] == ["zone.a"]
        assert data["deposed"]["outputs"] == {"id": "n-1"}
        assert StateRecord.from_dict(data) == record

    def test_to_dict_omits_empty_deposed(self):
        assert "deposed" not in StateRecord().to_dict()


class TestPlanStep:
    """Tests for plan steps and plans."""

    def _step(self, key, action, phase, **kwargs):
        return PlanStep(key, action, phase, ResourceId("network", "main"), **kwargs)

    @pytest.mark.parametrize(
        "action,phase,operation",
        [
            (Action.CREATE, Phase.APPLY, "create"),
            (Action.UPDATE, Phase.APPLY, "update"),
            (Action.REPLACE, Phase.APPLY, "create"),
            (Action.REPLACE, Phase.DESTROY, "delete"),
            (Action.DELETE, Phase.DESTROY, "delete"),
        ],
    )
    def test_operation(self, action, phase, operation):
        assert self._step("k", action, phase).operation == operation

    def test_describe(self):
        assert self._step("k", Action.CREATE, Phase.APPLY).describe() == "create network.main"
        replace = self._step("k", Action.REPLACE, Phase.DESTROY)
        assert replace.describe() == "replace (destroy) network.main"
        deposed = self._step("k", Action.DELETE, Phase.DESTROY, deposed=True)
        assert deposed.describe() == "delete (deposed) network.main"

    def test_plan_lookup_by_key(self):
        first = self._step("create:network.main", Action.CREATE, Phase.APPLY)
        plan = Plan((first,))
        assert plan["create:network.main"] is first
        assert plan.keys == ["create:network.main"]
        assert not plan.is_empty
        with pytest.raises(KeyError):
            plan["delete:network.main"]

    def test_plan_as_dict(self):
        step = self._step(
            "update:network.main",
            Action.UPDATE,
            Phase.APPLY,
            changed=("tags",),
            depends_on=("create:zone.a",),
        )
        assert Plan((step,)).as_dict() == [
            {
                "key": "update:network.main",
                "action": "update",
                "phase": "apply",
                "resource": "network.main",
                "changed": ["tags"],
                "depends_on": ["create:zone.a"],
            }
        ]


class TestEngineOptions:
    """Tests for engine configuration."""

    def test_defaults(self):
        options = EngineOptions()
        assert options.concurrency == 4
        assert options.max_attempts == 3
        assert options.dry_run is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"concurrency": 0},
            {"max_attempts": 0},
            {"backoff_base": -1},
            {"backoff_base": 5, "backoff_max": 1},
        ],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValueError):
            EngineOptions(**kwargs)

    def test_backoff_delay_doubles_and_caps(self):
        options = EngineOptions(backoff_base=0.5, backoff_max=3.0)
        assert [options.backoff_delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestApplyResult:
    """Tests for the run report."""

    def test_ok(self):
        assert ApplyResult().ok
        assert not ApplyResult(skipped=["create:a.b"]).ok
        assert not ApplyResult(cancelled=True).ok

    def test_run_ids_are_unique(self):
        assert ApplyResult().run_id != ApplyResult().run_id

    def test_as_dict(self):
        rid = ResourceId("network", "main")
        result = ApplyResult(
            created=[rid],
            failed=[StepFailure("create:subnet.a", ResourceId("subnet", "a"), "boom", 2, True)],
        )
        data = result.as_dict()
        assert data["created"] == ["network.main"]
        assert data["failed"] == [
            {
                "step": "create:subnet.a",
                "resource": "subnet.a",
                "error": "boom",
                "attempts": 2,
                "transient": True,
            }
        ]
