"""
Tests for the Category Registry
===============================
"""

import pytest

from core.exceptions import (
    DependencyCycleError,
    DuplicateCategoryError,
    UnknownDependencyError,
    ValidationError,
)
from core.models import ConsentCategory, RegionRequirement
from consent.registry import CategoryRegistry


def _category(cid, deps=(), **kwargs):
    return ConsentCategory(id=cid, label=cid.title(), dependencies=frozenset(deps), **kwargs)


class TestCategoryModel:
    """Validation at construction time."""

    def test_rejects_malformed_id(self):
        """Ids must be lowercase slugs."""
        with pytest.raises(ValueError):
            ConsentCategory(id="Bad Id", label="Bad")

    def test_rejects_self_dependency(self):
        """A category cannot depend on itself."""
        with pytest.raises(ValueError):
            _category("analytics", deps=["analytics"])

    def test_retention_period_parsed(self):
        """Human durations are accepted for retention."""
        category = _category("analytics", retention_period="12 months")
        assert category.retention_period.days == 360

    def test_requirement_defaults_to_optional(self):
        """Unlisted regions are optional."""
        category = _category("marketing", region_requirements={"eu": "forbidden"})
        assert category.requirement_for("EU") == RegionRequirement.FORBIDDEN
        assert category.requirement_for("US") == RegionRequirement.OPTIONAL


class TestCategoryRegistry:
    """Tests for CategoryRegistry."""

    def test_necessary_registered_by_default(self):
        """The necessary category is always present."""
        registry = CategoryRegistry()
        assert "necessary" in registry
        assert len(registry) == 1

    def test_register_and_get(self):
        """Registered categories can be looked up."""
        registry = CategoryRegistry()
        registry.register(_category("analytics"))
        assert registry.get("analytics").label == "Analytics"
        assert registry.ids() == ["analytics", "necessary"]

    def test_duplicate_rejected(self):
        """Registering the same id twice fails."""
        registry = CategoryRegistry()
        registry.register(_category("analytics"))
        with pytest.raises(DuplicateCategoryError):
            registry.register(_category("analytics"))

    def test_unknown_dependency_rejected(self):
        """Dependencies must already be registered."""
        registry = CategoryRegistry()
        with pytest.raises(UnknownDependencyError) as exc_info:
            registry.register(_category("personalization", deps=["analytics"]))
        assert exc_info.value.missing == ["analytics"]
        assert "personalization" not in registry

    def test_cycle_rejected(self):
        """A batch forming a cycle is rejected as a whole."""
        registry = CategoryRegistry()
        with pytest.raises(DependencyCycleError) as exc_info:
            registry.register_many([_category("a", deps=["b"]), _category("b", deps=["a"])])
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
        assert "a" not in registry and "b" not in registry

    def test_registration_errors_are_validation_errors(self):
        """All registration failures share the ValidationError base."""
        assert issubclass(DuplicateCategoryError, ValidationError)
        assert issubclass(UnknownDependencyError, ValidationError)
        assert issubclass(DependencyCycleError, ValidationError)

    def test_register_many_orders_dependencies(self):
        """Batch registration does not depend on input order."""
        registry = CategoryRegistry()
        count = registry.register_many(
            [_category("personalization", deps=["analytics"]), _category("analytics")]
        )
        assert count == 2
        assert registry.dependencies_of("personalization") == {"analytics"}

    def test_unknown_category_lookup(self):
        """Unknown ids raise ValidationError."""
        registry = CategoryRegistry()
        with pytest.raises(ValidationError) as exc_info:
            registry.get("nope")
        assert exc_info.value.error_code == "UNKNOWN_CATEGORY"

    def test_dependents_are_transitive(self):
        """dependents_of follows the graph through intermediate categories."""
        registry = CategoryRegistry()
        registry.register_many(
            [
                _category("analytics"),
                _category("personalization", deps=["analytics"]),
                _category("ads", deps=["personalization"]),
            ]
        )
        assert registry.dependents_of("analytics") == {"personalization", "ads"}
        assert registry.dependents_of("ads") == set()

    def test_services_and_gating(self):
        """Gated services map back to their categories."""
        registry = CategoryRegistry()
        registry.register(_category("analytics", gated_services=("dashboards",)))
        assert registry.services_for("analytics") == ["dashboards"]
        assert registry.categories_gating("dashboards") == {"analytics"}
        assert registry.categories_gating("unknown") == set()

    def test_resolve_requirements(self):
        """Per-category region requirements are merged."""
        registry = CategoryRegistry()
        registry.register_many(
            [
                _category("analytics", region_requirements={"EU": "mandatory"}),
                _category("marketing", region_requirements={"EU": "forbidden"}),
            ]
        )
        requirements = registry.resolve_requirements("eu")
        assert requirements.mandatory == frozenset({"analytics"})
        assert requirements.forbidden == frozenset({"marketing"})
        assert registry.resolve_requirements("US").mandatory == frozenset()

    def test_load_from_config(self):
        """Config entries become categories; a repeated necessary is skipped."""
        registry = CategoryRegistry()
        count = registry.load_from_config(
            [
                {"id": "necessary", "label": "Necessary"},
                {"id": "analytics", "label": "Analytics"},
            ]
        )
        assert count == 1
        assert "analytics" in registry

    def test_load_from_config_invalid_entry(self):
        """Malformed config entries raise ValidationError."""
        registry = CategoryRegistry()
        with pytest.raises(ValidationError):
            registry.load_from_config([{"id": "Bad Id", "label": "x"}])
