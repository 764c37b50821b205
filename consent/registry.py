"""
Consent Category Registry
=========================
Catalog of consent categories, their dependency graph and per-region
requirements.

Registration is expected at process start. Every registration is
validated up front: duplicate ids, dependencies on unknown categories and
dependency cycles are rejected before the catalog is touched.
"""

import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import structlog

from core.exceptions import (
    DependencyCycleError,
    DuplicateCategoryError,
    UnknownDependencyError,
    ValidationError,
)
from core.models import (
    NECESSARY_CATEGORY,
    ConsentCategory,
    RegionRequirement,
    RegionRequirements,
)

logger = structlog.get_logger(__name__)


NECESSARY = ConsentCategory(
    id=NECESSARY_CATEGORY,
    label="Strictly Necessary",
    description="Processing required to provide the service. Always granted.",
    legal_basis="legitimate_interest",
)


class CategoryRegistry:
    """
    Registry of consent categories.

    The dependency graph is kept acyclic: a category may only depend on
    categories that are already registered, and a cycle check runs on
    every registration.
    """

    def __init__(self, include_necessary: bool = True):
        self._categories: Dict[str, ConsentCategory] = {}
        self._lock = threading.RLock()
        if include_necessary:
            self.register(NECESSARY)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, category: ConsentCategory) -> ConsentCategory:
        """
        Register a consent category.

        Args:
            category: Validated category definition.

        Returns:
            The registered category.

        Raises:
            DuplicateCategoryError: If the id is already registered.
            UnknownDependencyError: If a dependency id is not registered.
            DependencyCycleError: If the dependency graph would contain a cycle.
        """
        with self._lock:
            if category.id in self._categories:
                raise DuplicateCategoryError(category.id)

            candidate = dict(self._categories)
            candidate[category.id] = category
            cycle = _find_cycle(candidate)
            if cycle:
                raise DependencyCycleError(cycle)

            missing = [d for d in category.dependencies if d not in self._categories]
            if missing:
                raise UnknownDependencyError(category.id, missing)

            self._categories[category.id] = category

        logger.info(
            "Consent category registered",
            category=category.id,
            dependencies=sorted(category.dependencies),
            gated_services=list(category.gated_services),
        )
        return category

    def register_many(self, categories: Iterable[ConsentCategory]) -> int:
        """
        Register several categories, ordering them so dependencies come first.

        Returns:
            Number of categories registered.
        """
        pending: Dict[str, ConsentCategory] = {}
        for category in categories:
            if category.id in pending or category.id in self._categories:
                raise DuplicateCategoryError(category.id)
            pending[category.id] = category

        combined = {**self._categories, **pending}
        cycle = _find_cycle(combined)
        if cycle:
            raise DependencyCycleError(cycle)
        for category in pending.values():
            missing = [d for d in category.dependencies if d not in combined]
            if missing:
                raise UnknownDependencyError(category.id, missing)

        count = 0
        while pending:
            ready = [
                c for c in pending.values()
                if all(d in self._categories for d in c.dependencies)
            ]
            for category in ready:
                self.register(category)
                del pending[category.id]
                count += 1
        return count

    def load_from_config(self, entries: List[Dict[str, Any]]) -> int:
        """Register categories from configuration dictionaries."""
        categories = []
        for entry in entries:
            if entry.get("id") == NECESSARY_CATEGORY and NECESSARY_CATEGORY in self:
                continue
            try:
                categories.append(ConsentCategory(**entry))
            except ValueError as e:
                raise ValidationError(
                    f"Invalid category definition {entry.get('id')!r}: {e}",
                    field="categories",
                    value=entry.get("id"),
                ) from e
        return self.register_many(categories)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, category_id: str) -> ConsentCategory:
        """Return a category or raise ValidationError if it is unknown."""
        category = self._categories.get(category_id)
        if category is None:
            raise ValidationError(
                f"Unknown consent category: {category_id}",
                field="category",
                value=category_id,
                error_code="UNKNOWN_CATEGORY",
            )
        return category

    def find(self, category_id: str) -> Optional[ConsentCategory]:
        return self._categories.get(category_id)

    def ids(self) -> List[str]:
        return sorted(self._categories)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._categories

    def __iter__(self) -> Iterator[ConsentCategory]:
        return iter(list(self._categories.values()))

    def __len__(self) -> int:
        return len(self._categories)

    def dependencies_of(self, category_id: str) -> Set[str]:
        """All categories `category_id` depends on, transitively."""
        seen: Set[str] = set()
        stack = list(self.get(category_id).dependencies)
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(self._categories[dep].dependencies)
        return seen

    def dependents_of(self, category_id: str) -> Set[str]:
        """All categories that depend on `category_id`, transitively."""
        self.get(category_id)
        result: Set[str] = set()
        frontier = {category_id}
        while frontier:
            direct = {
                c.id for c in self._categories.values()
                if c.dependencies & frontier and c.id not in result
            }
            result |= direct
            frontier = direct
        return result

    def services_for(self, category_id: str) -> List[str]:
        return list(self.get(category_id).gated_services)

    def categories_gating(self, service_id: str) -> Set[str]:
        """Category ids that must all be granted for a service to run."""
        return {
            c.id for c in self._categories.values()
            if service_id in c.gated_services
        }

    # -------------------------------------------------------------------------
    # Regional requirements
    # -------------------------------------------------------------------------

    def resolve_requirements(self, region: Optional[str]) -> RegionRequirements:
        """
        Merge per-category requirements for a region.

        Args:
            region: Region code.

        Returns:
            Mandatory and forbidden category sets for the region.
        """
        mandatory = set()
        forbidden = set()
        for category in self._categories.values():
            requirement = category.requirement_for(region)
            if requirement == RegionRequirement.MANDATORY:
                mandatory.add(category.id)
            elif requirement == RegionRequirement.FORBIDDEN:
                forbidden.add(category.id)
        return RegionRequirements(
            region=region,
            mandatory=frozenset(mandatory),
            forbidden=frozenset(forbidden),
        )


def _find_cycle(categories: Dict[str, ConsentCategory]) -> Optional[List[str]]:
    """Depth-first search for a dependency cycle; returns the cycle path."""
    white, grey, black = 0, 1, 2
    color = {cid: white for cid in categories}
    path: List[str] = []

    def visit(cid: str) -> Optional[List[str]]:
        color[cid] = grey
        path.append(cid)
        for dep in sorted(categories[cid].dependencies):
            if dep not in categories:
                continue
            if color[dep] == grey:
                return path[path.index(dep):] + [dep]
            if color[dep] == white:
                found = visit(dep)
                if found:
                    return found
        path.pop()
        color[cid] = black
        return None

    for cid in sorted(categories):
        if color[cid] == white:
            found = visit(cid)
            if found:
                return found
    return None
