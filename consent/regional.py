"""
Regional Compliance Resolver
============================
Maps a region code to its consent ruleset (mandatory and forbidden
categories, default posture, renewal period, legal basis) and validates
a subject's category states against it.

Unknown regions never weaken protection: they resolve to the strictest
ruleset the engine can build (opt-in, every registered category mandatory,
shortest known renewal period, `not_set` read as denied).
"""

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

import structlog

from core.exceptions import ConfigurationError
from core.models import (
    ComplianceViolation,
    ConsentPosture,
    ConsentState,
    RegionalRuleset,
    UnsetTreatment,
)
from consent.registry import CategoryRegistry

logger = structlog.get_logger(__name__)


STRICT_REGION = "STRICT_DEFAULT"
DEFAULT_STRICT_RENEWAL = timedelta(days=180)


class RegionalComplianceResolver:
    """
    Resolves regional rulesets and checks category states against them.
    """

    def __init__(
        self,
        registry: CategoryRegistry,
        rulesets: Optional[List[RegionalRuleset]] = None,
        aliases: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            registry: Category registry (source of the full category set).
            rulesets: Known regional rulesets.
            aliases: Region code aliases, e.g. ``{"DE": "EU"}``.
        """
        self.registry = registry
        self._rulesets: Dict[str, RegionalRuleset] = {}
        self._aliases: Dict[str, str] = {
            k.upper(): v.upper() for k, v in (aliases or {}).items()
        }
        for ruleset in rulesets or []:
            self.register(ruleset)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, ruleset: RegionalRuleset) -> None:
        """Add or replace the ruleset of a region."""
        self._rulesets[ruleset.region] = ruleset
        logger.info(
            "Regional ruleset registered",
            region=ruleset.region,
            posture=ruleset.default_posture.value,
            mandatory=sorted(ruleset.mandatory_categories),
            unset_treatment=ruleset.unset_treatment.value,
        )

    def load_from_config(self, regions: Dict[str, Dict[str, Any]]) -> int:
        """Register rulesets from a ``{region: {...}}`` configuration mapping."""
        count = 0
        for region, entry in (regions or {}).items():
            entry = dict(entry or {})
            for alias in entry.pop("aliases", []) or []:
                self._aliases[str(alias).upper()] = str(region).upper()
            if "unset_treatment" not in entry:
                raise ConfigurationError(
                    f"Region {region} must declare unset_treatment explicitly",
                    config_key=f"regions.{region}.unset_treatment",
                )
            try:
                self.register(RegionalRuleset(region=region, **entry))
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid ruleset for region {region}: {e}",
                    config_key=f"regions.{region}",
                ) from e
            count += 1
        return count

    def known_regions(self) -> List[str]:
        return sorted(self._rulesets)

    def is_known(self, region_code: Optional[str]) -> bool:
        return self._canonical(region_code) in self._rulesets

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _canonical(self, region_code: Optional[str]) -> Optional[str]:
        if not region_code:
            return None
        code = region_code.strip().upper()
        return self._aliases.get(code, code)

    def resolve(self, region_code: Optional[str]) -> RegionalRuleset:
        """
        Resolve the ruleset for a region code.

        Args:
            region_code: Region code from the subject or geolocation; may be None.

        Returns:
            The region's ruleset, or the strictest fallback when unknown.
        """
        code = self._canonical(region_code)
        ruleset = self._rulesets.get(code) if code else None
        if ruleset is not None:
            return ruleset

        logger.debug("Unknown region, using strict fallback", region=region_code)
        return self.strict_ruleset()

    def strict_ruleset(self) -> RegionalRuleset:
        """The most protective ruleset: every registered category mandatory."""
        renewal = min(
            (r.renewal_period for r in self._rulesets.values()),
            default=DEFAULT_STRICT_RENEWAL,
        )
        forbidden = set()
        for ruleset in self._rulesets.values():
            forbidden |= ruleset.forbidden_categories
        return RegionalRuleset(
            region=STRICT_REGION,
            mandatory_categories=frozenset(self.registry.ids()) - forbidden,
            forbidden_categories=frozenset(forbidden),
            default_posture=ConsentPosture.OPT_IN,
            renewal_period=renewal,
            legal_basis="consent",
            unset_treatment=UnsetTreatment.DENY,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(
        self,
        states: Mapping[str, ConsentState],
        region: Optional[str],
    ) -> List[ComplianceViolation]:
        """
        Check a subject's category states against the region's ruleset.

        Args:
            states: Category id -> state; absent categories count as not_set.
            region: Region code of the subject.

        Returns:
            Violations (empty when compliant).
        """
        ruleset = self.resolve(region)
        requirements = self.registry.resolve_requirements(ruleset.region)
        mandatory = set(ruleset.mandatory_categories) | set(requirements.mandatory)
        forbidden = set(ruleset.forbidden_categories) | set(requirements.forbidden)

        violations = []
        for category in sorted(mandatory):
            if category not in self.registry:
                continue
            if states.get(category, ConsentState.NOT_SET) == ConsentState.NOT_SET:
                violations.append(
                    ComplianceViolation(
                        kind="missing_mandatory", category=category, region=ruleset.region
                    )
                )
        for category in sorted(forbidden):
            if states.get(category) == ConsentState.GRANTED:
                violations.append(
                    ComplianceViolation(
                        kind="forbidden_granted", category=category, region=ruleset.region
                    )
                )
        return violations

    @staticmethod
    def effective_state(state: ConsentState, ruleset: RegionalRuleset) -> ConsentState:
        """How a stored state reads for consumers under a ruleset."""
        if state != ConsentState.NOT_SET:
            return state
        if ruleset.unset_treatment == UnsetTreatment.ALLOW:
            return ConsentState.GRANTED
        return ConsentState.DENIED
