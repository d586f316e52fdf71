"""
sluice.admin - Operator Controls
==================================

Manual overrides and maintenance entry points for operators:

    force_open(dependency)      trip a breaker by hand (e.g. planned outage)
    force_close(dependency)     reset a breaker after a confirmed recovery
    purge(dry_run=True)         preview or run the expired/stuck job sweep
    validate_configuration()    report configuration invariant violations

Purge defaults to a dry run so an operator sees what would be failed before
committing to it.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import SluiceConfig, validate_config
from sluice.core.models import CircuitBreakerStatus
from sluice.resilience.breaker_service import CircuitBreakerService
from sluice.scheduling.lifecycle import JobLifecycle, PurgeResult


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class ConfigValidationResult(BaseModel):
    valid: bool
    issues: list[str] = Field(default_factory=list)


class AdminOperations:
    """Operator-facing controls over breakers, purges and configuration.

    Example:
        >>> admin = AdminOperations(breakers, lifecycle, config)
        >>> preview = await admin.purge()
        >>> preview.total_found
        2
        >>> await admin.purge(dry_run=False)
    """

    def __init__(
        self,
        breakers: CircuitBreakerService,
        lifecycle: JobLifecycle,
        config: Optional[SluiceConfig] = None,
    ) -> None:
        self._breakers = breakers
        self._lifecycle = lifecycle
        self.config = config or SluiceConfig()
        self._logger = logger.bind(component="admin")

    async def force_open(
        self, dependency: Optional[str] = None, reason: str = "manual override"
    ) -> CircuitBreakerStatus:
        dependency = dependency or self.config.default_dependency
        self._logger.warning("admin_force_open", dependency=dependency, reason=reason)
        return await self._breakers.force_open(dependency, reason=reason)

    async def force_close(
        self, dependency: Optional[str] = None, reason: str = "manual override"
    ) -> CircuitBreakerStatus:
        dependency = dependency or self.config.default_dependency
        self._logger.warning("admin_force_close", dependency=dependency, reason=reason)
        return await self._breakers.force_close(dependency, reason=reason)

    async def purge(
        self, dry_run: bool = True, max_age_ms: Optional[int] = None
    ) -> PurgeResult:
        result = await self._lifecycle.purge_expired(max_age_ms=max_age_ms, dry_run=dry_run)
        self._logger.info(
            "admin_purge",
            dry_run=dry_run,
            expired=len(result.expired),
            stuck=len(result.stuck),
            purged=result.purged,
        )
        return result

    def validate_configuration(self) -> ConfigValidationResult:
        issues = validate_config(self.config)
        if issues:
            self._logger.warning("configuration_invalid", issues=issues)
        return ConfigValidationResult(valid=not issues, issues=issues)
