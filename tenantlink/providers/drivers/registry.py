from __future__ import annotations

import logging
from typing import Callable

from tenantlink.domain.models import Project
from tenantlink.providers.drivers.base import IntegrationDriver
from tenantlink.providers.drivers.generic import GenericDriver


logger = logging.getLogger(__name__)

DriverFactory = Callable[[], IntegrationDriver]

# Statically known drivers; a project selects one via driver_key or its slug.
DEFAULT_DRIVER_FACTORIES: dict[str, DriverFactory] = {
    "generic": GenericDriver,
}


class DriverRegistry:
    def __init__(
        self,
        factories: dict[str, DriverFactory] | None = None,
        *,
        fallback_factory: DriverFactory | None = None,
    ) -> None:
        self._factories: dict[str, DriverFactory] = dict(DEFAULT_DRIVER_FACTORIES)
        if factories:
            self._factories.update(factories)
        self._fallback_factory = fallback_factory or GenericDriver
        self._drivers: dict[str, IntegrationDriver] = {}

    def register(self, key: str, factory: DriverFactory) -> None:
        self._factories[key] = factory
        self._drivers.pop(key, None)

    def _fallback(self) -> IntegrationDriver:
        driver = self._drivers.get("__fallback__")
        if driver is None:
            driver = self._fallback_factory()
            self._drivers["__fallback__"] = driver
        return driver

    def resolve(self, project: Project) -> IntegrationDriver:
        # Resolution never raises; unknown or broken drivers degrade to the generic one.
        key = project.driver_key or project.slug
        cached = self._drivers.get(key)
        if cached is not None:
            return cached
        factory = self._factories.get(key)
        if factory is None:
            if project.driver_key:
                logger.warning(
                    "driver_unknown_key project_id=%s driver_key=%s", project.id, project.driver_key
                )
            return self._fallback()
        try:
            driver = factory()
        except Exception as exc:  # noqa: BLE001 - driver construction must not break provisioning
            logger.warning("driver_init_failed project_id=%s driver_key=%s", project.id, key, exc_info=exc)
            return self._fallback()
        self._drivers[key] = driver
        return driver


_registry: DriverRegistry | None = None


def get_driver_registry() -> DriverRegistry:
    global _registry
    if _registry is None:
        _registry = DriverRegistry()
    return _registry


def set_driver_registry(registry: DriverRegistry | None) -> None:
    # Swap the process-wide registry; tests install fakes here.
    global _registry
    _registry = registry
