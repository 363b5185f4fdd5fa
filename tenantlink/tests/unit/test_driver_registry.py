from __future__ import annotations

from tenantlink.domain.models import Project
from tenantlink.providers.drivers.generic import GenericDriver
from tenantlink.providers.drivers.registry import DriverRegistry
from tenantlink.tests.utils.drivers import ScriptedDriver


def _project(slug: str, driver_key: str | None = None) -> Project:
    return Project(id=f"id-{slug}", name=slug, slug=slug, driver_key=driver_key)


def test_resolves_by_slug_then_driver_key() -> None:
    scripted = ScriptedDriver()
    registry = DriverRegistry({"crm": lambda: scripted})

    assert registry.resolve(_project("crm")) is scripted
    assert registry.resolve(_project("billing", driver_key="crm")) is scripted
    assert isinstance(registry.resolve(_project("billing", driver_key="generic")), GenericDriver)


def test_unknown_key_falls_back_to_generic() -> None:
    registry = DriverRegistry()
    driver = registry.resolve(_project("unknown", driver_key="does-not-exist"))
    assert isinstance(driver, GenericDriver)
    # The fallback instance is cached.
    assert registry.resolve(_project("other")) is driver


def test_factory_failure_falls_back_instead_of_raising() -> None:
    def broken() -> ScriptedDriver:
        raise RuntimeError("missing SDK credentials")

    registry = DriverRegistry({"crm": broken})
    assert isinstance(registry.resolve(_project("crm")), GenericDriver)


def test_register_replaces_cached_instance() -> None:
    first, second = ScriptedDriver(), ScriptedDriver()
    registry = DriverRegistry({"crm": lambda: first})
    assert registry.resolve(_project("crm")) is first
    registry.register("crm", lambda: second)
    assert registry.resolve(_project("crm")) is second
