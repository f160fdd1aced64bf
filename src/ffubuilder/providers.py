"""Provider registry and selection."""

from typing import Dict, List, Tuple, Type

import structlog

from .backends.hyperv import HyperVProvider
from .backends.workstation import WorkstationProvider
from .config import BuildSettings
from .exceptions import ProviderUnavailableError
from .interfaces.hypervisor import HypervisorProvider
from .interfaces.process import ProcessRunner

log = structlog.get_logger(__name__)

# Preference order for "auto".
PROVIDERS: Dict[str, Type[HypervisorProvider]] = {
    "hyperv": HyperVProvider,
    "workstation": WorkstationProvider,
}


def create_provider(name: str, settings: BuildSettings, runner: ProcessRunner) -> HypervisorProvider:
    try:
        provider_cls = PROVIDERS[name]
    except KeyError:
        known = ", ".join(PROVIDERS)
        raise ProviderUnavailableError(name, f"unknown provider (known: {known})") from None
    return provider_cls(settings, runner)


def _is_available(provider: HypervisorProvider) -> bool:
    try:
        return provider.test_available()
    except Exception as e:
        log.warning("provider.availability_check_failed", provider=provider.name, error=str(e))
        return False


def select_provider(name: str, settings: BuildSettings, runner: ProcessRunner) -> HypervisorProvider:
    """Return a ready provider, or raise ProviderUnavailableError.

    ``"auto"`` returns the first available provider in PROVIDERS order.
    """
    if name == "auto":
        for candidate in PROVIDERS:
            provider = create_provider(candidate, settings, runner)
            if _is_available(provider):
                log.info("provider.selected", provider=candidate, requested=name)
                return provider
        raise ProviderUnavailableError(
            "auto", "neither Hyper-V nor VMware Workstation is installed and running"
        )

    provider = create_provider(name, settings, runner)
    if not _is_available(provider):
        raise ProviderUnavailableError(name, "the hypervisor platform is not installed or not running")
    log.info("provider.selected", provider=name, requested=name)
    return provider


def provider_availability(settings: BuildSettings, runner: ProcessRunner) -> List[Tuple[str, bool]]:
    return [
        (name, _is_available(create_provider(name, settings, runner)))
        for name in PROVIDERS
    ]
