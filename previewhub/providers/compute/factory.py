from __future__ import annotations

from previewhub.core.config import Settings, get_settings
from previewhub.core.errors import ProvisioningRejectedError
from previewhub.providers.compute.base import ComputeProvider
from previewhub.providers.compute.fake import FakeComputeProvider
from previewhub.providers.compute.fly_machines import FlyMachinesProvider


def get_compute_provider(settings: Settings | None = None) -> ComputeProvider:
    settings = settings or get_settings()
    provider = (settings.compute_provider or "fake").lower()

    if provider == "fake":
        return FakeComputeProvider(app_name=settings.fly_app_name, domain=settings.preview_domain)
    if provider == "fly":
        return FlyMachinesProvider(settings=settings)

    raise ProvisioningRejectedError(f"Unsupported compute provider: {provider}")
