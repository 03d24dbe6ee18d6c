from feeds.providers.aeso import AesoAdapter
from feeds.providers.base import ProviderAdapter
from feeds.providers.caiso import CaisoAdapter
from feeds.providers.ercot import ErcotAdapter
from feeds.providers.ieso import IesoAdapter
from feeds.providers.miso import MisoAdapter
from feeds.providers.nyiso import NyisoAdapter
from feeds.providers.pjm import PjmAdapter
from feeds.providers.spp import SppAdapter

PROVIDER_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    cls.provider_id: cls
    for cls in (
        ErcotAdapter, AesoAdapter, MisoAdapter, CaisoAdapter,
        NyisoAdapter, PjmAdapter, SppAdapter, IesoAdapter,
    )
}

__all__ = ["PROVIDER_ADAPTERS", "ProviderAdapter"]
