from typing import Callable, Dict, List, Protocol, Type, runtime_checkable

from schemas import Fingerprint, ProviderVerdict


@runtime_checkable
class ProviderAdapter(Protocol):
    """One lookup against one threat intelligence source.

    ``query`` returns a normalized ProviderVerdict or raises a ProviderError
    subclass. It may be a plain method (run in a worker thread) or a
    coroutine. Each adapter documents its normalization at module level.
    """

    name: str

    def query(self, fingerprint: Fingerprint, timeout: float) -> ProviderVerdict: ...

    def health_check(self) -> bool: ...


_REGISTRY: Dict[str, Type] = {}


def provider_name(name: str) -> Callable[[Type], Type]:
    def deco(cls):
        cls.name = name
        _REGISTRY[name] = cls
        return cls
    return deco


def get_provider(name: str) -> Type:
    return _REGISTRY[name]


def all_providers() -> List[str]:
    return list(_REGISTRY.keys())


def requires_credentials(name: str) -> bool:
    return getattr(_REGISTRY.get(name), "requires_api_key", False)


# registration side effects
from . import malwarebazaar, otx, virustotal  # noqa: E402,F401
