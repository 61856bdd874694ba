"""Built-in workloads, looked up by name."""

from collections.abc import Callable

from fsmcheck.workload import WorkloadConfig
from fsmcheck.workloads import update_inc

_REGISTRY: dict[str, Callable[..., WorkloadConfig]] = {
    update_inc.WORKLOAD_ID: update_inc.make_config,
}


def available_workloads() -> list[str]:
    return sorted(_REGISTRY)


def get_workload(name: str, **overrides) -> WorkloadConfig:
    """Build a fresh config for workload *name*.

    Raises:
        KeyError: If no workload is registered under *name*.
    """
    try:
        factory = _REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown workload {name!r}; available: {', '.join(available_workloads())}") from None
    return factory(**{k: v for k, v in overrides.items() if v is not None})
