"""Provider configuration store.

Holds the provider configurations managed by the administration layer.
The gateway only reads them; subscribers are told whenever the set
changes so cached catalogs and routes can be rebuilt.
"""

import inspect
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from shared.config import load_yaml_config, save_yaml_config
from shared.logging import get_logger
from shared.models import ProviderConfig

logger = get_logger(__name__)

Listener = Callable[[list[ProviderConfig]], Any]


class ProviderConfigStore:
    """In-memory provider configuration set with change notification."""

    def __init__(self, configs: Optional[Iterable[ProviderConfig]] = None) -> None:
        self._configs: dict[str, ProviderConfig] = self._index(configs or [])
        self._listeners: list[Listener] = []

    @staticmethod
    def _index(configs: Iterable[ProviderConfig]) -> dict[str, ProviderConfig]:
        indexed: dict[str, ProviderConfig] = {}
        for config in configs:
            if config.id in indexed:
                raise ValueError(f"Duplicate provider id: {config.id}")
            indexed[config.id] = config
        return indexed

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ProviderConfigStore":
        """
        Load provider configurations from a YAML file.

        The file holds a top-level 'providers' list; a missing file yields an
        empty store.
        """
        data = load_yaml_config(path)
        configs = [ProviderConfig.model_validate(item) for item in data.get("providers") or []]
        logger.info("Provider configurations loaded", path=str(path), count=len(configs))
        return cls(configs)

    def to_yaml(self, path: str | Path) -> None:
        """Write the configurations back in the layout from_yaml reads."""
        save_yaml_config(
            {"providers": [config.model_dump(mode="json", exclude_none=True) for config in self.list()]},
            path
        )

    def list(self) -> list[ProviderConfig]:
        """All configurations, in configuration order."""
        return list(self._configs.values())

    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        return self._configs.get(provider_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def replace(self, configs: Iterable[ProviderConfig]) -> bool:
        """
        Replace the whole configuration set.

        Listeners (sync or async) are notified only when something changed.

        Returns:
            True if the set changed
        """
        updated = self._index(configs)
        if list(updated.items()) == list(self._configs.items()):
            return False

        self._configs = updated
        logger.info("Provider configurations changed", count=len(updated))

        snapshot = self.list()
        for listener in list(self._listeners):
            result = listener(snapshot)
            if inspect.isawaitable(result):
                await result
        return True
