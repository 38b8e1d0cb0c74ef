"""Serializer registry for callbridge.

Provides a central lookup for the telephony provider variants by name.
Custom serializers can be registered at runtime.
"""

from __future__ import annotations

from typing import Type

from loguru import logger

from callbridge.serializers.base import BaseSerializer


class SerializerRegistry:
    """Registry mapping provider names to serializer classes.

    Usage:
        serializer = serializer_registry.create("telnyx")
        serializer = serializer_registry.create("telnyx", framing="json")
    """

    def __init__(self) -> None:
        self._registry: dict[str, Type[BaseSerializer]] = {}
        self._loaded = False

    def _load_builtins(self) -> None:
        """Lazily load the built-in serializers."""
        if self._loaded:
            return

        from callbridge.serializers.telnyx import TelnyxSerializer
        from callbridge.serializers.voximplant import VoximplantSerializer

        self._registry.setdefault("telnyx", TelnyxSerializer)
        self._registry.setdefault("voximplant", VoximplantSerializer)
        self._loaded = True

    def register(self, name: str, cls: Type[BaseSerializer]) -> None:
        """Register a custom serializer class."""
        if not issubclass(cls, BaseSerializer):
            raise TypeError(f"{cls} is not a subclass of BaseSerializer")
        self._registry[name] = cls
        logger.debug(f"Registered custom serializer: {name}")

    def get(self, name: str) -> Type[BaseSerializer]:
        """Get a serializer class by provider name.

        Raises:
            KeyError: If no serializer is registered for the given name.
        """
        self._load_builtins()
        if name not in self._registry:
            available = ", ".join(sorted(self._registry.keys()))
            raise KeyError(
                f"No serializer registered for '{name}'. "
                f"Available: {available}"
            )
        return self._registry[name]

    def create(self, name: str, **kwargs) -> BaseSerializer:
        """Create a serializer instance by provider name."""
        cls = self.get(name)
        return cls(**kwargs)

    @property
    def available(self) -> list[str]:
        """List all available provider names."""
        self._load_builtins()
        return sorted(self._registry.keys())


# Global singleton
serializer_registry = SerializerRegistry()
