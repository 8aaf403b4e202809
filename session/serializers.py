"""
Attribute serializers.

The session attribute mapping is stored in the `attributes` hash field as
a single text blob. Serializers are pluggable and follow the session
manager's lifecycle: the manager calls start() when it starts and stop()
when it stops.

PickleSerializer is the default: it keeps arbitrary object graphs,
including attribute values that implement the passivation hooks.
JsonSerializer is available when attributes are plain JSON data.
"""

import base64
import json
import logging
import pickle
from abc import ABC, abstractmethod
from typing import Any

from errors.exceptions import serialization_error

logger = logging.getLogger(__name__)


class Serializer(ABC):
    """
    Abstract base class for attribute serializers.

    Implementations turn the whole attribute mapping into one string and
    back. Failures are reported as SERIALIZATION_ERROR AppExceptions.
    """

    def __init__(self):
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Prepare the serializer for use."""
        self._started = True
        logger.debug("Serializer started", extra={
            "extra_data": {"serializer": type(self).__name__}
        })

    def stop(self) -> None:
        """Release anything acquired in start()."""
        self._started = False
        logger.debug("Serializer stopped", extra={
            "extra_data": {"serializer": type(self).__name__}
        })

    @abstractmethod
    def serialize(self, attributes: dict[str, Any]) -> str:
        """
        Encode the attribute mapping.

        Args:
            attributes: Mapping of attribute name to value.

        Returns:
            Text blob stored in the `attributes` hash field.
        """

    @abstractmethod
    def deserialize(self, blob: str) -> dict[str, Any]:
        """
        Decode a blob produced by serialize().

        Args:
            blob: Stored text; an empty string decodes to an empty mapping.

        Returns:
            The attribute mapping.
        """


class JsonSerializer(Serializer):
    """JSON attribute serializer. Values must be JSON compatible."""

    def serialize(self, attributes: dict[str, Any]) -> str:
        try:
            return json.dumps(attributes, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise serialization_error(
                "Session attributes are not JSON serializable",
                details={"error": str(e)},
            ) from e

    def deserialize(self, blob: str) -> dict[str, Any]:
        if not blob:
            return {}
        try:
            data = json.loads(blob)
        except ValueError as e:
            raise serialization_error(
                "Stored session attributes are not valid JSON",
                details={"error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise serialization_error(
                "Stored session attributes are not a mapping",
                details={"type": type(data).__name__},
            )
        return data


class PickleSerializer(Serializer):
    """
    Object-graph serializer: pickled attributes, base64 encoded as text.

    Only use between nodes that trust each other; unpickling runs code.
    """

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        super().__init__()
        self.protocol = protocol

    def serialize(self, attributes: dict[str, Any]) -> str:
        try:
            raw = pickle.dumps(attributes, protocol=self.protocol)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise serialization_error(
                "Session attributes cannot be pickled",
                details={"error": str(e)},
            ) from e
        return base64.b64encode(raw).decode("ascii")

    def deserialize(self, blob: str) -> dict[str, Any]:
        if not blob:
            return {}
        try:
            data = pickle.loads(base64.b64decode(blob))
        except Exception as e:
            raise serialization_error(
                "Stored session attributes cannot be unpickled",
                details={"error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise serialization_error(
                "Stored session attributes are not a mapping",
                details={"type": type(data).__name__},
            )
        return data


SERIALIZERS = {
    "json": JsonSerializer,
    "pickle": PickleSerializer,
}


def create_serializer(name: str) -> Serializer:
    """Build the serializer registered under `name` ('json' or 'pickle')."""
    try:
        return SERIALIZERS[name]()
    except KeyError:
        raise ValueError(f"Unknown session serializer: {name!r}") from None
