"""
Serialization Utilities

This module provides utilities for serializing and deserializing the
gamification models to plain dictionaries and JSON, with support for
nested dataclasses, enums, datetimes and typed collections.
"""

import json
import datetime
from enum import Enum
from dataclasses import is_dataclass, fields
from typing import Any, Dict, List, Type, TypeVar, Union, get_type_hints, get_origin, get_args

# Type variable for generic typing
T = TypeVar('T')


def serialize(obj: Any, exclude_none: bool = False) -> Any:
    """
    Serialize an object to JSON-compatible Python data.

    Args:
        obj: The object to serialize
        exclude_none: Whether to drop None values from mappings

    Returns:
        Serialized object built from dicts, lists and primitives
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.isoformat()

    if isinstance(obj, (list, tuple, set, frozenset)):
        items = [serialize(item, exclude_none) for item in obj]
        if isinstance(obj, (set, frozenset)):
            items = sorted(items, key=str)
        return items

    if isinstance(obj, dict):
        result = {}
        for key, value in obj.items():
            if exclude_none and value is None:
                continue
            result[serialize(key)] = serialize(value, exclude_none)
        return result

    if hasattr(obj, 'to_dict') and callable(getattr(obj, 'to_dict')):
        return serialize(obj.to_dict(), exclude_none)

    if is_dataclass(obj):
        result = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            if exclude_none and value is None:
                continue
            result[f.name] = serialize(value, exclude_none)
        return result

    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def deserialize(data: Any, target_type: Any) -> Any:
    """
    Deserialize data to an instance of the target type.

    Args:
        data: Serialized data (as produced by ``serialize``)
        target_type: Type annotation to rebuild

    Returns:
        An instance of the target type
    """
    if data is None:
        return None

    if target_type is Any:
        return data

    origin = get_origin(target_type)

    if origin is Union:
        candidates = [arg for arg in get_args(target_type) if arg is not type(None)]
        if len(candidates) == 1:
            return deserialize(data, candidates[0])
        for candidate in candidates:
            try:
                return deserialize(data, candidate)
            except (TypeError, ValueError, KeyError):
                continue
        raise ValueError(f"Cannot deserialize {data!r} as {target_type}")

    if origin in (list, List):
        (item_type,) = get_args(target_type) or (Any,)
        return [deserialize(item, item_type) for item in data]

    if origin is tuple:
        args = get_args(target_type)
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(deserialize(item, args[0]) for item in data)
        return tuple(deserialize(item, arg) for item, arg in zip(data, args))

    if origin in (set, frozenset):
        (item_type,) = get_args(target_type) or (Any,)
        return origin(deserialize(item, item_type) for item in data)

    if origin is dict:
        key_type, value_type = get_args(target_type) or (Any, Any)
        return {
            deserialize(key, key_type): deserialize(value, value_type)
            for key, value in data.items()
        }

    if isinstance(target_type, type):
        if isinstance(data, target_type) and not isinstance(data, dict):
            return data

        if issubclass(target_type, Enum):
            return target_type(data)

        if target_type is datetime.datetime:
            return datetime.datetime.fromisoformat(data)

        if target_type is datetime.date:
            return datetime.date.fromisoformat(data)

        if target_type is float:
            return float(data)

        if target_type in (str, int, bool, dict, list):
            return data

        if hasattr(target_type, 'from_dict') and callable(getattr(target_type, 'from_dict')):
            return target_type.from_dict(data)

        if is_dataclass(target_type):
            return _deserialize_dataclass(data, target_type)

    return data


def _deserialize_dataclass(data: Dict[str, Any], target_class: Type[T]) -> T:
    field_types = get_type_hints(target_class)
    init_kwargs = {}
    for f in fields(target_class):
        if not f.init or f.name not in data:
            continue
        init_kwargs[f.name] = deserialize(data[f.name], field_types[f.name])
    return target_class(**init_kwargs)


def to_json(obj: Any, pretty: bool = False, exclude_none: bool = False) -> str:
    """
    Serialize an object to a JSON string.

    Args:
        obj: The object to serialize
        pretty: Whether to format the JSON with indentation
        exclude_none: Whether to exclude None values

    Returns:
        JSON string representation
    """
    indent = 2 if pretty else None
    return json.dumps(serialize(obj, exclude_none), indent=indent, ensure_ascii=False)


def from_json(json_str: Union[str, bytes], target_class: Type[T]) -> T:
    """
    Deserialize a JSON string to an instance of the target class.

    Args:
        json_str: The JSON string to deserialize
        target_class: The class to instantiate

    Returns:
        An instance of the target class
    """
    return deserialize(json.loads(json_str), target_class)


class SerializableMixin:
    """
    Mixin that provides serialization capabilities to a dataclass.

    Classes may define ``__serializable_fields__`` to restrict the
    serialized fields; by default every dataclass field is included.
    Fields missing from the input fall back to their dataclass defaults.
    """

    __serializable_fields__: List[str] = []

    def _field_names(self) -> List[str]:
        return self.__serializable_fields__ or [f.name for f in fields(self)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert the object to a dictionary."""
        return {
            name: serialize(getattr(self, name))
            for name in self._field_names()
        }

    def to_json(self, pretty: bool = False) -> str:
        """Convert the object to a JSON string."""
        return json.dumps(self.to_dict(), indent=2 if pretty else None, ensure_ascii=False)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create an instance from a dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"{cls.__name__}.from_dict expects a mapping, got {type(data).__name__}")
        return _deserialize_dataclass(data, cls)

    @classmethod
    def from_json(cls: Type[T], json_str: Union[str, bytes]) -> T:
        """Create an instance from a JSON string."""
        return cls.from_dict(json.loads(json_str))
