"""Message base class and JSON codec. For synchronization with the TypeScript
definitions, see `_typescript_interface_gen.py`."""

from __future__ import annotations

import dataclasses
import functools
import json
from typing import Any, ClassVar, Dict, List, Type, TypeVar, Union

from typing_extensions import get_type_hints


class MessageDecodeError(ValueError):
    """Raised when an incoming frame can't be decoded into a message."""


class UnknownMessageTypeError(MessageDecodeError):
    """Raised when a frame's `type` tag doesn't match any known message."""


T = TypeVar("T", bound="Message")


@functools.lru_cache(maxsize=None)
def get_type_hints_cached(cls: Type[Any]) -> Dict[str, Any]:
    return get_type_hints(cls)  # type: ignore


def _matches_annotation(value: Any, annotation: Any) -> bool:
    """Shallow runtime check of a decoded JSON value against a field annotation."""
    # bool is a subclass of int, but never a valid integer field.
    if annotation is int:
        return isinstance(value, int) and not isinstance(value, bool)
    assert annotation is str, f"Unsupported field type {annotation}"
    return isinstance(value, str)


class Message:
    """Base message type for server/client communication.

    Concrete messages are dataclasses that set a `type_tag` class variable. The
    tag is written to (and read from) the `type` key of each JSON frame."""

    type_tag: ClassVar[str]

    def as_serializable_dict(self) -> Dict[str, Any]:
        """Convert a Python Message object into a JSON-compatible dictionary."""
        out: Dict[str, Any] = {"type": self.type_tag}
        for field in dataclasses.fields(self):  # type: ignore
            out[field.name] = getattr(self, field.name)
        return out

    def serialize(self) -> str:
        """Convert a Python Message object into a text frame."""
        return json.dumps(self.as_serializable_dict(), ensure_ascii=False)

    @classmethod
    def deserialize(cls: Type[T], raw: Union[str, bytes]) -> T:
        """Convert a text frame into a Python Message object.

        Only subclasses of `cls` are considered. Keys that aren't fields of the
        matched message are dropped.

        Raises:
            MessageDecodeError: the frame is malformed or a required field is
                missing or has the wrong type.
            UnknownMessageTypeError: the `type` tag has no matching message.
        """
        try:
            mapping = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # Also covers UnicodeDecodeError for binary frames and absurdly deep
            # nesting.
            raise MessageDecodeError(f"frame is not valid JSON ({e})") from e

        if not isinstance(mapping, dict):
            raise MessageDecodeError("frame is not a JSON object")
        type_tag = mapping.get("type")
        if not isinstance(type_tag, str):
            raise MessageDecodeError("frame has no string `type` field")

        message_type = cls._subclass_from_type_tag().get(type_tag, None)
        if message_type is None:
            raise UnknownMessageTypeError(f"unknown message type {type_tag!r}")

        type_hints = get_type_hints_cached(message_type)
        kwargs: Dict[str, Any] = {}
        for field in dataclasses.fields(message_type):  # type: ignore
            if field.name not in mapping:
                if (
                    field.default is dataclasses.MISSING
                    and field.default_factory is dataclasses.MISSING
                ):
                    raise MessageDecodeError(
                        f"{type_tag!r} frame is missing field {field.name!r}"
                    )
                continue

            value = mapping[field.name]
            if not _matches_annotation(value, type_hints[field.name]):
                raise MessageDecodeError(
                    f"{type_tag!r} frame has invalid value for {field.name!r}:"
                    f" {value!r}"
                )
            kwargs[field.name] = value
        return message_type(**kwargs)

    @classmethod
    @functools.lru_cache(maxsize=100)
    def _subclass_from_type_tag(cls: Type[T]) -> Dict[str, Type[T]]:
        return {s.type_tag: s for s in cls.get_subclasses() if _is_concrete(s)}

    @classmethod
    def get_subclasses(cls: Type[T]) -> List[Type[T]]:
        """Recursively get message subclasses."""

        def _get_subclasses(typ: Type[T]) -> List[Type[T]]:
            out = []
            for sub in typ.__subclasses__():
                out.append(sub)
                out.extend(_get_subclasses(sub))
            return out

        return _get_subclasses(cls)


def _is_concrete(message_cls: Type[Message]) -> bool:
    """Concrete messages are dataclasses with their own `type` tag."""
    return (
        dataclasses.is_dataclass(message_cls)
        and getattr(message_cls, "type_tag", None) is not None
    )
