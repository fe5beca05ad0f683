import dataclasses
from typing import Any, Dict, List, Type

from typing_extensions import get_type_hints

from ._messages import Message, _is_concrete

_raw_type_mapping = {
    int: "number",
    str: "string",
}


def _get_ts_type(typ: Type[Any]) -> str:
    assert typ in _raw_type_mapping, f"Unsupported type {typ}"
    return _raw_type_mapping[typ]


def generate_typescript_interfaces(message_cls: Type[Message]) -> str:
    """Generate TypeScript definitions for all subclasses of a base message class.

    Each intermediate (non-dataclass) base class, for example one grouping all
    messages sent in one direction, gets a union type of its concrete messages."""
    out_lines: List[str] = []
    message_types = [cls for cls in message_cls.get_subclasses() if _is_concrete(cls)]

    union_map: Dict[str, List[str]] = {}
    for base in message_cls.get_subclasses():
        if not _is_concrete(base):
            union_map[base.__name__] = [
                cls.__name__ for cls in base.get_subclasses() if _is_concrete(cls)
            ]

    # Generate interfaces for each specific message.
    for cls in message_types:
        if cls.__doc__ is not None:
            docstring = "\n * ".join(
                map(lambda line: line.strip(), cls.__doc__.strip().split("\n"))
            )
            out_lines.append(f"/** {docstring}")
            out_lines.append(" *")
            out_lines.append(" * (automatically generated)")
            out_lines.append(" */")

        out_lines.append(f"export interface {cls.__name__} " + "{")
        out_lines.append(f'  type: "{cls.type_tag}";')
        hints = get_type_hints(cls)
        for field in dataclasses.fields(cls):  # type: ignore
            out_lines.append(f"  {field.name}: {_get_ts_type(hints[field.name])};")
        out_lines.append("}")
    out_lines.append("")

    # Generate union types.
    for union_name, cls_names in union_map.items():
        if len(cls_names) == 0:
            continue
        out_lines.append(f"export type {union_name} =")
        for cls_name in cls_names:
            out_lines.append(f"  | {cls_name}")
        out_lines[-1] = out_lines[-1] + ";"

    generated_typescript = "\n".join(out_lines) + "\n"

    # Add header and return.
    return (
        "\n".join(
            [
                (
                    "// AUTOMATICALLY GENERATED message interfaces, from Python"
                    " dataclass definitions."
                ),
                "// This file should not be manually modified.",
                "",
            ]
        )
        + generated_typescript
    )
